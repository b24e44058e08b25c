"""
Error taxonomy for the assistant.

Every error raised across a collaborator seam (backend, recognition engine,
peer transport) is converted into one of these so the coordinator can decide
how to react without knowing which library failed.
"""


class AssistantError(Exception):
    """Base class for assistant errors."""
    pass


class CredentialFetchError(AssistantError):
    """Backend unreachable or returned a malformed credential/grant."""
    pass


class ListenerStartError(AssistantError):
    """Recognition engine unavailable or listener not configured."""
    pass


class NegotiationError(AssistantError):
    """Signalling or peer-connection negotiation failed."""
    pass


class MediaError(AssistantError):
    """Local microphone could not be opened."""
    pass


class ChannelNotOpenError(AssistantError):
    """A message was sent before the data channel opened (or after it closed)."""
    pass


class CredentialRejectedError(ListenerStartError):
    """The recognition engine refused the credential (expired or revoked token)."""
    pass
