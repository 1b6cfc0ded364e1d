"""Error taxonomy shared by the sync and delivery engine.

Credential and verification errors are terminal for the request that
triggered them and are surfaced to the caller. Transient provider errors
and delivery errors are recorded where they happen and retried by the
next scheduled scan.
"""


class MailEngineError(Exception):
    """Base class for all engine errors."""


# ── Credentials ──


class CredentialError(MailEngineError):
    """Token material is unusable; the user has to reconnect the account."""


class TokenExpired(CredentialError):
    """The provider rejected the access or refresh token as expired."""


class TokenRevoked(CredentialError):
    """The grant was revoked (or never stored)."""


# ── Provider calls ──


class TransientProviderError(MailEngineError):
    """Network failure, timeout, rate limit or provider 5xx."""


class ProviderUnavailable(TransientProviderError):
    """The provider could not be reached or answered with a retryable status."""


class ProviderRequestError(MailEngineError):
    """The provider rejected the request (non-retryable 4xx)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AccountNotFound(MailEngineError):
    """No such account, or it belongs to another user."""


# ── Webhooks ──


class VerificationError(MailEngineError):
    """A push notification failed authenticity or shape checks."""


# ── Delivery ──


class DeliveryError(MailEngineError):
    """Sending a queued or scheduled message failed."""


class QueueStateError(MailEngineError):
    """A user action is not allowed in the queue item's current state."""


class QueuedSendNotFound(QueueStateError):
    pass


class AlreadySent(QueueStateError):
    def __init__(self) -> None:
        super().__init__("Email has already been sent")


class AlreadyCanceled(QueueStateError):
    def __init__(self) -> None:
        super().__init__("Email has already been canceled")


class UndoWindowExpired(QueueStateError):
    def __init__(self) -> None:
        super().__init__("Undo window has expired")


# ── State machines ──


class IllegalTransition(MailEngineError):
    """A status change that the state machine does not allow."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Illegal transition {current} -> {target}")
        self.current = current
        self.target = target
