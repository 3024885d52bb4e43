"""Domain exceptions for mailbox sync and real-time delivery."""


class MailSyncError(Exception):
    """Base class for sync/fan-out errors."""


class MalformedNotification(MailSyncError):
    """Push envelope is missing its payload or the payload cannot be decoded."""


class StaleCursor(MailSyncError):
    """The stored history cursor is too old for the provider to resolve."""

    def __init__(self, cursor: str | None):
        super().__init__(f"History cursor {cursor!r} is no longer available")
        self.cursor = cursor


class MailboxProviderError(MailSyncError):
    """Gmail API returned an error or an unexpected payload."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class WatchRegistrationFailed(MailSyncError):
    """Registering (or stopping) a Gmail watch failed."""

    def __init__(self, detail: str):
        super().__init__(f"Gmail watch registration failed: {detail}")
        self.detail = detail


class PartialFetchFailure(MailSyncError):
    """A single message could not be fetched during reconciliation."""

    def __init__(self, message_id: str, reason: str):
        super().__init__(f"Failed to fetch message {message_id}: {reason}")
        self.message_id = message_id
        self.reason = reason


class Unauthenticated(MailSyncError):
    """Bearer credential is missing, malformed, or expired."""


class IdentityNotFound(MailSyncError):
    """No stored identity for the given mailbox address."""

    def __init__(self, identity: str):
        super().__init__(f"Identity not found: {identity}")
        self.identity = identity
