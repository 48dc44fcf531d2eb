"""
Error taxonomy of the reminder engine.

- TransientIOError: store or network hiccup. The next scheduled invocation retries.
- PermanentAuthError: an OAuth grant was revoked. The connection is disabled until
  the user re-authorizes.
- PartialDeliveryError: one push subscription among many failed. Counted, never
  raised out of a batch.
- InvalidDataError: a stored record is malformed. Logged and skipped.
"""


class ReminderEngineError(Exception):
    """Base class for all engine errors."""


class TransientIOError(ReminderEngineError):
    pass


class StoreUnavailableError(TransientIOError):
    """The record store cannot be reached. Aborts the current job invocation."""


class CredentialRefreshError(TransientIOError):
    action = "retry"


class PermanentAuthError(ReminderEngineError):
    action = "reauthorize"


class PartialDeliveryError(ReminderEngineError):
    def __init__(self, subscription_id, status_code=None, message=""):
        self.subscription_id = subscription_id
        self.status_code = status_code
        super().__init__(message or f"Push to subscription {subscription_id} failed ({status_code})")


class InvalidDataError(ReminderEngineError):
    pass
