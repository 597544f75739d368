from __future__ import annotations


class TransitionError(Exception):
    """Base for every error the transition engine surfaces to its caller.

    ``code`` is the stable machine-readable name, ``status_code`` is what the
    HTTP layer answers with.
    """

    code = "TransitionError"
    status_code = 500
    default_message = "Device transition failed."

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"code": self.code, "detail": self.message}


class TransitionValidationError(TransitionError):
    status_code = 400


class InvalidRequestType(TransitionValidationError):
    code = "InvalidRequestType"
    default_message = "Invalid request type."


class InvalidReportType(TransitionValidationError):
    code = "InvalidReportType"
    default_message = "Invalid report type."


class InvalidDecision(TransitionValidationError):
    code = "InvalidDecision"
    default_message = "Decision must be approved or rejected."


class DeviceNotAvailable(TransitionValidationError):
    code = "DeviceNotAvailable"
    default_message = "Device is not available."


class NotOwner(TransitionValidationError):
    code = "NotOwner"
    default_message = "Device is not assigned to you."


class MustReleaseFirst(TransitionValidationError):
    code = "MustReleaseFirst"
    default_message = "Device must be released before it can be returned to warehouse."


class DuplicatePendingRequest(TransitionError):
    code = "DuplicatePendingRequest"
    status_code = 409
    default_message = "There is already a pending request for this device."


class AlreadyProcessed(TransitionError):
    code = "AlreadyProcessed"
    status_code = 409
    default_message = "Request is not in pending status."


class DeviceNotFound(TransitionError):
    code = "DeviceNotFound"
    status_code = 404
    default_message = "Device not found."


class RequestNotFound(TransitionError):
    code = "RequestNotFound"
    status_code = 404
    default_message = "Request not found."


class Unauthorized(TransitionError):
    code = "Unauthorized"
    status_code = 403
    default_message = "Unauthorized."


class LockContention(TransitionError):
    """Transient storage contention; only the retry coordinator sees these."""

    status_code = 503


class LockWaitTimeout(LockContention):
    code = "LockWaitTimeout"
    default_message = "Timed out waiting for a device lock."


class Deadlock(LockContention):
    code = "Deadlock"
    default_message = "Transaction was chosen as a deadlock victim."


class LockContentionExhausted(TransitionError):
    code = "LockContentionExhausted"
    status_code = 503
    default_message = "Device is busy, please try again."

    def __init__(self, attempts: int, last_error: LockContention | None = None):
        self.attempts = attempts
        self.last_error = last_error
        reason = last_error.code if last_error else "lock contention"
        super().__init__(f"Device is busy ({reason} after {attempts} attempts), please try again.")


class StorageError(TransitionError):
    code = "StorageError"
    default_message = "Database error."


class DeviceStateCorrupt(TransitionError):
    code = "DeviceStateCorrupt"
    default_message = "Device record is inconsistent."


class RequestStateCorrupt(TransitionError):
    code = "RequestStateCorrupt"
    default_message = "Request record is inconsistent."
