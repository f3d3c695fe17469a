"""
Queue engine errors

Every error carries the kind and HTTP status the API layer renders, so views
only need a single `except QueueError` branch.
"""


class QueueError(Exception):
    error_kind = "queue_error"
    status_code = 400
    default_message = "Queue operation failed"

    def __init__(self, message=None):
        super().__init__(message or self.default_message)

    @property
    def message(self):
        return str(self)


class QueueValidationError(QueueError):
    error_kind = "validation_error"
    status_code = 400


class QueueNotFoundError(QueueError):
    error_kind = "not_found"
    status_code = 404


class QueueConflictError(QueueError):
    error_kind = "conflict"
    status_code = 409


class InvalidPriority(QueueValidationError):
    default_message = "Priority must be 1 (Normal), 2 (Elderly) or 3 (Emergency)"


class InvalidStatus(QueueValidationError):
    default_message = "Status must be one of IN_QUEUE, CALLED, DONE, MISSED"


class AppointmentNotFound(QueueNotFoundError):
    default_message = "Appointment not found"


class QueueEntryNotFound(QueueNotFoundError):
    default_message = "Queue entry not found"


class NotInQueue(QueueNotFoundError):
    default_message = "Appointment is not in queue"


class DuplicateActiveEntry(QueueConflictError):
    default_message = "Appointment is already in queue"


class InvalidTransition(QueueConflictError):
    default_message = "Invalid status transition"

    def __init__(self, current=None, new=None, message=None):
        self.current = current
        self.new = new
        if message is None and current is not None:
            message = f"Cannot change queue status from {current} to {new}"
        super().__init__(message)


class QueueEmpty(QueueConflictError):
    default_message = "No patients in queue"


class NoMissedEntry(QueueConflictError):
    default_message = "No missed queue entry found for this appointment"
