class NotificationDeliveryError(Exception):
    """Raised when a notification could not be handed to its transport"""

    error_kind = "dependency_failure"

    def __init__(self, message, recipient=None):
        super().__init__(message)
        self.recipient = recipient
