class NotificationError(Exception):
    """Base class for errors raised by the notification services."""


class UnknownNotificationType(NotificationError, ValueError):
    def __init__(self, notification_type):
        self.notification_type = notification_type
        super().__init__(f"Invalid notification type: {notification_type}")


class SchedulerNotConfigured(NotificationError):
    pass
