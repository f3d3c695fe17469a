from django.apps import AppConfig


class QueueManagementConfig(AppConfig):  # Application configuration for the queue_management app
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'queue_management'

    def ready(self):  # Import signals so live updates subscribe to queue changes
        import queue_management.signals  # noqa: F401
