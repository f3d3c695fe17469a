"""
Signals wiring queue changes to the live position channels
"""
from django.dispatch import receiver

from .events import clinic_queue_changed
from .live_updates import get_live_update_hub


@receiver(clinic_queue_changed, dispatch_uid="queue_management.forward_to_live_updates")
def forward_to_live_updates(sender, event, **kwargs):
    """Re-push positions to every open channel of the changed clinic"""
    get_live_update_hub().handle_clinic_changed(sender, event=event, **kwargs)
