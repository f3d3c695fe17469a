from django.conf import settings

DEFAULTS = {
    "MINUTES_PER_PATIENT": 10,
    "THREE_AWAY_POSITION": 3,
    "LIVE_UPDATE_WORKERS": 4,
    "STREAM_KEEPALIVE_SECONDS": 15,
}


def queue_setting(name):
    """Read a QUEUE_MANAGEMENT setting, falling back to the built-in default"""
    overrides = getattr(settings, "QUEUE_MANAGEMENT", None) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
