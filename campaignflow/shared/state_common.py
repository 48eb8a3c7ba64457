from datetime import datetime, timezone


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def utc_stamp() -> str:
    """Compact UTC timestamp usable inside file names."""
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
