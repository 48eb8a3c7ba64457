import time
import uuid


def _token(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:10]}"


def new_request_id() -> str:
    return _token("req")


def new_correlation_id() -> str:
    return _token("corr")


def new_handoff_id() -> str:
    return _token("handoff")
