import logging
import os
from typing import Any, Dict, Optional


_LOGGER = logging.getLogger("campaignflow")


class _DimensionsFormatter(logging.Formatter):
    """Append ``custom_dimensions`` to the rendered message."""

    def format(self, record: logging.LogRecord) -> str:
        text = super().format(record)
        dims = getattr(record, "custom_dimensions", None)
        if dims:
            rendered = " ".join(f"{k}={v}" for k, v in dims.items())
            text = f"{text} | {rendered}"
        return text


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach a stream handler to the package logger.

    Level comes from ``level`` or ``CAMPAIGNFLOW_LOG_LEVEL`` (default INFO).
    Calling it twice does not duplicate handlers.
    """
    name = (level or os.getenv("CAMPAIGNFLOW_LOG_LEVEL") or "INFO").upper()
    _LOGGER.setLevel(getattr(logging, name, logging.INFO))
    if not any(getattr(h, "_campaignflow", False) for h in _LOGGER.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(_DimensionsFormatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        handler._campaignflow = True  # type: ignore[attr-defined]
        _LOGGER.addHandler(handler)
    return _LOGGER


def log(level: int, campaign_id: Optional[str], message: str, **dimensions: Any) -> None:
    dims: Dict[str, Any] = {"campaignId": campaign_id} if campaign_id else {}
    dims.update(dimensions)
    _LOGGER.log(level, message, extra={"custom_dimensions": dims})


def info(campaign_id: Optional[str], message: str, **dimensions: Any) -> None:
    log(logging.INFO, campaign_id, message, **dimensions)


def warning(campaign_id: Optional[str], message: str, **dimensions: Any) -> None:
    log(logging.WARNING, campaign_id, message, **dimensions)


def error(campaign_id: Optional[str], message: str, **dimensions: Any) -> None:
    log(logging.ERROR, campaign_id, message, **dimensions)
