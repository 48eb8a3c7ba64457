import os
import tempfile
from pathlib import Path
from typing import Optional, Tuple

from pydantic import BaseModel, Field, ValidationError, field_validator

from campaignflow.specs.common.errors import ConfigurationError


_DEFAULT_METRICS_DIR = Path(tempfile.gettempdir()) / "campaignflow-metrics"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number", details={"value": raw}) from exc


def _env_weights(name: str, default: Tuple[float, float, float]) -> Tuple[float, float, float]:
    raw = os.getenv(name)
    if not raw:
        return default
    parts = [p.strip() for p in raw.split(",")]
    if len(parts) != 3:
        raise ConfigurationError(
            f"{name} must hold three comma separated weights (fields,values,preserved)",
            details={"value": raw},
        )
    try:
        return tuple(float(p) for p in parts)  # type: ignore[return-value]
    except ValueError as exc:
        raise ConfigurationError(f"{name} must hold numbers", details={"value": raw}) from exc


class HandoffSettings(BaseModel):
    """Runtime configuration of the handoff core."""

    campaigns_root: Path = Path("campaigns")
    io_timeout_seconds: float = Field(default=5.0, gt=0)
    lock_timeout_seconds: float = Field(default=10.0, gt=0)
    continuity_threshold: float = Field(default=70.0, ge=0, le=100)
    # fields present, non-empty values, preserved fields
    continuity_weights: Tuple[float, float, float] = (0.4, 0.3, 0.3)
    metrics_backend: str = "auto"
    metrics_dir: Path = _DEFAULT_METRICS_DIR
    cosmos_connection_string: Optional[str] = None
    cosmos_db_name: Optional[str] = None
    cosmos_metrics_container: Optional[str] = None

    @field_validator("continuity_weights")
    @classmethod
    def _weights_positive(cls, value: Tuple[float, float, float]) -> Tuple[float, float, float]:
        if any(w < 0 for w in value) or sum(value) <= 0:
            raise ValueError("continuity weights must be non-negative and sum to more than zero")
        return value

    @field_validator("metrics_backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in ("auto", "file", "cosmos"):
            raise ValueError(f"unknown metrics backend {value!r}")
        return value

    @property
    def cosmos_configured(self) -> bool:
        return bool(self.cosmos_connection_string and self.cosmos_db_name and self.cosmos_metrics_container)

    @classmethod
    def from_env(cls) -> "HandoffSettings":
        try:
            return cls._from_env()
        except ValidationError as exc:
            raise ConfigurationError("invalid handoff settings", details={"errors": exc.errors(include_url=False)}) from exc

    @classmethod
    def _from_env(cls) -> "HandoffSettings":
        return cls(
            campaigns_root=Path(os.getenv("CAMPAIGNS_ROOT", "campaigns")),
            io_timeout_seconds=_env_float("HANDOFF_IO_TIMEOUT_SECONDS", 5.0),
            lock_timeout_seconds=_env_float("HANDOFF_LOCK_TIMEOUT_SECONDS", 10.0),
            continuity_threshold=_env_float("CONTINUITY_THRESHOLD", 70.0),
            continuity_weights=_env_weights("CONTINUITY_WEIGHTS", (0.4, 0.3, 0.3)),
            metrics_backend=os.getenv("HANDOFF_METRICS_BACKEND", "auto"),
            metrics_dir=Path(os.getenv("HANDOFF_METRICS_DIR", str(_DEFAULT_METRICS_DIR))),
            cosmos_connection_string=os.getenv("COSMOS_DB_CONNECTION_STRING"),
            cosmos_db_name=os.getenv("COSMOS_DB_NAME"),
            cosmos_metrics_container=os.getenv("COSMOS_DB_CONTAINER_HANDOFF_METRICS"),
        )
