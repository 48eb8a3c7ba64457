import json
import re
from pathlib import Path
from typing import Any, List, Union

from azure.cosmos import exceptions

from campaignflow.shared.cosmos_utils import get_cosmos_container, raise_if_retryable, retry_on_throttle
from campaignflow.shared.file_lock import LockException, exclusive_lock
from campaignflow.shared.logging_utils import info as log_info
from campaignflow.shared.settings import HandoffSettings
from campaignflow.specs.common.errors import ConfigurationError, PersistenceError
from campaignflow.specs.models.monitoring import HandoffMetrics

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class _FileMetricsStore:
    """One JSON-lines file per campaign, appended under an exclusive lock."""

    kind = "file"

    def __init__(self, base_dir: Path, lock_timeout: float) -> None:
        self._base = Path(base_dir)
        self._lock_timeout = lock_timeout

    def _path(self, campaign_id: str) -> Path:
        return self._base / f"{_SAFE_NAME.sub('_', campaign_id)}.jsonl"

    def append(self, metrics: HandoffMetrics) -> None:
        path = self._path(metrics.campaignId)
        line = metrics.model_dump_json() + "\n"
        try:
            with exclusive_lock(path.with_suffix(".lock"), timeout=self._lock_timeout):
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
        except LockException as exc:
            raise PersistenceError(
                "metrics store is locked",
                details={"path": str(path), "campaignId": metrics.campaignId},
            ) from exc

    def list(self, campaign_id: str) -> List[HandoffMetrics]:
        path = self._path(campaign_id)
        if not path.exists():
            return []
        items: List[HandoffMetrics] = []
        for number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                items.append(HandoffMetrics.model_validate(json.loads(line)))
            except ValueError:
                # a torn trailing line from a crashed writer is skipped
                log_info(campaign_id, "metrics:file:skip_line", path=str(path), line=number)
        return items


class _CosmosMetricsStore:
    """Handoff metrics documents partitioned by campaign id."""

    kind = "cosmos"

    def __init__(self, container: Any) -> None:
        self._container = container

    @retry_on_throttle
    def append(self, metrics: HandoffMetrics) -> None:
        body = metrics.model_dump(mode="json")
        body["id"] = metrics.handoffId
        body["partitionKey"] = metrics.campaignId
        body["kind"] = "HandoffMetrics"
        try:
            self._container.upsert_item(body)
        except exceptions.CosmosHttpResponseError as exc:
            raise_if_retryable(exc)
            raise

    @retry_on_throttle
    def list(self, campaign_id: str) -> List[HandoffMetrics]:
        query = "SELECT * FROM c WHERE c.campaignId = @campaignId AND c.kind = 'HandoffMetrics'"
        try:
            items = list(
                self._container.query_items(
                    query=query,
                    parameters=[{"name": "@campaignId", "value": campaign_id}],
                    enable_cross_partition_query=True,
                )
            )
        except exceptions.CosmosHttpResponseError as exc:
            raise_if_retryable(exc)
            raise
        return [HandoffMetrics.model_validate(item) for item in items]


MetricsStore = Union[_FileMetricsStore, _CosmosMetricsStore]


def select_backend(settings: HandoffSettings) -> MetricsStore:
    """Pick the metrics store from ``HANDOFF_METRICS_BACKEND`` (auto|file|cosmos)."""
    backend = settings.metrics_backend
    if backend == "cosmos" or (backend == "auto" and settings.cosmos_configured):
        container = get_cosmos_container(settings)
        if container is None:
            raise ConfigurationError(
                "Cosmos metrics backend requested but configuration is missing",
                details={"backend": backend},
            )
        log_info(None, "metrics:backend", kind="cosmos", container=settings.cosmos_metrics_container)
        return _CosmosMetricsStore(container)
    log_info(None, "metrics:backend", kind="file", path=str(settings.metrics_dir))
    return _FileMetricsStore(settings.metrics_dir, settings.lock_timeout_seconds)


__all__ = ["MetricsStore", "select_backend"]
