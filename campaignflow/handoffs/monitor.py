import hashlib
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from campaignflow.shared.async_io import atomic_write_json, read_json, run_io
from campaignflow.shared.logging_utils import error as log_error
from campaignflow.shared.logging_utils import info as log_info
from campaignflow.shared.logging_utils import warning as log_warning
from campaignflow.shared.metrics_store import MetricsStore, select_backend
from campaignflow.shared.settings import HandoffSettings
from campaignflow.shared.state_common import utc_now
from campaignflow.specs.common.errors import PersistenceError
from campaignflow.specs.common.ids import new_handoff_id
from campaignflow.specs.models.monitoring import HandoffMetrics, HandoffSummary, HealthStatus

SUMMARY_FILE = "handoff-summary.json"
MAX_FAILURE_RATE = 0.2
MAX_AVERAGE_DURATION_MS = 30_000.0
DEFAULT_HEALTH_WINDOW = 50
LARGE_PAYLOAD_BYTES = 10 * 1024 * 1024


def payload_checksum(payload: bytes) -> str:
    return hashlib.sha256(payload).hexdigest()


def payload_warnings(size: int) -> List[str]:
    if size == 0:
        return ["handoff payload is empty"]
    if size > LARGE_PAYLOAD_BYTES:
        return [f"large handoff payload: {size / 1024 / 1024:.1f}MB"]
    return []


class HandoffTimer:
    """Mutable handle yielded by ``HandoffMonitor.track``."""

    def __init__(self, campaign_id: str, source: str, target: Optional[str]) -> None:
        self.handoff_id = new_handoff_id()
        self.campaign_id = campaign_id
        self.source = source
        self.target = target
        self.data_size_bytes = 0
        self.checksum: Optional[str] = None
        self.validation_duration = 0.0
        self.persistence_duration = 0.0
        self.warnings: List[str] = []
        self.start_time = utc_now()
        self._started = time.perf_counter()

    def measure_payload(self, payload: bytes) -> None:
        """Record size, checksum and size warnings for the serialized envelope."""
        self.data_size_bytes = len(payload)
        self.checksum = payload_checksum(payload)
        self.warnings.extend(payload_warnings(len(payload)))

    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self._started) * 1000


class HandoffMonitor:
    """Records per-handoff timing and outcome, and summarises a campaign.

    Recording is fire-and-forget for the pipeline: every failure inside the
    monitor is logged and never propagated.
    """

    def __init__(
        self,
        settings: Optional[HandoffSettings] = None,
        store: Optional[MetricsStore] = None,
        history_limit: int = 1000,
    ) -> None:
        self._settings = settings or HandoffSettings.from_env()
        self._store = store if store is not None else select_backend(self._settings)
        self._history: List[HandoffMetrics] = []
        self._history_limit = history_limit
        self._campaign_paths: Dict[str, str] = {}

    @property
    def history(self) -> List[HandoffMetrics]:
        return list(self._history)

    def register_campaign(self, campaign_id: str, campaign_path: Union[str, Path]) -> None:
        self._campaign_paths[campaign_id] = str(campaign_path)

    async def record_handoff(self, metrics: Union[HandoffMetrics, Mapping[str, Any]]) -> Optional[HandoffMetrics]:
        try:
            record = metrics if isinstance(metrics, HandoffMetrics) else HandoffMetrics.model_validate(dict(metrics))
        except ValidationError as exc:
            log_error(None, "monitor:record:invalid", errors=[e["msg"] for e in exc.errors()])
            return None

        self._history.append(record)
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

        try:
            await run_io(
                self._store.append,
                record,
                timeout=self._settings.io_timeout_seconds,
                operation="append handoff metrics",
            )
        except Exception as exc:  # monitoring never fails a handoff
            log_error(record.campaignId, "monitor:record:store_failed", handoffId=record.handoffId, error=str(exc))
        else:
            log_info(
                record.campaignId,
                "monitor:record",
                handoffId=record.handoffId,
                source=record.sourceStage,
                target=record.targetStage,
                success=record.success,
                durationMs=round(record.duration, 2),
            )
        if record.warnings:
            log_warning(record.campaignId, "monitor:record:warnings", handoffId=record.handoffId, warnings=record.warnings)
        return record

    @asynccontextmanager
    async def track(
        self,
        campaign_id: str,
        source: str,
        target: Optional[str],
        campaign_path: Optional[Union[str, Path]] = None,
    ) -> AsyncIterator[HandoffTimer]:
        """Time a transition and record it on exit, successful or not.

        Exceptions raised inside the block are recorded and re-raised.
        """
        if campaign_path is not None:
            self.register_campaign(campaign_id, campaign_path)
        timer = HandoffTimer(campaign_id, source, target)
        error: Optional[str] = None
        try:
            yield timer
        except BaseException as exc:
            error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            raise
        finally:
            await self.record_handoff(
                HandoffMetrics(
                    handoffId=timer.handoff_id,
                    campaignId=campaign_id,
                    sourceStage=source,
                    targetStage=target,
                    startTime=timer.start_time,
                    endTime=utc_now(),
                    duration=timer.elapsed_ms(),
                    dataSizeBytes=timer.data_size_bytes,
                    checksum=timer.checksum,
                    validationDuration=timer.validation_duration,
                    persistenceDuration=timer.persistence_duration,
                    success=error is None,
                    error=error,
                    warnings=list(timer.warnings),
                )
            )

    async def _campaign_records(self, campaign_id: str) -> List[HandoffMetrics]:
        """Store records for the campaign plus any in-memory ones it lacks.

        The store is append-only and shared across monitor instances, so it
        is authoritative; the local history covers appends that failed.
        """
        try:
            stored = await run_io(
                self._store.list,
                campaign_id,
                timeout=self._settings.io_timeout_seconds,
                operation="read handoff metrics",
            )
        except Exception as exc:  # fall back to what this instance saw
            log_error(campaign_id, "monitor:summarize:store_failed", error=str(exc))
            stored = []
        merged: Dict[str, HandoffMetrics] = {m.handoffId: m for m in stored}
        for record in self._history:
            if record.campaignId == campaign_id:
                merged.setdefault(record.handoffId, record)
        return list(merged.values())

    async def summarize(self, campaign_id: str) -> HandoffSummary:
        records = await self._campaign_records(campaign_id)

        ordered = sorted(records, key=lambda m: m.startTime)
        successful = [m for m in ordered if m.success]
        summary = HandoffSummary(
            campaignId=campaign_id,
            totalHandoffs=len(ordered),
            successfulHandoffs=len(successful),
            failedHandoffs=len(ordered) - len(successful),
            averageDuration=round(sum(m.duration for m in ordered) / len(ordered), 3) if ordered else 0.0,
            totalDataSizeBytes=sum(m.dataSizeBytes for m in ordered),
            handoffChain=[_transition(m) for m in successful],
            errors=[f"{_transition(m)}: {m.error}" for m in ordered if not m.success and m.error],
            warnings=[f"{_transition(m)}: {w}" for m in ordered for w in m.warnings],
            generatedAt=utc_now(),
        )

        campaign_path = self._campaign_paths.get(campaign_id)
        if campaign_path:
            target = Path(campaign_path) / "logs" / SUMMARY_FILE
            try:
                await run_io(
                    atomic_write_json,
                    target,
                    summary.model_dump(mode="json"),
                    timeout=self._settings.io_timeout_seconds,
                    operation="write handoff summary",
                )
            except Exception as exc:  # best effort
                log_error(campaign_id, "monitor:summarize:write_failed", path=str(target), error=str(exc))
        log_info(
            campaign_id,
            "monitor:summarize",
            total=summary.totalHandoffs,
            failed=summary.failedHandoffs,
            averageDurationMs=summary.averageDuration,
        )
        return summary

    def health_check(self, window: int = DEFAULT_HEALTH_WINDOW) -> HealthStatus:
        recent = self._history[-window:] if window > 0 else []
        warnings: List[str] = []
        failure_rate = 0.0
        average = 0.0
        if recent:
            failure_rate = sum(1 for m in recent if not m.success) / len(recent)
            average = sum(m.duration for m in recent) / len(recent)
            if failure_rate > MAX_FAILURE_RATE:
                warnings.append(f"handoff failure rate {failure_rate:.0%} exceeds {MAX_FAILURE_RATE:.0%}")
            if average > MAX_AVERAGE_DURATION_MS:
                warnings.append(
                    f"average handoff duration {average / 1000:.1f}s exceeds {MAX_AVERAGE_DURATION_MS / 1000:.0f}s"
                )
        status = HealthStatus(
            healthy=not warnings,
            sampleSize=len(recent),
            failureRate=round(failure_rate, 4),
            averageDuration=round(average, 3),
            warnings=warnings,
            checkedAt=utc_now(),
            details={"window": window, "backend": getattr(self._store, "kind", type(self._store).__name__)},
        )
        if warnings:
            log_warning(None, "monitor:health:degraded", warnings=warnings)
        return status

    async def export_metrics(self, path: Union[str, Path]) -> Path:
        """Write the in-memory history and per-campaign summaries to ``path``."""
        target = Path(path)
        campaigns = sorted({m.campaignId for m in self._history})
        summaries = {cid: (await self.summarize(cid)).model_dump(mode="json") for cid in campaigns}
        payload = {
            "exportedAt": utc_now(),
            "metrics": [m.model_dump(mode="json") for m in self._history],
            "summaries": summaries,
            "health": self.health_check().model_dump(mode="json"),
        }
        await run_io(
            atomic_write_json,
            target,
            payload,
            timeout=self._settings.io_timeout_seconds,
            operation="export handoff metrics",
        )
        log_info(None, "monitor:export", path=str(target), records=len(self._history))
        return target

    async def import_metrics(self, path: Union[str, Path]) -> int:
        """Load metrics from a file written by ``export_metrics``.

        Records already in the history are skipped. Returns how many were
        added; an unreadable file is logged and imports nothing.
        """
        source = Path(path)
        try:
            payload = await run_io(
                read_json,
                source,
                timeout=self._settings.io_timeout_seconds,
                operation="import handoff metrics",
            )
        except PersistenceError as exc:
            log_error(None, "monitor:import:failed", path=str(source), error=str(exc))
            return 0

        entries = payload.get("metrics")
        if not isinstance(entries, list):
            log_warning(None, "monitor:import:empty", path=str(source))
            return 0
        known = {m.handoffId for m in self._history}
        added = 0
        for entry in entries:
            try:
                record = HandoffMetrics.model_validate(entry)
            except ValidationError:
                log_warning(None, "monitor:import:skip", path=str(source))
                continue
            if record.handoffId in known:
                continue
            known.add(record.handoffId)
            self._history.append(record)
            added += 1
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]
        log_info(None, "monitor:import", path=str(source), records=added)
        return added


def _transition(metrics: HandoffMetrics) -> str:
    if metrics.targetStage:
        return f"{metrics.sourceStage}-to-{metrics.targetStage}"
    return f"{metrics.sourceStage}-final"


__all__ = ["HandoffMonitor", "HandoffTimer"]
