from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from pydantic import ValidationError

from campaignflow.shared.async_io import atomic_write_json, read_json, run_io
from campaignflow.shared.file_lock import LockException, exclusive_lock
from campaignflow.shared.logging_utils import info as log_info
from campaignflow.shared.settings import HandoffSettings
from campaignflow.shared.state_common import utc_now
from campaignflow.specs.common.enums import PHASE_LABELS, CampaignStatus, Stage
from campaignflow.specs.common.errors import CampaignFlowError, PersistenceError
from campaignflow.specs.models.context import CampaignContext
from campaignflow.specs.models.envelope import HandoffEnvelope
from campaignflow.specs.models.metadata import CampaignMetadata, FailureInfo, LastHandoff

METADATA_FILE = "campaign-metadata.json"
_LOCK_FILE = ".campaign-metadata.lock"


class CampaignMetadataStore:
    """Reads and atomically rewrites ``campaign-metadata.json``.

    Each update is one locked read-modify-write executed off the event loop
    and bounded by the I/O timeout.
    """

    def __init__(self, settings: HandoffSettings) -> None:
        self._settings = settings

    @staticmethod
    def path_for(campaign_path: Union[Path, str]) -> Path:
        return Path(campaign_path) / METADATA_FILE

    async def load(self, campaign_path: Union[Path, str]) -> CampaignMetadata:
        path = self.path_for(campaign_path)
        return await run_io(_read_meta, path, timeout=self._settings.io_timeout_seconds, operation="read metadata")

    async def create(self, context: CampaignContext) -> CampaignMetadata:
        now = utc_now()
        meta = CampaignMetadata(
            id=context.campaign.id,
            created_at=now,
            updated_at=now,
            name=context.campaign.name,
            brand=context.campaign.brand,
            status=CampaignStatus.CREATED,
            workflow_phase=context.currentPhase,
            trace_id=context.traceId,
        )

        def _write() -> CampaignMetadata:
            path = self.path_for(context.storage_path)
            with self._locked(context.storage_path):
                if path.exists():
                    # keep the original creation record on a re-run
                    existing = _read_meta(path)
                    merged = existing.model_copy(
                        update={"updated_at": now, "status": CampaignStatus.CREATED, "failure": None}
                    )
                    atomic_write_json(path, _dump(merged))
                    return merged
                atomic_write_json(path, _dump(meta))
                return meta

        result = await run_io(_write, timeout=self._settings.io_timeout_seconds, operation="create metadata")
        log_info(context.campaign_id, "metadata:create", status=result.status.value)
        return result

    async def mark_in_progress(self, campaign_path: Union[Path, str], phase: str) -> CampaignMetadata:
        def _apply(meta: CampaignMetadata) -> Dict[str, Any]:
            return {"status": CampaignStatus.IN_PROGRESS, "workflow_phase": phase}

        return await self._update(campaign_path, _apply, "mark in progress")

    async def record_handoff(self, campaign_path: Union[Path, str], envelope: HandoffEnvelope) -> CampaignMetadata:
        """Mark the source stage complete after a validated handoff."""
        info = envelope.handoff_info

        def _apply(meta: CampaignMetadata) -> Dict[str, Any]:
            completed = dict(meta.specialists_completed)
            for stage in envelope.workflow_status.completed_stages:
                completed[Stage(stage).value] = True
            return {
                "status": CampaignStatus.IN_PROGRESS,
                "workflow_phase": envelope.workflow_status.workflow_phase.value,
                "specialists_completed": completed,
                "last_handoff": LastHandoff(
                    from_stage=info.from_stage.value,
                    to_stage=info.to_stage.value if info.to_stage else None,
                    handoff_id=info.handoff_id,
                    created_at=info.created_at,
                ),
            }

        return await self._update(campaign_path, _apply, "record handoff")

    async def mark_failed(
        self,
        campaign_path: Union[Path, str],
        error: Exception,
        stage: Optional[Stage] = None,
    ) -> CampaignMetadata:
        details = error.details if isinstance(error, CampaignFlowError) else {}
        transition = details.get("transition")
        layer = details.get("layer")
        errors: List[str] = []
        missing: List[str] = []
        validation = details.get("validation")
        if isinstance(validation, dict):
            errors = [
                *validation.get("schemaErrors", []),
                *validation.get("errors", []),
                *validation.get("consistencyIssues", []),
            ]
            missing = list(validation.get("missingDependencies", []))

        def _apply(meta: CampaignMetadata) -> Dict[str, Any]:
            update: Dict[str, Any] = {
                "status": CampaignStatus.FAILED,
                "failure": FailureInfo(
                    transition=transition,
                    layer=layer,
                    message=str(error),
                    errors=errors,
                    missing_dependencies=missing,
                    failed_at=utc_now(),
                ),
            }
            phase = details.get("workflowPhase")
            if phase:
                update["workflow_phase"] = phase
            elif stage is not None:
                update["workflow_phase"] = PHASE_LABELS[Stage(stage)].value
            return update

        return await self._update(campaign_path, _apply, "mark failed")

    async def mark_cancelled(self, campaign_path: Union[Path, str]) -> CampaignMetadata:
        return await self._update(campaign_path, lambda meta: {"status": CampaignStatus.CANCELLED}, "mark cancelled")

    async def mark_completed(self, campaign_path: Union[Path, str]) -> CampaignMetadata:
        return await self._update(campaign_path, lambda meta: {"status": CampaignStatus.COMPLETED}, "mark completed")

    async def _update(
        self,
        campaign_path: Union[Path, str],
        apply: Callable[[CampaignMetadata], Dict[str, Any]],
        operation: str,
    ) -> CampaignMetadata:
        def _write() -> CampaignMetadata:
            path = self.path_for(campaign_path)
            with self._locked(campaign_path):
                meta = _read_meta(path)
                update = apply(meta)
                update["updated_at"] = utc_now()
                updated = meta.model_copy(update=update)
                atomic_write_json(path, _dump(updated))
                return updated

        result = await run_io(_write, timeout=self._settings.io_timeout_seconds, operation=operation)
        log_info(result.id, f"metadata:{operation.replace(' ', '_')}", status=result.status.value, phase=result.workflow_phase)
        return result

    @contextmanager
    def _locked(self, campaign_path: Union[Path, str]) -> Iterator[None]:
        try:
            with exclusive_lock(Path(campaign_path) / _LOCK_FILE, timeout=self._settings.lock_timeout_seconds):
                yield
        except LockException as exc:
            raise PersistenceError(
                "campaign metadata is locked",
                details={"campaignPath": str(campaign_path), "error": str(exc)},
            ) from exc


def _read_meta(path: Path) -> CampaignMetadata:
    try:
        return CampaignMetadata.model_validate(read_json(path))
    except ValidationError as exc:
        raise PersistenceError(
            f"{path.name} does not match the metadata format",
            details={"path": str(path), "errors": [e["msg"] for e in exc.errors()]},
        ) from exc


def _dump(meta: CampaignMetadata) -> Dict[str, Any]:
    return meta.model_dump(mode="json", by_alias=True)
