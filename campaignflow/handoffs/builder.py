import os
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from campaignflow.handoffs.path_resolver import CampaignPathResolver
from campaignflow.shared.async_io import commit, discard, read_json, run_io, temp_path_for, write_temp
from campaignflow.shared.file_lock import LockException, exclusive_lock
from campaignflow.shared.logging_utils import info as log_info
from campaignflow.shared.settings import HandoffSettings
from campaignflow.shared.state_common import utc_now, utc_stamp
from campaignflow.specs.common.enums import (
    PHASE_LABELS,
    STAGE_ORDER,
    Stage,
    completion_percentage,
    next_stage,
    previous_stage,
)
from campaignflow.specs.common.errors import (
    ConfigurationError,
    HandoffConflictError,
    PathResolutionError,
    PersistenceError,
    SchemaValidationError,
)
from campaignflow.specs.common.ids import new_handoff_id
from campaignflow.specs.models.context import CampaignContext
from campaignflow.specs.models.envelope import (
    CampaignContextSnapshot,
    HandoffEnvelope,
    HandoffInfo,
    HandoffNotes,
    WorkflowStatus,
    envelope_file_name,
    transition_name,
)
from campaignflow.specs.models.outputs import parse_stage_output
from campaignflow.specs.models.validation import ValidationResult

HANDOFFS_DIR = "handoffs"
LOCK_FILE = ".handoffs.lock"


def _format_errors(prefix: str, exc: ValidationError) -> List[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        out.append(f"{prefix}.{loc}: {err.get('msg')}" if loc else f"{prefix}: {err.get('msg')}")
    return out


class HandoffBuilder:
    """Assembles, persists and reloads handoff envelopes.

    One envelope per transition lives at ``handoffs/<from>-to-<to>.json``;
    the delivery stage closes the chain with ``handoffs/delivery-final.json``.
    Envelopes are never rewritten in place: a retry must pass
    ``supersede=True``, which renames the old file for audit.
    """

    def __init__(
        self,
        settings: Optional[HandoffSettings] = None,
        resolver: Optional[CampaignPathResolver] = None,
    ) -> None:
        self._settings = settings or HandoffSettings.from_env()
        self._resolver = resolver or CampaignPathResolver(self._settings)

    @property
    def timeout(self) -> float:
        return self._settings.io_timeout_seconds

    def envelope_path(self, campaign_path: Union[str, Path], from_stage: Any, to_stage: Any) -> Path:
        return Path(campaign_path) / HANDOFFS_DIR / envelope_file_name(from_stage, to_stage)

    async def build(
        self,
        from_stage: Union[Stage, str],
        to_stage: Optional[Union[Stage, str]],
        context: CampaignContext,
        stage_outputs: Mapping[str, Any],
        *,
        handoff_data: Optional[Union[HandoffNotes, Mapping[str, Any]]] = None,
        execution_time: Optional[float] = None,
        supersede: bool = False,
    ) -> HandoffEnvelope:
        from_stage = Stage(from_stage)
        to_stage = Stage(to_stage) if to_stage is not None else None
        if to_stage != next_stage(from_stage):
            expected = next_stage(from_stage)
            raise ConfigurationError(
                f"{from_stage.value} hands off to {expected.value if expected else 'nothing (final)'}, "
                f"not {to_stage.value if to_stage else 'final'}",
                details={"from": from_stage.value, "to": to_stage.value if to_stage else None},
            )
        transition = transition_name(from_stage, to_stage)
        phase = PHASE_LABELS[to_stage or from_stage]

        chain = list(context.handoffChain)
        if not chain or chain[-1] != from_stage:
            raise ConfigurationError(
                f"context handoffChain must end with {from_stage.value}; enhance the context first",
                details={"handoffChain": [s.value for s in chain], "transition": transition},
            )

        root = self._resolver.resolve(context)
        handoffs_dir = Path(root) / HANDOFFS_DIR
        if not handoffs_dir.is_dir():
            raise PathResolutionError(
                f"campaign directory {root} has no {HANDOFFS_DIR}/ directory",
                details={"campaignPath": root, "missing": [HANDOFFS_DIR]},
            )

        outputs: Dict[str, Any] = {}
        prior = previous_stage(from_stage)
        if prior is not None:
            previous = await self.load_envelope(root, prior, from_stage)
            expected_chain = [*previous.workflow_status.completed_stages, from_stage]
            if chain != expected_chain:
                raise ConfigurationError(
                    "context handoffChain does not extend the previous envelope",
                    details={
                        "handoffChain": [s.value for s in chain],
                        "expected": [s.value for s in expected_chain],
                        "transition": transition,
                    },
                )
            outputs.update(previous.specialist_outputs)
        elif chain != [from_stage]:
            raise ConfigurationError(
                "first handoff must have a single-entry handoffChain",
                details={"handoffChain": [s.value for s in chain], "transition": transition},
            )

        if from_stage.value in outputs:
            raise ConfigurationError(
                f"outputs for {from_stage.value} are already recorded",
                details={"transition": transition},
            )
        try:
            outputs[from_stage.value] = parse_stage_output(from_stage, stage_outputs)
        except ValidationError as exc:
            result = ValidationResult(schemaErrors=_format_errors(f"specialist_outputs.{from_stage.value}", exc))
            raise SchemaValidationError(
                f"{from_stage.value} outputs do not match their schema",
                result=result,
                transition=transition,
                workflow_phase=phase.value,
            ) from exc

        notes = None
        if handoff_data is not None:
            notes = handoff_data if isinstance(handoff_data, HandoffNotes) else HandoffNotes.model_validate(dict(handoff_data))

        campaign = context.campaign
        envelope = HandoffEnvelope(
            handoff_info=HandoffInfo(
                from_stage=from_stage,
                to_stage=to_stage,
                handoff_id=new_handoff_id(),
                created_at=utc_now(),
                campaign_id=campaign.id,
                campaign_path=root,
                trace_id=context.traceId,
                execution_time=execution_time,
            ),
            campaign_context=CampaignContextSnapshot(
                campaign_id=campaign.id,
                campaign_name=campaign.name,
                brand=campaign.brand,
                language=campaign.language,
                campaign_type=campaign.type.value,
                campaign_path=root,
                request_id=context.requestId,
                trace_id=context.traceId,
            ),
            specialist_outputs=outputs,
            workflow_status=WorkflowStatus(
                completed_stages=chain,
                current_stage=from_stage,
                next_stage=to_stage,
                workflow_phase=phase,
                completion_percentage=completion_percentage(len(chain)),
            ),
            handoff_data=notes,
        )

        target = handoffs_dir / envelope.file_name
        try:
            with exclusive_lock(handoffs_dir / LOCK_FILE, fail_when_locked=True):
                await self._sweep_temp(handoffs_dir, campaign.id)
                await self._write(target, envelope, supersede)
        except LockException as exc:
            raise HandoffConflictError(
                f"another writer holds the handoff lock for {campaign.id}",
                details={"campaignId": campaign.id, "transition": transition},
            ) from exc

        log_info(
            campaign.id,
            "handoff:build",
            transition=transition,
            handoffId=envelope.handoff_info.handoff_id,
            completion=envelope.workflow_status.completion_percentage,
            supersede=supersede,
        )
        return envelope

    async def _sweep_temp(self, handoffs_dir: Path, campaign_id: str) -> None:
        """Remove temp files left by an interrupted write. Caller holds the lock."""

        def _sweep() -> List[str]:
            removed = []
            for stale in handoffs_dir.glob(".*.json.tmp.*"):
                discard(stale)
                removed.append(stale.name)
            return removed

        removed = await run_io(_sweep, timeout=self.timeout, operation="sweep temp envelopes")
        if removed:
            log_info(campaign_id, "handoff:sweep", removed=removed)

    async def _write(self, target: Path, envelope: HandoffEnvelope, supersede: bool) -> None:
        exists = await run_io(target.exists, timeout=self.timeout, operation="check envelope")
        if exists and not supersede:
            raise HandoffConflictError(
                f"{target.name} already exists; pass supersede=True to replace it",
                details={"path": str(target), "transition": envelope.transition},
            )

        tmp_path = temp_path_for(target)
        committed = False
        try:
            await run_io(
                write_temp,
                target,
                envelope.model_dump(mode="json"),
                tmp_path,
                timeout=self.timeout,
                operation="write envelope",
            )
            # no await between here and the commit
            try:
                if exists:
                    superseded = target.with_name(f"{target.stem}.superseded-{utc_stamp()}.json")
                    os.replace(str(target), str(superseded))
                    log_info(envelope.handoff_info.campaign_id, "handoff:superseded", path=str(superseded))
                commit(tmp_path, target)
            except OSError as exc:
                raise PersistenceError(
                    f"commit of {target.name} failed: {exc}",
                    details={"path": str(target), "error": str(exc)},
                ) from exc
            committed = True
        finally:
            if not committed:
                discard(tmp_path)

    async def load_envelope(
        self,
        campaign_path: Any,
        from_stage: Union[Stage, str],
        to_stage: Optional[Union[Stage, str]],
    ) -> HandoffEnvelope:
        root = self._resolver.resolve(campaign_path)
        path = self.envelope_path(root, from_stage, to_stage)
        data = await run_io(read_json, path, timeout=self.timeout, operation=f"read {path.name}")
        try:
            return HandoffEnvelope.model_validate(data)
        except ValidationError as exc:
            raise PersistenceError(
                f"{path.name} is not a valid handoff envelope",
                details={"path": str(path), "errors": _format_errors("envelope", exc)},
            ) from exc

    async def load_chain(self, campaign_path: Any) -> List[HandoffEnvelope]:
        """Committed envelopes in pipeline order, up to the first gap."""
        root = self._resolver.resolve(campaign_path)
        chain: List[HandoffEnvelope] = []
        for stage in STAGE_ORDER:
            target = next_stage(stage)
            path = self.envelope_path(root, stage, target)
            exists = await run_io(path.exists, timeout=self.timeout, operation="check envelope")
            if not exists:
                break
            chain.append(await self.load_envelope(root, stage, target))
        return chain
