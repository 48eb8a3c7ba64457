from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from campaignflow.shared.logging_utils import info as log_info
from campaignflow.shared.state_common import utc_now
from campaignflow.specs.common.enums import (
    ORCHESTRATION_PHASE,
    STAGE_ORDER,
    TOTAL_STAGES,
    Stage,
    WorkflowType,
    next_stage,
)
from campaignflow.specs.common.errors import ConfigurationError
from campaignflow.specs.common.ids import new_correlation_id, new_request_id
from campaignflow.specs.models.context import (
    CampaignContext,
    CampaignInfo,
    CampaignRequest,
    ExecutionSettings,
)
from campaignflow.specs.models.validation import ValidationResult

_REQUIRED_CAMPAIGN_FIELDS = ("id", "storagePath", "brand")


def workflow_stages(context: CampaignContext) -> List[Stage]:
    """Stages a context runs through, in order.

    Partial and single-stage runs record their slice in ``metadata.stages``.
    """
    declared = context.metadata.get("stages")
    if declared:
        return [Stage(s) for s in declared]
    return list(STAGE_ORDER)


class ContextManager:
    """Builds and extends the run-scoped campaign context.

    Every operation returns a new frozen ``CampaignContext``; nothing here
    touches storage or keeps a reference to a "current" campaign.
    """

    def create_context(self, request: Union[CampaignRequest, Mapping[str, Any]]) -> CampaignContext:
        if not isinstance(request, CampaignRequest):
            try:
                request = CampaignRequest.model_validate(dict(request))
            except ValidationError as exc:
                raise ConfigurationError(
                    "campaign request is malformed",
                    details={"errors": [e["msg"] for e in exc.errors()]},
                ) from exc

        campaign = dict(request.campaign)
        if "storagePath" not in campaign and "storage_path" in campaign:
            campaign["storagePath"] = campaign.pop("storage_path")
        missing = [
            name
            for name in _REQUIRED_CAMPAIGN_FIELDS
            if not isinstance(campaign.get(name), str) or not campaign[name].strip()
        ]
        if missing:
            raise ConfigurationError(
                f"campaign is missing required fields: {', '.join(missing)}",
                details={"missing": missing},
            )
        try:
            info = CampaignInfo.model_validate(campaign)
        except ValidationError as exc:
            raise ConfigurationError(
                "campaign identity is invalid",
                details={"errors": [e["msg"] for e in exc.errors()]},
            ) from exc

        stages = self._select_stages(request)
        metadata: Dict[str, Any] = dict(request.metadata)
        metadata["originalRequest"] = request.request
        if stages != STAGE_ORDER:
            metadata["stages"] = [s.value for s in stages]

        # a partial run starts after the stages already on disk
        done = STAGE_ORDER[: STAGE_ORDER.index(stages[0])]
        context = CampaignContext(
            requestId=new_request_id(),
            traceId=request.traceId,
            timestamp=utc_now(),
            correlationId=new_correlation_id(),
            workflowType=request.workflowType,
            currentPhase=ORCHESTRATION_PHASE,
            totalPhases=TOTAL_STAGES,
            phaseIndex=len(done),
            campaign=info,
            previousResults=None,
            handoffData=None,
            persistentState=dict(request.persistentState),
            handoffChain=done,
            execution=request.execution or ExecutionSettings(),
            metadata=metadata,
        )
        log_info(info.id, "context:create", requestId=context.requestId, workflowType=context.workflowType.value)
        return context

    @staticmethod
    def _select_stages(request: CampaignRequest) -> List[Stage]:
        if request.workflowType in (WorkflowType.FULL_PIPELINE, WorkflowType.TEST) and not request.stages:
            return list(STAGE_ORDER)
        stages = list(request.stages or [])
        if not stages:
            raise ConfigurationError(
                f"workflow type {request.workflowType.value} needs an explicit stage list",
                details={"workflowType": request.workflowType.value},
            )
        indices = [STAGE_ORDER.index(s) for s in stages]
        if indices != list(range(indices[0], indices[0] + len(indices))):
            raise ConfigurationError(
                "stages must be a contiguous slice of the pipeline",
                details={"stages": [s.value for s in stages]},
            )
        if request.workflowType == WorkflowType.SINGLE_STAGE and len(stages) != 1:
            raise ConfigurationError(
                "single-stage workflow runs exactly one stage",
                details={"stages": [s.value for s in stages]},
            )
        return stages

    def begin(self, context: CampaignContext) -> CampaignContext:
        """Move a fresh context from orchestration onto its first stage."""
        if context.currentPhase != ORCHESTRATION_PHASE:
            raise ConfigurationError(
                "context has already started",
                details={"currentPhase": context.currentPhase},
            )
        first = workflow_stages(context)[0]
        return context.model_copy(update={"currentPhase": first.value})

    def enhance_for_handoff(
        self,
        context: CampaignContext,
        stage_outputs: Mapping[str, Any],
        persistent_updates: Optional[Mapping[str, Any]] = None,
    ) -> CampaignContext:
        """Record the current stage as complete and advance the context.

        ``persistentState`` is merged shallowly: top-level keys from
        ``persistent_updates`` replace existing ones wholesale.
        """
        if context.currentPhase == ORCHESTRATION_PHASE:
            raise ConfigurationError("no stage is running; call begin() first")
        stage = Stage(context.currentPhase)
        if stage in context.handoffChain:
            raise ConfigurationError(
                f"stage {stage.value} is already recorded in the handoff chain",
                details={"handoffChain": [s.value for s in context.handoffChain]},
            )

        outputs = dict(stage_outputs)
        previous = dict(context.previousResults or {})
        previous[stage.value] = outputs
        persistent = dict(context.persistentState)
        persistent.update(persistent_updates or {})

        upcoming = next_stage(stage)
        workflow = workflow_stages(context)
        if upcoming is None or upcoming not in workflow:
            upcoming = stage

        enhanced = context.model_copy(
            update={
                "phaseIndex": context.phaseIndex + 1,
                "handoffChain": [*context.handoffChain, stage],
                "currentPhase": upcoming.value,
                "previousResults": previous,
                "handoffData": outputs,
                "persistentState": persistent,
            }
        )
        log_info(
            context.campaign_id,
            "context:enhance",
            completed=stage.value,
            phaseIndex=enhanced.phaseIndex,
            nextPhase=enhanced.currentPhase,
        )
        return enhanced

    def validate_context(self, context: CampaignContext) -> ValidationResult:
        """Structural checks only; no file system access."""
        errors: List[str] = []
        warnings: List[str] = []

        for name in _REQUIRED_CAMPAIGN_FIELDS:
            value = getattr(context.campaign, name)
            if not isinstance(value, str) or not value.strip():
                errors.append(f"campaign.{name} is required")
        if not context.requestId:
            errors.append("requestId is required")
        if not context.correlationId:
            errors.append("correlationId is required")

        chain = list(context.handoffChain)
        if chain != STAGE_ORDER[: len(chain)]:
            errors.append(
                "handoffChain must be an ordered prefix of "
                f"{[s.value for s in STAGE_ORDER]}, got {[s.value for s in chain]}"
            )
        if context.phaseIndex != len(chain):
            errors.append(f"phaseIndex {context.phaseIndex} does not match handoffChain length {len(chain)}")
        if context.totalPhases != TOTAL_STAGES:
            warnings.append(f"totalPhases is {context.totalPhases}, pipeline has {TOTAL_STAGES} stages")

        phase = context.currentPhase
        workflow = workflow_stages(context)
        if phase == ORCHESTRATION_PHASE:
            if chain != STAGE_ORDER[: STAGE_ORDER.index(workflow[0])]:
                errors.append("orchestration phase is only valid before the first stage runs")
        elif chain and chain[-1] == workflow[-1]:
            # finished runs stay on their last stage
            if phase != chain[-1].value:
                errors.append(f"finished workflow must stay on {chain[-1].value}, got {phase}")
        elif len(chain) < TOTAL_STAGES and phase != STAGE_ORDER[len(chain)].value:
            errors.append(
                f"currentPhase {phase} does not follow handoffChain; expected {STAGE_ORDER[len(chain)].value}"
            )

        if context.previousResults is not None:
            unknown = [k for k in context.previousResults if k not in {s.value for s in chain}]
            if unknown:
                errors.append(f"previousResults holds stages not in handoffChain: {unknown}")

        return ValidationResult(errors=errors, warnings=warnings)


__all__ = ["ContextManager", "workflow_stages"]
