"""Sequential campaign pipeline.

Runs each stage's specialist in order and gates every transition on the
four-layer validator. A failed gate halts the campaign: metadata is marked
``failed`` and the layer error propagates with the full validation result.
Continuity scoring and the monitor summary run after the last stage and are
diagnostic only.
"""
import asyncio
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import BaseModel, Field

from campaignflow.agents.base import Specialist
from campaignflow.agents.registry import SpecialistRegistry
from campaignflow.handoffs.builder import HandoffBuilder
from campaignflow.handoffs.context_manager import ContextManager, workflow_stages
from campaignflow.handoffs.continuity import ContinuityAnalyzer
from campaignflow.handoffs.monitor import HandoffMonitor
from campaignflow.handoffs.path_resolver import CampaignPathResolver
from campaignflow.handoffs.validator import HandoffValidator
from campaignflow.shared.async_io import run_io
from campaignflow.shared.campaign_metadata import CampaignMetadataStore
from campaignflow.shared.logging_utils import error as log_error
from campaignflow.shared.logging_utils import info as log_info
from campaignflow.shared.logging_utils import warning as log_warning
from campaignflow.shared.settings import HandoffSettings
from campaignflow.specs.common.enums import (
    PHASE_LABELS,
    STAGE_ORDER,
    CampaignStatus,
    Stage,
    next_stage,
    previous_stage,
)
from campaignflow.specs.common.errors import ConfigurationError, HandoffConflictError, PersistenceError
from campaignflow.specs.models.context import CampaignContext, CampaignRequest
from campaignflow.specs.models.continuity import ContinuityReport
from campaignflow.specs.models.envelope import HandoffEnvelope, transition_name
from campaignflow.specs.models.metadata import CampaignMetadata
from campaignflow.specs.models.monitoring import HandoffSummary
from campaignflow.specs.models.validation import ValidationResult

# keys a specialist may return alongside its deliverables
NOTES_KEY = "handoff_data"
PERSISTENT_KEY = "persistent_state"


class PipelineResult(BaseModel):
    campaign_id: str
    campaign_path: str
    status: CampaignStatus
    context: CampaignContext
    envelopes: List[HandoffEnvelope] = Field(default_factory=list)
    validations: Dict[str, ValidationResult] = Field(default_factory=dict)
    continuity: Optional[ContinuityReport] = None
    summary: Optional[HandoffSummary] = None
    metadata: Optional[CampaignMetadata] = None

    @property
    def final_envelope(self) -> Optional[HandoffEnvelope]:
        return self.envelopes[-1] if self.envelopes else None


class CampaignPipeline:
    """Wire the handoff core together for one campaign run at a time.

    Collaborators default to instances built from ``settings``; pass your own
    to share a monitor across pipelines or to substitute test doubles.
    """

    def __init__(
        self,
        specialists: Union[SpecialistRegistry, Iterable[Specialist]],
        settings: Optional[HandoffSettings] = None,
        *,
        resolver: Optional[CampaignPathResolver] = None,
        context_manager: Optional[ContextManager] = None,
        builder: Optional[HandoffBuilder] = None,
        validator: Optional[HandoffValidator] = None,
        analyzer: Optional[ContinuityAnalyzer] = None,
        monitor: Optional[HandoffMonitor] = None,
        metadata_store: Optional[CampaignMetadataStore] = None,
    ) -> None:
        self.settings = settings or HandoffSettings.from_env()
        self.registry = specialists if isinstance(specialists, SpecialistRegistry) else SpecialistRegistry(specialists)
        self.resolver = resolver or CampaignPathResolver(self.settings)
        self.contexts = context_manager or ContextManager()
        self.builder = builder or HandoffBuilder(self.settings, self.resolver)
        self.validator = validator or HandoffValidator(self.settings, self.resolver)
        self.analyzer = analyzer or ContinuityAnalyzer(self.settings)
        self.monitor = monitor or HandoffMonitor(self.settings)
        self.metadata = metadata_store or CampaignMetadataStore(self.settings)

    async def run(
        self,
        request: Union[CampaignRequest, Mapping[str, Any]],
        *,
        supersede: bool = False,
    ) -> PipelineResult:
        context = self.contexts.create_context(request)
        stages = workflow_stages(context)
        missing = self.registry.missing(stages)
        if missing:
            raise ConfigurationError(
                "no specialist registered for: " + ", ".join(s.value for s in missing),
                details={"missing": [s.value for s in missing]},
            )

        campaign_id = context.campaign_id
        # pre-flight checks run before anything is written
        prior_outputs = await self._preflight(self.resolver.resolve(context), stages, supersede)
        root = await run_io(
            self.resolver.ensure_layout,
            context,
            timeout=self.settings.io_timeout_seconds,
            operation="create campaign layout",
        )
        self.monitor.register_campaign(campaign_id, root)
        await self.metadata.create(context)
        context = self.contexts.begin(context)
        await self.metadata.mark_in_progress(root, PHASE_LABELS[stages[0]].value)
        log_info(
            campaign_id,
            "pipeline:start",
            stages=[s.value for s in stages],
            workflowType=context.workflowType.value,
            campaignPath=root,
        )

        envelopes: List[HandoffEnvelope] = []
        validations: Dict[str, ValidationResult] = {}
        stage: Optional[Stage] = None
        try:
            outputs: Dict[str, Any] = prior_outputs
            if outputs:
                context = context.model_copy(update={"previousResults": dict(outputs)})

            for stage in stages:
                context, envelope, result = await self._run_stage(stage, context, outputs, root, supersede)
                validations[envelope.transition] = result
                envelopes.append(envelope)
                outputs = {k: v.model_dump(mode="json") for k, v in envelope.specialist_outputs.items()}
                await self.metadata.record_handoff(root, envelope)
        except asyncio.CancelledError:
            log_warning(campaign_id, "pipeline:cancelled", stage=stage.value if stage else None)
            await self._safely(self.metadata.mark_cancelled(root), campaign_id, "mark cancelled")
            raise
        except HandoffConflictError as exc:
            # another writer owns the campaign; its metadata is left alone
            log_warning(campaign_id, "pipeline:conflict", stage=stage.value if stage else None, error=str(exc))
            raise
        except Exception as exc:
            log_error(
                campaign_id,
                "pipeline:failed",
                stage=stage.value if stage else None,
                error=exc.to_dict() if hasattr(exc, "to_dict") else str(exc),
            )
            await self._safely(self.metadata.mark_failed(root, exc, stage), campaign_id, "mark failed")
            raise

        continuity = await self._continuity(root, campaign_id)
        summary = await self.monitor.summarize(campaign_id)
        if stages[-1] == STAGE_ORDER[-1]:
            meta = await self.metadata.mark_completed(root)
        else:
            # a slice that stops short of delivery leaves the campaign open
            meta = await self.metadata.load(root)
        log_info(
            campaign_id,
            "pipeline:complete",
            status=meta.status.value,
            handoffs=len(envelopes),
            continuityScore=continuity.continuity_score if continuity else None,
        )
        return PipelineResult(
            campaign_id=campaign_id,
            campaign_path=root,
            status=meta.status,
            context=context,
            envelopes=envelopes,
            validations=validations,
            continuity=continuity,
            summary=summary,
            metadata=meta,
        )

    async def _run_stage(
        self,
        stage: Stage,
        context: CampaignContext,
        outputs: Mapping[str, Any],
        root: str,
        supersede: bool,
    ):
        target = next_stage(stage)
        transition = transition_name(stage, target)
        phase = PHASE_LABELS[target or stage].value
        specialist = self.registry.get(stage).with_trace(context.traceId)

        async with self.monitor.track(context.campaign_id, stage.value, target.value if target else None) as timer:
            started = time.perf_counter()
            produced = dict(await specialist.run(context, dict(outputs)))
            notes = produced.pop(NOTES_KEY, None)
            persistent = produced.pop(PERSISTENT_KEY, None)

            context = self.contexts.enhance_for_handoff(context, produced, persistent)
            check = self.contexts.validate_context(context)
            if not check.isValid:
                raise ConfigurationError(
                    f"context is inconsistent after {stage.value}",
                    details={"transition": transition, "validation": check.model_dump()},
                )

            persist_started = time.perf_counter()
            envelope = await self.builder.build(
                stage,
                target,
                context,
                produced,
                handoff_data=notes,
                execution_time=round(time.perf_counter() - started, 3),
                supersede=supersede,
            )
            timer.persistence_duration = (time.perf_counter() - persist_started) * 1000
            timer.measure_payload(envelope.model_dump_json().encode("utf-8"))

            validation_started = time.perf_counter()
            result = await self.validator.validate(envelope, root)
            timer.validation_duration = (time.perf_counter() - validation_started) * 1000
            self.validator.ensure_valid(result, transition=transition, workflow_phase=phase)

        return context, envelope, result

    async def _preflight(self, root: str, stages: List[Stage], supersede: bool) -> Dict[str, Any]:
        """Refuse a run that would clobber envelopes or build on a rejected one.

        Returns the outputs recorded before ``stages[0]`` (empty for a run
        that starts at the first stage).
        """
        if not supersede:
            existing = []
            for stage in stages:
                path = self.builder.envelope_path(root, stage, next_stage(stage))
                if await run_io(path.exists, timeout=self.settings.io_timeout_seconds, operation="check envelope"):
                    existing.append(path.name)
            if existing:
                raise HandoffConflictError(
                    f"{len(existing)} handoff envelope(s) already exist; pass supersede=True to re-run",
                    details={"campaignPath": root, "existing": existing},
                )

        first = stages[0]
        prior = previous_stage(first)
        if prior is None:
            return {}

        transition = transition_name(prior, first)
        envelope = await self.builder.load_envelope(root, prior, first)
        result = await self.validator.validate(envelope, root)
        self.validator.ensure_valid(result, transition=transition, workflow_phase=PHASE_LABELS[first].value)

        meta = await self._existing_metadata(root)
        failure = meta.failure if meta is not None and meta.status == CampaignStatus.FAILED else None
        if failure is not None and failure.transition == transition:
            raise ConfigurationError(
                f"{transition} was rejected; re-run {prior.value} with supersede=True first",
                details={"transition": transition, "layer": failure.layer, "failedAt": failure.failed_at},
            )
        return {k: v.model_dump(mode="json") for k, v in envelope.specialist_outputs.items()}

    async def _existing_metadata(self, root: str) -> Optional[CampaignMetadata]:
        try:
            return await self.metadata.load(root)
        except PersistenceError:
            return None

    async def _continuity(self, root: str, campaign_id: str) -> Optional[ContinuityReport]:
        try:
            chain = await self.builder.load_chain(root)
            report = self.analyzer.analyze(chain)
        except Exception as exc:  # diagnostics never halt a finished run
            log_error(campaign_id, "continuity:failed", error=str(exc))
            return None
        for issue in report.critical_issues:
            log_error(
                campaign_id,
                "continuity:critical",
                transition=issue.transition,
                issueType=issue.issue_type.value,
                score=issue.score,
                description=issue.description,
            )
        return report

    @staticmethod
    async def _safely(operation, campaign_id: str, label: str) -> None:
        try:
            await operation
        except Exception as exc:  # the original failure is what the caller sees
            log_error(campaign_id, f"pipeline:{label.replace(' ', '_')}_failed", error=str(exc))


__all__ = ["CampaignPipeline", "PipelineResult"]
