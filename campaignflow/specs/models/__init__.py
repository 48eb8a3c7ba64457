from __future__ import annotations

from typing import Dict, Type

from pydantic import BaseModel

from .context import CampaignContext, CampaignInfo, CampaignRequest, ExecutionSettings
from .outputs import (
    STAGE_OUTPUT_MODELS,
    ContentOutput,
    DataCollectionOutput,
    DeliveryOutput,
    DesignOutput,
    FileReference,
    QualityOutput,
    StageOutput,
    parse_stage_output,
)
from .envelope import (
    CampaignContextSnapshot,
    HandoffEnvelope,
    HandoffInfo,
    HandoffNotes,
    WorkflowStatus,
    envelope_file_name,
    transition_name,
)
from .validation import ValidationResult
from .continuity import ContinuityIssue, ContinuityReport, RollbackTrigger, TransitionScore
from .monitoring import HandoffMetrics, HandoffSummary, HealthStatus
from .metadata import CampaignMetadata, FailureInfo, LastHandoff


# Registry mapping output schema filenames to models for generation
SCHEMA_MODELS: Dict[str, Type[BaseModel]] = {
    "campaign.request.schema.json": CampaignRequest,
    "campaign.context.schema.json": CampaignContext,
    "campaign.metadata.schema.json": CampaignMetadata,
    "handoff.envelope.schema.json": HandoffEnvelope,
    "handoff.metrics.schema.json": HandoffMetrics,
    "handoff.summary.schema.json": HandoffSummary,
    "validation.result.schema.json": ValidationResult,
    "continuity.report.schema.json": ContinuityReport,
    "output.data-collection.schema.json": DataCollectionOutput,
    "output.content.schema.json": ContentOutput,
    "output.design.schema.json": DesignOutput,
    "output.quality.schema.json": QualityOutput,
    "output.delivery.schema.json": DeliveryOutput,
}

__all__ = [
    "CampaignContext",
    "CampaignInfo",
    "CampaignRequest",
    "ExecutionSettings",
    "STAGE_OUTPUT_MODELS",
    "StageOutput",
    "FileReference",
    "DataCollectionOutput",
    "ContentOutput",
    "DesignOutput",
    "QualityOutput",
    "DeliveryOutput",
    "parse_stage_output",
    "HandoffEnvelope",
    "HandoffInfo",
    "CampaignContextSnapshot",
    "WorkflowStatus",
    "HandoffNotes",
    "envelope_file_name",
    "transition_name",
    "ValidationResult",
    "TransitionScore",
    "ContinuityIssue",
    "RollbackTrigger",
    "ContinuityReport",
    "HandoffMetrics",
    "HandoffSummary",
    "HealthStatus",
    "CampaignMetadata",
    "FailureInfo",
    "LastHandoff",
    "SCHEMA_MODELS",
]
