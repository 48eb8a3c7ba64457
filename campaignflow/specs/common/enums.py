from enum import Enum
from typing import List, Optional


class Stage(str, Enum):
    DATA_COLLECTION = "data-collection"
    CONTENT = "content"
    DESIGN = "design"
    QUALITY = "quality"
    DELIVERY = "delivery"


class WorkflowPhase(str, Enum):
    DATA_COLLECTION = "data-collection"
    CONTENT_GENERATION = "content-generation"
    DESIGN_CREATION = "design-creation"
    QUALITY_ASSURANCE = "quality-assurance"
    DELIVERY_PREPARATION = "delivery-preparation"


class WorkflowType(str, Enum):
    FULL_PIPELINE = "full-pipeline"
    SINGLE_STAGE = "single-stage"
    TEST = "test"
    PARTIAL = "partial"


class CampaignType(str, Enum):
    PROMOTIONAL = "promotional"
    TRANSACTIONAL = "transactional"
    NEWSLETTER = "newsletter"
    ANNOUNCEMENT = "announcement"


class CampaignStatus(str, Enum):
    CREATED = "created"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ExecutionMode(str, Enum):
    PRODUCTION = "production"
    DEVELOPMENT = "development"
    TEST = "test"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class IssueType(str, Enum):
    DATA_LOSS = "data_loss"
    QUALITY_DEGRADATION = "quality_degradation"
    SPECIFICATION_DRIFT = "specification_drift"
    CONTEXT_LOSS = "context_loss"


ORCHESTRATION_PHASE = "orchestration"

STAGE_ORDER: List[Stage] = [
    Stage.DATA_COLLECTION,
    Stage.CONTENT,
    Stage.DESIGN,
    Stage.QUALITY,
    Stage.DELIVERY,
]

TOTAL_STAGES = len(STAGE_ORDER)

PHASE_LABELS = {
    Stage.DATA_COLLECTION: WorkflowPhase.DATA_COLLECTION,
    Stage.CONTENT: WorkflowPhase.CONTENT_GENERATION,
    Stage.DESIGN: WorkflowPhase.DESIGN_CREATION,
    Stage.QUALITY: WorkflowPhase.QUALITY_ASSURANCE,
    Stage.DELIVERY: WorkflowPhase.DELIVERY_PREPARATION,
}


def stage_index(stage: "Stage | str") -> int:
    return STAGE_ORDER.index(Stage(stage))


def next_stage(stage: "Stage | str") -> Optional[Stage]:
    idx = stage_index(stage)
    if idx + 1 >= TOTAL_STAGES:
        return None
    return STAGE_ORDER[idx + 1]


def previous_stage(stage: "Stage | str") -> Optional[Stage]:
    idx = stage_index(stage)
    if idx == 0:
        return None
    return STAGE_ORDER[idx - 1]


def completion_percentage(completed_count: int, total: int = TOTAL_STAGES) -> float:
    """Share of completed stages, in percent."""
    return completed_count / total * 100
