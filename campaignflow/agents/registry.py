from typing import Dict, Iterable, List, Optional, Union

from campaignflow.agents.base import CallableSpecialist, Specialist, StageCallable
from campaignflow.shared.logging_utils import info as log_info
from campaignflow.specs.common.enums import STAGE_ORDER, Stage
from campaignflow.specs.common.errors import ConfigurationError


class SpecialistRegistry:
    """Map each stage to the specialist that runs it.

    The registry is per pipeline instance; nothing is shared across campaigns.
    """

    def __init__(self, specialists: Optional[Iterable[Specialist]] = None) -> None:
        self._by_stage: Dict[Stage, Specialist] = {}
        for specialist in specialists or []:
            self.register(specialist)

    def register(self, specialist: Union[Specialist, StageCallable], stage: Optional[Union[Stage, str]] = None) -> Specialist:
        if not isinstance(specialist, Specialist):
            if stage is None:
                raise ConfigurationError("a stage is required when registering a plain callable")
            specialist = CallableSpecialist(stage, specialist)
        elif stage is not None and Stage(stage) != specialist.stage:
            raise ConfigurationError(
                "specialist stage does not match registration",
                details={"stage": Stage(stage).value, "specialistStage": specialist.stage.value},
            )
        self._by_stage[specialist.stage] = specialist
        log_info(None, "specialist:register", stage=specialist.stage.value, specialist=type(specialist).__name__)
        return specialist

    def get(self, stage: Union[Stage, str]) -> Specialist:
        key = Stage(stage)
        specialist = self._by_stage.get(key)
        if specialist is None:
            raise ConfigurationError(f"no specialist registered for stage '{key.value}'", details={"stage": key.value})
        return specialist

    def missing(self, stages: Optional[Iterable[Union[Stage, str]]] = None) -> List[Stage]:
        wanted = [Stage(s) for s in stages] if stages is not None else list(STAGE_ORDER)
        return [s for s in wanted if s not in self._by_stage]

    def __contains__(self, stage: object) -> bool:
        try:
            return Stage(stage) in self._by_stage
        except ValueError:
            return False


__all__ = ["SpecialistRegistry"]
