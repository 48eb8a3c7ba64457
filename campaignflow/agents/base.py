from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Mapping, Union

from campaignflow.specs.common.enums import Stage
from campaignflow.specs.models.context import CampaignContext


class Specialist(ABC):
    """Abstract base class for the stage specialists.

    A specialist receives the current campaign context and the accumulated
    outputs of the stages before it, and returns its own deliverables as a
    plain mapping. Validation of that mapping happens in the handoff layer.
    """

    stage: Stage

    def __init__(self) -> None:
        self._trace_id: str | None = None

    def with_trace(self, trace_id: str | None) -> "Specialist":
        """Attach a traceId for downstream logging."""

        self._trace_id = trace_id
        return self

    @abstractmethod
    async def run(self, context: CampaignContext, specialist_outputs: Mapping[str, Any]) -> Dict[str, Any]:
        """Execute the stage and return its structured output."""


StageCallable = Callable[[CampaignContext, Mapping[str, Any]], Union[Dict[str, Any], Awaitable[Dict[str, Any]]]]


class CallableSpecialist(Specialist):
    """Wrap a plain function (sync or async) as a specialist."""

    def __init__(self, stage: Union[Stage, str], func: StageCallable) -> None:
        super().__init__()
        self.stage = Stage(stage)
        self._func = func

    async def run(self, context: CampaignContext, specialist_outputs: Mapping[str, Any]) -> Dict[str, Any]:
        result = self._func(context, specialist_outputs)
        if inspect.isawaitable(result):
            result = await result
        return dict(result or {})


__all__ = ["Specialist", "CallableSpecialist", "StageCallable"]
