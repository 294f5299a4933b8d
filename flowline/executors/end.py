from __future__ import annotations

from ..contracts import EndStep
from .base import Finished, StepExecutor, StepOutcome, StepRuntime, StepWork


class EndExecutor(StepExecutor):
    async def execute(self, work: StepWork, runtime: StepRuntime) -> StepOutcome:
        step: EndStep = work.step
        return Finished(step.final_status)
