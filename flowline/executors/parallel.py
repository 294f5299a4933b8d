"""Parallel fan-out and the join barrier."""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, Optional

from ..contracts import ParallelStep, WorkflowDefinition
from ..models import BranchCursor, BranchStatus, WorkflowRun
from ..utils.paths import MISSING
from .base import Completed, FannedOut, StepExecutor, StepOutcome, StepRuntime, StepWork, Waiting

logger = logging.getLogger(__name__)


class ParallelExecutor(StepExecutor):
    async def execute(self, work: StepWork, runtime: StepRuntime) -> StepOutcome:
        step: ParallelStep = work.step
        return FannedOut(
            [
                BranchCursor(
                    name=branch.name,
                    parallel_step=step.name,
                    join_step=step.join_on,
                    current_step=branch.start_step,
                    context=copy.deepcopy(work.run.context),
                )
                for branch in step.branches
            ]
        )


class JoinExecutor(StepExecutor):
    """A join only lets the main cursor through once its region is closed."""

    async def execute(self, work: StepWork, runtime: StepRuntime) -> StepOutcome:
        pending = [
            cursor.name
            for cursor in work.run.active_parallel_branches.values()
            if cursor.join_step == work.step.name and cursor.status != BranchStatus.ARRIVED
        ]
        if pending:
            return Waiting()
        return Completed({})


def arrive_at_join(
    run: WorkflowRun, definition: WorkflowDefinition, branch: str
) -> Optional[Dict[str, Any]]:
    """Mark ``branch`` arrived at its join.

    Each branch starts from a copy of the run context taken at the fork. When
    it is the last branch of its region, the region is closed: the keys each
    branch changed are merged into the run context in declared branch order
    (earlier branches win on key collisions) and the merged values are returned.
    Returns ``None`` while other branches are still running.
    """
    cursor = run.active_parallel_branches[branch]
    cursor.status = BranchStatus.ARRIVED
    cursor.current_step = cursor.join_step
    region = [
        c for c in run.active_parallel_branches.values() if c.join_step == cursor.join_step
    ]
    if any(c.status != BranchStatus.ARRIVED for c in region):
        logger.debug(f"Branch {branch} of run {run.run_id} waiting at {cursor.join_step}")
        return None

    parallel = definition.parallel_for_join(cursor.join_step)
    order = [b.name for b in parallel.branches] if parallel else [c.name for c in region]
    merged: Dict[str, Any] = {}
    for name in order:
        member = run.active_parallel_branches.get(name)
        if member is None:
            continue
        for key, value in member.context.items():
            if key in merged or run.context.get(key, MISSING) == value:
                continue
            merged[key] = value
    run.context.update(merged)
    for c in region:
        del run.active_parallel_branches[c.name]
    logger.info(f"Run {run.run_id} joined {len(region)} branches at {cursor.join_step}")
    return merged
