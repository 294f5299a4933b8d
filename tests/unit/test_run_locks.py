import asyncio
import gc

import pytest

from flowline.engine import RunLocks
from flowline.models import RunStatus


@pytest.mark.asyncio
async def test_lock_is_shared_while_held_and_released_afterwards():
    locks = RunLocks()
    async with locks.get("run-1"):
        assert locks.get("run-1").locked()
        assert len(locks) == 1
    gc.collect()
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_waiters_serialize_on_the_same_lock():
    locks = RunLocks()
    order = []

    async def worker(name):
        async with locks.get("run-1"):
            order.append(f"{name}-in")
            await asyncio.sleep(0)
            order.append(f"{name}-out")

    await asyncio.gather(worker("a"), worker("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]
    gc.collect()
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_engine_keeps_no_locks_for_finished_runs(engine, agents):
    agents.register("noop", lambda config, data: {})
    await engine.register_definition(
        {
            "name": "tiny",
            "start_step": "work",
            "steps": [
                {
                    "type": "agent_execution",
                    "name": "work",
                    "agent_identifier": "noop",
                    "transitions": [{"to": "done", "condition_type": "always"}],
                },
                {"type": "end", "name": "done"},
            ],
        }
    )

    for _ in range(3):
        run = await engine.start_run("tiny")
        assert run.status == RunStatus.COMPLETED

    gc.collect()
    assert len(engine._locks) == 0
