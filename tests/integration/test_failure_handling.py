from datetime import timedelta

import httpx
import pytest

from flowline.config import EngineConfig
from flowline.engine import WorkflowEngine
from flowline.errors import TaskOutputValidationError
from flowline.models import RunStatus, TaskStatus, TaskType


def _always(to):
    return [{"to": to, "condition_type": "always"}]


def _charge(on_failure=None, retry_policy=None, transitions=None, extra_steps=()):
    error_handling = {}
    if on_failure:
        error_handling["on_failure"] = on_failure
    if retry_policy:
        error_handling["retry_policy"] = retry_policy
    return {
        "name": "billing",
        "start_step": "charge",
        "steps": [
            {
                "type": "agent_execution",
                "name": "charge",
                "agent_identifier": "charger",
                "error_handling": error_handling,
                "transitions": transitions or _always("done"),
            },
            {"type": "end", "name": "done"},
            *extra_steps,
        ],
    }


class FlakyCharger:
    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    def __call__(self, config, data):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError("card declined")
        return {"charged": True}


@pytest.mark.asyncio
async def test_retry_with_exponential_backoff_then_success(engine, agents, clock):
    charger = FlakyCharger(failures=2)
    agents.register("charger", charger)
    await engine.register_definition(
        _charge(retry_policy={"max_attempts": 3, "delay_seconds": 10, "backoff_strategy": "exponential"})
    )

    run = await engine.start_run("billing")
    assert run.status == RunStatus.IN_PROGRESS
    (task,) = await engine.list_tasks(run_id=run.run_id)
    assert task.status == TaskStatus.PENDING
    assert task.retry_count == 1
    (timer,) = await engine.repository.list_timers(run_id=run.run_id)
    assert timer.due_at == clock() + timedelta(seconds=10)

    clock.advance(seconds=9)
    assert await engine.process_due_timers() == 0
    clock.advance(seconds=1)
    assert await engine.process_due_timers() == 1
    (timer,) = await engine.repository.list_timers(run_id=run.run_id)
    assert timer.due_at == clock() + timedelta(seconds=20)

    clock.advance(seconds=20)
    await engine.process_due_timers()

    run = await engine.get_run(run.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.context["charged"] is True
    assert charger.calls == 3
    (task,) = await engine.list_tasks(run_id=run.run_id)
    assert task.status == TaskStatus.COMPLETED
    assert task.retry_count == 2


@pytest.mark.asyncio
async def test_api_step_retries_three_times_then_fails_run(repository, clock, notifications):
    attempts = []

    def handler(request):
        attempts.append(clock())
        return httpx.Response(503, json={"error": "busy"})

    engine = WorkflowEngine(
        repository,
        notification_sink=notifications,
        clock=clock,
        secrets={},
        http_client_factory=lambda timeout: httpx.AsyncClient(
            transport=httpx.MockTransport(handler), timeout=timeout
        ),
    )
    await engine.register_definition(
        {
            "name": "sync",
            "start_step": "call",
            "steps": [
                {
                    "type": "external_api_call",
                    "name": "call",
                    "api_call": {"url_template": "https://api.test/ping"},
                    "error_handling": {
                        "retry_policy": {"max_attempts": 3, "delay_seconds": 1, "backoff_strategy": "fixed"},
                        "on_failure": {"action": "fail_workflow"},
                    },
                    "transitions": _always("done"),
                },
                {"type": "end", "name": "done"},
            ],
        }
    )

    run = await engine.start_run("sync")
    for _ in range(2):
        clock.advance(seconds=1)
        await engine.process_due_timers()

    run = await engine.get_run(run.run_id)
    assert len(attempts) == 3
    assert attempts[1] - attempts[0] == timedelta(seconds=1)
    assert attempts[2] - attempts[1] == timedelta(seconds=1)
    assert run.status == RunStatus.FAILED
    assert run.failure.reason == "step_failed"
    assert run.failure.step_name == "call"
    assert run.failure.details["attempts"] == 3
    assert run.failure.details["details"]["status"] == 503
    (task,) = await engine.list_tasks(run_id=run.run_id)
    assert task.status == TaskStatus.FAILED
    assert await engine.repository.list_timers() == []


@pytest.mark.asyncio
async def test_transition_to_step_on_failure(engine, agents):
    agents.register("charger", FlakyCharger(failures=1))
    await engine.register_definition(
        _charge(
            on_failure={"action": "transition_to_step", "next_step": "manual_billing"},
            extra_steps=[
                {"type": "human_review", "name": "manual_billing", "assigned_role": "billing", "transitions": _always("done")}
            ],
        )
    )

    run = await engine.start_run("billing")

    assert run.status == RunStatus.IN_PROGRESS
    assert run.current_step_name == "manual_billing"
    assert "card declined" in run.context["error"]["message"]
    charge, manual = await engine.list_tasks(run_id=run.run_id)
    assert charge.status == TaskStatus.FAILED
    assert manual.assigned_to_role == "billing"


@pytest.mark.asyncio
async def test_continue_with_error_uses_error_namespace(engine, agents):
    agents.register("charger", FlakyCharger(failures=1))
    await engine.register_definition(
        _charge(
            on_failure={"action": "continue_with_error", "error_output_namespace": "charge_error"},
            transitions=[
                {
                    "to": "declined",
                    "condition_group": {
                        "logical_operator": "AND",
                        "conditions": [{"field": "charge_error", "operator": "exists"}],
                    },
                },
                {"to": "done", "condition_type": "always"},
            ],
            extra_steps=[{"type": "end", "name": "declined", "final_status": "rejected"}],
        )
    )

    run = await engine.start_run("billing")

    assert run.status == RunStatus.REJECTED
    assert run.context["charge_error"]["attempts"] == 1
    assert run.context["charge_error"]["step_name"] == "charge"


@pytest.mark.asyncio
async def test_manual_intervention_retry(engine, agents, notifications):
    charger = FlakyCharger(failures=1)
    agents.register("charger", charger)
    await engine.register_definition(_charge(on_failure={"action": "manual_intervention"}))

    run = await engine.start_run("billing")
    assert run.status == RunStatus.IN_PROGRESS

    (intervention,) = await engine.tasks_for_user("oscar", role="operator")
    assert intervention.type == TaskType.MANUAL_INTERVENTION
    assert intervention.status == TaskStatus.REQUIRES_ESCALATION
    assert "card declined" in intervention.input["error"]["message"]
    assert [n.kind for n in notifications.for_recipient("operator")] == ["manual_intervention"]

    with pytest.raises(TaskOutputValidationError):
        await engine.complete_task(intervention.task_id, {"action": "shrug"})

    await engine.complete_task(intervention.task_id, {"action": "retry"}, user_id="oscar")

    run = await engine.get_run(run.run_id)
    assert run.status == RunStatus.COMPLETED
    assert charger.calls == 2
    charges = [t for t in await engine.list_tasks(run_id=run.run_id) if t.type == TaskType.AGENT_EXECUTION]
    assert [t.status for t in charges] == [TaskStatus.FAILED, TaskStatus.COMPLETED]


@pytest.mark.asyncio
async def test_manual_intervention_skip_merges_operator_output(engine, agents):
    agents.register("charger", FlakyCharger(failures=5))
    await engine.register_definition(_charge(on_failure={"action": "manual_intervention"}))
    run = await engine.start_run("billing")
    (intervention,) = await engine.list_tasks(run_id=run.run_id, status=TaskStatus.REQUIRES_ESCALATION)

    await engine.complete_task(intervention.task_id, {"action": "skip", "charged": False})

    run = await engine.get_run(run.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.context["charged"] is False
    assert "action" not in run.context


@pytest.mark.asyncio
async def test_manual_intervention_fail(engine, agents):
    agents.register("charger", FlakyCharger(failures=5))
    await engine.register_definition(_charge(on_failure={"action": "manual_intervention"}))
    run = await engine.start_run("billing")
    (intervention,) = await engine.list_tasks(run_id=run.run_id, status=TaskStatus.REQUIRES_ESCALATION)

    await engine.complete_task(intervention.task_id, {"action": "fail", "reason": "suspected fraud"})

    run = await engine.get_run(run.run_id)
    assert run.status == RunStatus.FAILED
    assert run.failure.reason == "manual_intervention_rejected"
    assert run.failure.message == "suspected fraud"


@pytest.mark.asyncio
async def test_unknown_agent_fails_the_run(engine):
    await engine.register_definition(_charge())
    run = await engine.start_run("billing")
    assert run.status == RunStatus.FAILED
    assert "Unknown agent 'charger'" in run.failure.message


@pytest.mark.asyncio
async def test_non_dict_agent_output_is_wrapped(engine, agents):
    async def charger(config, data):
        return 42

    agents.register("charger", charger)
    await engine.register_definition(_charge())
    run = await engine.start_run("billing")
    assert run.status == RunStatus.COMPLETED
    assert run.context["result"] == 42


def _scored(no_match_policy=None):
    definition = _charge(
        transitions=[
            {
                "to": "done",
                "condition_group": {
                    "logical_operator": "AND",
                    "conditions": [{"field": "score", "operator": ">", "value": 50}],
                },
            }
        ]
    )
    if no_match_policy:
        definition["no_match_policy"] = no_match_policy
    return definition


@pytest.mark.asyncio
async def test_no_matching_transition_fails_by_default(engine, agents):
    agents.register("charger", lambda config, data: {"score": 10})
    await engine.register_definition(_scored())

    run = await engine.start_run("billing")

    assert run.status == RunStatus.FAILED
    assert run.failure.reason == "transition_exhausted"
    assert run.failure.step_name == "charge"
    assert run.results_json == {"score": 10}


@pytest.mark.asyncio
async def test_no_match_policy_complete(engine, agents):
    agents.register("charger", lambda config, data: {"score": 10})
    await engine.register_definition(_scored("complete"))

    run = await engine.start_run("billing")
    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_engine_wide_no_match_policy(repository, agents, clock):
    agents.register("charger", lambda config, data: {"score": 10})
    engine = WorkflowEngine(
        repository, agents, config=EngineConfig(no_match_policy="complete"), clock=clock, secrets={}
    )
    await engine.register_definition(_scored())

    run = await engine.start_run("billing")
    assert run.status == RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_end_step(engine):
    await engine.register_definition(
        {"name": "abort", "start_step": "stop", "steps": [{"type": "end", "name": "stop", "final_status": "failed"}]}
    )
    run = await engine.start_run("abort")
    assert run.status == RunStatus.FAILED
    assert run.failure.reason == "end_step"
    assert run.ended_at is not None
