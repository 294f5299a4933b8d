from datetime import timedelta

import pytest

from flowline.errors import (
    InvalidTaskStateError,
    StartDataValidationError,
    TaskOutputValidationError,
)
from flowline.models import RunStatus, TaskStatus, TaskType


def _approval(**decision):
    step = {
        "type": "decision",
        "name": "decide",
        "assigned_role": "approvers",
        "deadline_minutes": 60,
        "form_schema": {
            "type": "object",
            "properties": {"outcome": {"enum": ["approved", "rejected"]}},
            "required": ["outcome"],
        },
        "transitions": [
            {
                "to": "approved",
                "condition_group": {
                    "logical_operator": "AND",
                    "conditions": [{"field": "output.outcome", "operator": "==", "value": "approved"}],
                },
            },
            {"to": "rejected", "condition_type": "always"},
        ],
    }
    step.update(decision)
    return {
        "name": "loan_approval",
        "start_step": "score",
        "input_schema": {
            "type": "object",
            "properties": {"amount": {"type": "number"}},
            "required": ["amount"],
        },
        "steps": [
            {
                "type": "agent_execution",
                "name": "score",
                "agent_identifier": "scorer",
                "configuration": {"model": "v2"},
                "default_input": {"threshold": 500, "currency": "EUR"},
                "output_namespace": "risk",
                "transitions": [{"to": "decide", "condition_type": "always"}],
            },
            step,
            {"type": "end", "name": "approved", "final_status": "approved"},
            {"type": "end", "name": "rejected", "final_status": "rejected"},
        ],
    }


@pytest.fixture
def scorer_calls(agents):
    calls = []

    def scorer(configuration, data):
        calls.append((configuration, data))
        return {"score": 80 if data["amount"] < data["threshold"] * 4 else 20}

    agents.register("scorer", scorer)
    return calls


@pytest.mark.asyncio
async def test_agent_then_decision_then_approved_end(engine, clock, notifications, scorer_calls):
    await engine.register_definition(_approval())
    start = clock()

    run = await engine.start_run("loan_approval", {"amount": 1200}, triggered_by="erin")

    assert run.status == RunStatus.IN_PROGRESS
    assert run.current_step_name == "decide"
    assert run.context == {"amount": 1200, "risk": {"score": 80}}
    assert scorer_calls == [({"model": "v2"}, {"amount": 1200, "threshold": 500, "currency": "EUR"})]

    agent_task, decision = await engine.list_tasks(run_id=run.run_id)
    assert agent_task.type == TaskType.AGENT_EXECUTION
    assert agent_task.status == TaskStatus.COMPLETED
    assert agent_task.assigned_to_agent_id == "scorer"
    assert decision.type == TaskType.DECISION
    assert decision.status == TaskStatus.ASSIGNED
    assert decision.assigned_to_role == "approvers"
    assert decision.deadline_at == start + timedelta(minutes=60)
    assert [n.kind for n in notifications.for_recipient("approvers")] == ["task_assigned"]

    clock.advance(minutes=5)
    task = await engine.complete_task(decision.task_id, {"outcome": "approved", "note": "fine"}, user_id="alice")

    assert task.status == TaskStatus.COMPLETED
    assert task.completed_by == "alice"
    run = await engine.get_run(run.run_id)
    assert run.status == RunStatus.APPROVED
    assert run.ended_at == clock()
    assert run.results_json["outcome"] == "approved"
    assert run.results_json["risk"] == {"score": 80}


@pytest.mark.asyncio
async def test_rejection_takes_fallback_transition(engine, scorer_calls):
    await engine.register_definition(_approval())
    run = await engine.start_run("loan_approval", {"amount": 5000})
    assert run.context["risk"]["score"] == 20

    (decision,) = await engine.list_tasks(run_id=run.run_id, status=TaskStatus.ASSIGNED)
    await engine.complete_task(decision.task_id, {"outcome": "rejected"})

    run = await engine.get_run(run.run_id)
    assert run.status == RunStatus.REJECTED
    assert run.status.is_success


@pytest.mark.asyncio
async def test_invalid_task_output_keeps_task_open(engine, scorer_calls):
    await engine.register_definition(_approval())
    run = await engine.start_run("loan_approval", {"amount": 10})
    (decision,) = await engine.list_tasks(run_id=run.run_id, status=TaskStatus.ASSIGNED)

    with pytest.raises(TaskOutputValidationError) as exc_info:
        await engine.complete_task(decision.task_id, {"outcome": "maybe"})
    assert exc_info.value.errors

    assert (await engine.get_task(decision.task_id)).status == TaskStatus.ASSIGNED
    assert (await engine.get_run(run.run_id)).current_step_name == "decide"


@pytest.mark.asyncio
async def test_closed_and_engine_managed_tasks_cannot_be_completed(engine, scorer_calls):
    await engine.register_definition(_approval())
    run = await engine.start_run("loan_approval", {"amount": 10})
    agent_task, decision = await engine.list_tasks(run_id=run.run_id)

    with pytest.raises(InvalidTaskStateError):
        await engine.complete_task(agent_task.task_id, {"score": 1})

    await engine.complete_task(decision.task_id, {"outcome": "approved"})
    with pytest.raises(InvalidTaskStateError):
        await engine.complete_task(decision.task_id, {"outcome": "rejected"})


@pytest.mark.asyncio
async def test_start_data_is_validated_against_input_schema(engine, scorer_calls):
    await engine.register_definition(_approval())

    with pytest.raises(StartDataValidationError) as exc_info:
        await engine.start_run("loan_approval", {"amount": "lots"})

    assert "amount: 'lots' is not of type 'number'" in exc_info.value.errors
    assert await engine.list_runs() == []
    assert scorer_calls == []


@pytest.mark.asyncio
async def test_definition_versions_are_pinned_per_run(engine, scorer_calls):
    await engine.register_definition(_approval())
    v2 = _approval()
    v2["version"] = 2
    v2["steps"][0]["output_namespace"] = "risk_v2"
    await engine.register_definition(v2)

    latest = await engine.start_run("loan_approval", {"amount": 10})
    pinned = await engine.start_run("loan_approval", {"amount": 10}, version=1)

    assert latest.definition_version == 2 and "risk_v2" in latest.context
    assert pinned.definition_version == 1 and "risk" in pinned.context


@pytest.mark.asyncio
async def test_claim_and_comments(engine, scorer_calls):
    await engine.register_definition(_approval())
    run = await engine.start_run("loan_approval", {"amount": 10})
    (decision,) = await engine.list_tasks(run_id=run.run_id, status=TaskStatus.ASSIGNED)

    assert [t.task_id for t in await engine.tasks_for_user("carol", role="approvers")] == [decision.task_id]
    task = await engine.claim_task(decision.task_id, "carol")
    assert task.assigned_to_user_id == "carol"
    assert task.assigned_to_role is None
    assert task.status == TaskStatus.IN_PROGRESS

    with pytest.raises(InvalidTaskStateError):
        await engine.claim_task(decision.task_id, "dan")

    await engine.add_comment(decision.task_id, "carol", "Checking the payslips")
    comments = await engine.list_comments(decision.task_id)
    assert [(c.user_id, c.text) for c in comments] == [("carol", "Checking the payslips")]


@pytest.mark.asyncio
async def test_notify_escalation_after_deadline(engine, clock, notifications, events, scorer_calls):
    await engine.register_definition(
        _approval(
            escalation_policy={
                "after_minutes": 30,
                "action": "notify_manager_role",
                "target_role": "credit_managers",
            }
        )
    )
    run = await engine.start_run("loan_approval", {"amount": 10})
    (timer,) = await engine.repository.list_timers(run_id=run.run_id)
    assert timer.due_at == clock() + timedelta(minutes=90)

    clock.advance(minutes=89)
    assert await engine.process_due_timers() == 0

    clock.advance(minutes=1)
    assert await engine.process_due_timers() == 1

    (decision,) = [t for t in await engine.list_tasks(run_id=run.run_id) if t.type == TaskType.DECISION]
    assert decision.status == TaskStatus.REQUIRES_ESCALATION
    assert decision.escalated_at == clock()
    assert [n.kind for n in notifications.for_recipient("credit_managers")] == ["task_escalated"]
    assert len(events.named("task_escalated")) == 1
    assert await engine.repository.list_timers(run_id=run.run_id) == []

    await engine.complete_task(decision.task_id, {"outcome": "approved"})
    assert (await engine.get_run(run.run_id)).status == RunStatus.APPROVED


@pytest.mark.asyncio
async def test_custom_event_escalation_without_deadline(engine, clock, events, scorer_calls):
    await engine.register_definition(
        _approval(
            deadline_minutes=None,
            escalation_policy={"after_minutes": 15, "action": "custom_event", "custom_event_name": "sla_breached"},
        )
    )
    run = await engine.start_run("loan_approval", {"amount": 10})

    clock.advance(minutes=15)
    await engine.process_due_timers()

    (event,) = events.named("sla_breached")
    assert event.run_id == run.run_id
    assert event.payload["step_name"] == "decide"


@pytest.mark.asyncio
async def test_completing_task_cancels_its_escalation(engine, clock, events, scorer_calls):
    await engine.register_definition(
        _approval(
            escalation_policy={"after_minutes": 10, "action": "custom_event", "custom_event_name": "late"}
        )
    )
    run = await engine.start_run("loan_approval", {"amount": 10})
    (decision,) = await engine.list_tasks(run_id=run.run_id, status=TaskStatus.ASSIGNED)
    await engine.complete_task(decision.task_id, {"outcome": "approved"})

    clock.advance(hours=5)
    assert await engine.process_due_timers() == 0
    assert events.named("late") == []


@pytest.mark.asyncio
async def test_reassignment_fires_exactly_after_deadline_plus_delay(
    engine, clock, notifications, scorer_calls
):
    await engine.register_definition(
        _approval(
            assigned_role=None,
            assigned_to_user_id="dana",
            deadline_minutes=10,
            escalation_policy={
                "after_minutes": 5,
                "action": "reassign_to_role",
                "target_role": "senior_approvers",
            },
        )
    )
    run = await engine.start_run("loan_approval", {"amount": 10})

    clock.advance(minutes=14, seconds=59)
    assert await engine.process_due_timers() == 0
    (decision,) = await engine.list_tasks(run_id=run.run_id, status=TaskStatus.ASSIGNED)
    assert decision.assigned_to_user_id == "dana"

    clock.advance(seconds=1)
    assert await engine.process_due_timers() == 1
    decision = await engine.get_task(decision.task_id)
    assert decision.assigned_to_role == "senior_approvers"
    assert decision.assigned_to_user_id is None
    assert [n.kind for n in notifications.for_recipient("senior_approvers")] == ["task_reassigned"]


@pytest.mark.asyncio
async def test_default_input_takes_precedence_over_context(engine, scorer_calls):
    await engine.register_definition(_approval())

    await engine.start_run("loan_approval", {"amount": 10, "threshold": 1, "currency": "USD"})

    assert scorer_calls == [({"model": "v2"}, {"amount": 10, "threshold": 500, "currency": "EUR"})]
