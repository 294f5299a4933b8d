import pytest

from flowline.models import RunStatus, TaskStatus, TaskType


def _always(to):
    return [{"to": to, "condition_type": "always"}]


KYC = {
    "name": "kyc",
    "start_step": "check",
    "steps": [
        {
            "type": "agent_execution",
            "name": "check",
            "agent_identifier": "kyc_checker",
            "output_namespace": "kyc",
            "transitions": _always("done"),
        },
        {"type": "end", "name": "done"},
    ],
}

KYC_MANUAL = {
    "name": "kyc",
    "version": 2,
    "start_step": "manual_check",
    "steps": [
        {"type": "human_review", "name": "manual_check", "assigned_role": "compliance", "transitions": _always("done")},
        {"type": "end", "name": "done", "final_status": "approved"},
    ],
}


def _onboarding(version=None, input_mapping=None):
    step = {
        "type": "sub_workflow",
        "name": "verify",
        "sub_workflow_name": "kyc",
        "output_namespace": "verification",
        "transitions": _always("welcome"),
    }
    if version:
        step["sub_workflow_version"] = version
    if input_mapping is not None:
        step["input_mapping"] = input_mapping
    return {
        "name": "onboarding",
        "start_step": "verify",
        "steps": [step, {"type": "end", "name": "welcome"}],
    }


@pytest.fixture
def kyc_inputs(agents):
    seen = []

    def kyc_checker(config, data):
        seen.append(data)
        if data.get("customer") == "Mallory":
            raise ValueError("sanctions hit")
        return {"verified": True}

    agents.register("kyc_checker", kyc_checker)
    return seen


@pytest.mark.asyncio
async def test_sub_workflow_output_is_merged_into_parent(engine, kyc_inputs):
    await engine.register_definition(KYC)
    await engine.register_definition(_onboarding(input_mapping={"customer": "applicant.name"}))

    run = await engine.start_run("onboarding", {"applicant": {"name": "Ada"}, "ssn": "123"})

    assert run.status == RunStatus.COMPLETED
    assert kyc_inputs == [{"customer": "Ada"}]
    verification = run.context["verification"]
    assert verification["status"] == "completed"
    assert verification["results"]["kyc"] == {"verified": True}

    child = await engine.get_run(verification["run_id"])
    assert child.parent_run_id == run.run_id
    assert child.triggering_data == {"customer": "Ada"}
    (task,) = await engine.list_tasks(run_id=run.run_id)
    assert task.type == TaskType.SUB_WORKFLOW
    assert task.sub_run_id == child.run_id
    assert task.status == TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_without_mapping_child_receives_parent_context(engine, kyc_inputs):
    await engine.register_definition(KYC)
    await engine.register_definition(_onboarding())

    await engine.start_run("onboarding", {"customer": "Ada", "ssn": "123"})

    assert kyc_inputs == [{"customer": "Ada", "ssn": "123"}]


@pytest.mark.asyncio
async def test_failed_child_fails_parent_step(engine, kyc_inputs):
    await engine.register_definition(KYC)
    await engine.register_definition(_onboarding())

    run = await engine.start_run("onboarding", {"customer": "Mallory"})

    assert run.status == RunStatus.FAILED
    assert run.failure.reason == "sub_workflow_failed"
    assert run.failure.step_name == "verify"
    assert run.failure.details["details"]["failure"]["reason"] == "step_failed"


@pytest.mark.asyncio
async def test_missing_child_definition_fails_parent(engine):
    await engine.register_definition(_onboarding())

    run = await engine.start_run("onboarding", {})

    assert run.status == RunStatus.FAILED
    assert run.failure.reason == "sub_workflow_failed"
    assert len(await engine.list_runs()) == 1


@pytest.mark.asyncio
async def test_parent_waits_for_child_human_task(engine, kyc_inputs):
    await engine.register_definition(KYC)
    await engine.register_definition(KYC_MANUAL)
    await engine.register_definition(_onboarding(version=2))

    run = await engine.start_run("onboarding", {"customer": "Ada"})
    assert run.status == RunStatus.IN_PROGRESS
    assert run.current_step_name == "verify"

    (child,) = [r for r in await engine.list_runs() if r.parent_run_id == run.run_id]
    assert child.definition_version == 2
    (review,) = await engine.list_tasks(run_id=child.run_id)
    await engine.complete_task(review.task_id, {"documents_ok": True})

    run = await engine.get_run(run.run_id)
    assert run.status == RunStatus.COMPLETED
    assert run.context["verification"]["status"] == "approved"
    assert run.context["verification"]["results"]["documents_ok"] is True


@pytest.mark.asyncio
async def test_cancelling_parent_cancels_child(engine):
    await engine.register_definition(KYC_MANUAL)
    await engine.register_definition(_onboarding())

    run = await engine.start_run("onboarding", {"customer": "Ada"})
    (child,) = [r for r in await engine.list_runs() if r.parent_run_id == run.run_id]

    await engine.cancel_run(run.run_id)

    assert (await engine.get_run(run.run_id)).status == RunStatus.CANCELLED
    assert (await engine.get_run(child.run_id)).status == RunStatus.CANCELLED
    (review,) = await engine.list_tasks(run_id=child.run_id)
    assert review.status == TaskStatus.SKIPPED


@pytest.mark.asyncio
async def test_default_input_is_merged_over_mapped_input(engine, kyc_inputs):
    onboarding = _onboarding(input_mapping={"customer": "applicant.name", "tier": "applicant.tier"})
    onboarding["steps"][0]["default_input"] = {"tier": "gold"}
    await engine.register_definition(KYC)
    await engine.register_definition(onboarding)

    await engine.start_run("onboarding", {"applicant": {"name": "Ada", "tier": "basic"}})

    assert kyc_inputs == [{"customer": "Ada", "tier": "gold"}]
