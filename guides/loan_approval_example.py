"""Loan approval walkthrough: agent scoring, a human decision and escalation."""

import asyncio

from flowline import CallableAgentRunner, WorkflowEngine
from flowline.collaborators import InMemoryNotificationSink
from flowline.persistence import InMemoryWorkflowRepository

LOAN_APPROVAL = {
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
            "agent_identifier": "risk_scorer",
            "output_namespace": "risk",
            "transitions": [{"to": "decide", "condition_type": "always"}],
        },
        {
            "type": "decision",
            "name": "decide",
            "assigned_role": "loan_officers",
            "deadline_minutes": 240,
            "escalation_policy": {
                "after_minutes": 60,
                "action": "notify_manager_role",
                "target_role": "credit_managers",
            },
            "transitions": [
                {
                    "to": "approved",
                    "condition_group": {
                        "logical_operator": "AND",
                        "conditions": [
                            {"field": "output.outcome", "operator": "==", "value": "approved"}
                        ],
                    },
                },
                {"to": "rejected", "condition_type": "always"},
            ],
        },
        {"type": "end", "name": "approved", "final_status": "approved"},
        {"type": "end", "name": "rejected", "final_status": "rejected"},
    ],
}


def risk_scorer(configuration, data):
    return {"score": 80 if data["amount"] < 10_000 else 35}


async def main():
    notifications = InMemoryNotificationSink()
    engine = WorkflowEngine(
        InMemoryWorkflowRepository(),
        CallableAgentRunner({"risk_scorer": risk_scorer}),
        notifications,
    )
    await engine.register_definition(LOAN_APPROVAL)

    run = await engine.start_run("loan_approval", {"amount": 4200}, triggered_by="erin")
    print(f"✅ Run started: {run.run_id} ({run.status.value})")
    print(f"📋 Waiting on: {run.current_step_name}, risk={run.context['risk']}")

    (task,) = await engine.tasks_for_user("olivia", role="loan_officers")
    await engine.claim_task(task.task_id, "olivia")
    await engine.complete_task(task.task_id, {"outcome": "approved"}, user_id="olivia")

    run = await engine.get_run(run.run_id)
    print(f"🏁 Run finished: {run.status.value}")
    for notification in notifications.notifications:
        print(f"🔔 {notification.recipient}: {notification.message}")


if __name__ == "__main__":
    asyncio.run(main())
