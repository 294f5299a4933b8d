import json

import httpx
import pytest

from flowline.engine import WorkflowEngine
from flowline.models import RunStatus
from flowline.persistence import InMemoryWorkflowRepository


def _definition(**api_call):
    config = {
        "url_template": "https://crm.test/customers/{{ context.customer_id }}",
        "method": "POST",
        "headers_template": {"Authorization": "Bearer {{ secrets.CRM_TOKEN }}"},
        "query_params_template": {"run": "{{ workflow.run_id }}"},
        "body_template": {"amount": "{{ context.amount }}", "note": "run {{ workflow.definition }}"},
    }
    config.update(api_call)
    return {
        "name": "sync_customer",
        "start_step": "push",
        "steps": [
            {
                "type": "external_api_call",
                "name": "push",
                "output_namespace": "crm",
                "api_call": config,
                "transitions": [{"to": "done", "condition_type": "always"}],
            },
            {"type": "end", "name": "done"},
        ],
    }


class _Recorder:
    def __init__(self, handler):
        self.handler = handler
        self.requests = []
        self.timeouts = []

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def factory(self, timeout: float) -> httpx.AsyncClient:
        self.timeouts.append(timeout)
        return httpx.AsyncClient(transport=httpx.MockTransport(self._handle), timeout=timeout)


async def _engine(recorder: _Recorder, definition) -> WorkflowEngine:
    engine = WorkflowEngine(
        InMemoryWorkflowRepository(),
        http_client_factory=recorder.factory,
        secrets={"CRM_TOKEN": "tok-123"},
    )
    await engine.register_definition(definition)
    return engine


@pytest.mark.asyncio
async def test_api_call_renders_templates_and_merges_response():
    recorder = _Recorder(lambda request: httpx.Response(201, json={"id": "c-9"}))
    engine = await _engine(recorder, _definition(timeout_seconds=4))

    run = await engine.start_run("sync_customer", {"customer_id": 7, "amount": 99.5})

    assert run.status == RunStatus.COMPLETED
    (request,) = recorder.requests
    assert request.method == "POST"
    assert request.url.path == "/customers/7"
    assert request.url.params["run"] == run.run_id
    assert request.headers["Authorization"] == "Bearer tok-123"
    assert json.loads(request.content) == {"amount": 99.5, "note": "run sync_customer"}
    assert recorder.timeouts == [4]
    assert run.context["crm"]["status"] == 201
    assert run.context["crm"]["data"] == {"id": "c-9"}


@pytest.mark.asyncio
async def test_unexpected_status_fails_the_step():
    recorder = _Recorder(lambda request: httpx.Response(500, text="upstream down"))
    engine = await _engine(recorder, _definition())

    run = await engine.start_run("sync_customer", {"customer_id": 1, "amount": 1})

    assert run.status == RunStatus.FAILED
    assert run.failure.reason == "step_failed"
    assert run.failure.step_name == "push"
    assert run.failure.details["details"] == {"status": 500, "data": "upstream down"}
    assert recorder.timeouts == [30.0]


@pytest.mark.asyncio
async def test_custom_success_codes():
    recorder = _Recorder(lambda request: httpx.Response(404))
    engine = await _engine(recorder, _definition(success_criteria={"status_codes": [404]}))
    run = await engine.start_run("sync_customer", {"customer_id": 1, "amount": 1})
    assert run.status == RunStatus.COMPLETED
    assert run.context["crm"]["data"] is None


@pytest.mark.asyncio
async def test_transport_error_fails_the_step():
    def _boom(request):
        raise httpx.ConnectError("connection refused", request=request)

    engine = await _engine(_Recorder(_boom), _definition(method="GET"))
    run = await engine.start_run("sync_customer", {"customer_id": 1})

    assert run.status == RunStatus.FAILED
    assert run.failure.details["details"]["error_type"] == "ConnectError"
