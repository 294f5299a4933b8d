"""External HTTP API call steps."""

from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

from ..contracts import ExternalApiCallStep
from ..errors import StepExecutionError
from ..models import TaskType
from ..utils.templates import render
from .base import Completed, Failed, StepExecutor, StepOutcome, StepRuntime, StepWork

logger = logging.getLogger(__name__)


def template_context(work: StepWork) -> Dict[str, Any]:
    return {
        "workflow": {
            "run_id": work.run.run_id,
            "definition": work.definition.name,
            "version": work.definition.version,
        },
        "context": work.scope,
    }


class ExternalApiExecutor(StepExecutor):
    task_type = TaskType.EXTERNAL_API_CALL

    async def execute(self, work: StepWork, runtime: StepRuntime) -> StepOutcome:
        step: ExternalApiCallStep = work.step
        config = step.api_call
        context = template_context(work)
        url = str(render(config.url_template, context, runtime.secrets))
        headers = {
            key: str(value)
            for key, value in render(config.headers_template, context, runtime.secrets).items()
        }
        params = {
            key: str(value)
            for key, value in render(config.query_params_template, context, runtime.secrets).items()
        }
        body = render(config.body_template, context, runtime.secrets)
        timeout = config.timeout_seconds or runtime.default_http_timeout

        request_kwargs: Dict[str, Any] = {"headers": headers, "params": params}
        if body is not None and config.method not in ("GET", "DELETE"):
            if isinstance(body, (dict, list)):
                request_kwargs["json"] = body
            else:
                request_kwargs["content"] = str(body)

        logger.info(f"Calling {config.method} {url} for step '{step.name}'")
        try:
            async with runtime.http_client_factory(timeout) as client:
                response = await client.request(config.method, url, **request_kwargs)
        except httpx.HTTPError as exc:
            return Failed(
                StepExecutionError(
                    f"Request to {url} failed: {exc}",
                    {"url": url, "method": config.method, "error_type": type(exc).__name__},
                )
            )

        data = _response_data(response)
        if response.status_code not in config.success_criteria.status_codes:
            return Failed(
                StepExecutionError(
                    f"{config.method} {url} returned HTTP {response.status_code}",
                    {"status": response.status_code, "data": data},
                )
            )
        return Completed(
            {"status": response.status_code, "headers": dict(response.headers), "data": data}
        )


def _response_data(response: httpx.Response) -> Any:
    if not response.content:
        return None
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text
