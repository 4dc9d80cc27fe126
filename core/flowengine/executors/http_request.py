"""HTTP request node: calls an endpoint and stores the response in context."""

import json
import logging
import time
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field, ValidationError

from flowengine.errors import ExecutorConfigError
from flowengine.executors.templating import render
from flowengine.graph.capabilities import Capabilities, NodeStatus
from flowengine.graph.models import ExecutionContext

logger = logging.getLogger(__name__)

BODY_METHODS = ("POST", "PUT", "PATCH")


class HttpRequestConfig(BaseModel):
    endpoint: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE"]
    variable_name: str = Field(alias="variableName", min_length=1)
    body: str | None = None
    timeout_s: float = 30.0

    model_config = {"populate_by_name": True}


async def _send(
    client: httpx.AsyncClient, config: HttpRequestConfig, values: dict[str, Any], node_id: str
) -> dict[str, Any]:
    endpoint = render(config.endpoint, values, node_id)
    kwargs: dict[str, Any] = {"timeout": config.timeout_s}
    if config.method in BODY_METHODS:
        rendered = render(config.body or "{}", values, node_id)
        try:
            kwargs["json"] = json.loads(rendered)
        except json.JSONDecodeError as e:
            raise ExecutorConfigError(node_id, f"request body is not valid JSON: {e}") from e

    response = await client.request(config.method, endpoint, **kwargs)
    if "application/json" in response.headers.get("content-type", ""):
        payload: Any = response.json()
    else:
        payload = response.text
    return {
        "httpResponse": {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "data": payload,
        }
    }


async def http_request(
    data: dict[str, Any],
    node_id: str,
    user_id: str,
    context: ExecutionContext,
    capabilities: Capabilities,
) -> ExecutionContext:
    await capabilities.publish_status(node_id, NodeStatus.LOADING)
    try:
        try:
            config = HttpRequestConfig.model_validate(data)
        except ValidationError as e:
            raise ExecutorConfigError(node_id, f"invalid HTTP request config: {e}") from e

        start = time.monotonic()
        client = capabilities.require("http")
        result = await capabilities.step.run(
            "http-request", lambda: _send(client, config, context.data, node_id)
        )
        duration_ms = int((time.monotonic() - start) * 1000)

        if capabilities.tracer is not None:
            capabilities.tracer.log_tool_call(
                tool_name="http_request",
                input={"method": config.method, "endpoint": config.endpoint},
                output={"status": result["httpResponse"]["status"]},
                duration_ms=duration_ms,
            )
        logger.info(
            f"{config.method} {config.endpoint} -> {result['httpResponse']['status']}",
            extra={"latency_ms": duration_ms},
        )
    except Exception:
        await capabilities.publish_status(node_id, NodeStatus.ERROR)
        raise

    await capabilities.publish_status(node_id, NodeStatus.SUCCESS)
    return context.with_values(**{config.variable_name: result})
