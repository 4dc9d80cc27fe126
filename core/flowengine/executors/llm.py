"""LLM text node: renders a prompt, calls the model, stores the reply."""

import logging
import time
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from flowengine.errors import ExecutorConfigError
from flowengine.executors.templating import render
from flowengine.graph.capabilities import Capabilities, NodeStatus
from flowengine.graph.models import ExecutionContext
from flowengine.llm.pricing import calculate_cost, tier_for_model

logger = logging.getLogger(__name__)


class LLMNodeConfig(BaseModel):
    prompt: str = Field(min_length=1)
    system: str = ""
    variable_name: str = Field(alias="variableName", min_length=1)
    model: str | None = None
    max_tokens: int = Field(default=1024, alias="maxTokens")

    model_config = {"populate_by_name": True}


async def llm_text(
    data: dict[str, Any],
    node_id: str,
    user_id: str,
    context: ExecutionContext,
    capabilities: Capabilities,
) -> ExecutionContext:
    try:
        config = LLMNodeConfig.model_validate(data)
    except ValidationError as e:
        raise ExecutorConfigError(node_id, f"invalid LLM node config: {e}") from e

    llm = capabilities.require("llm")
    prompt = render(config.prompt, context.data, node_id)
    system = render(config.system, context.data, node_id) if config.system else ""

    await capabilities.publish_status(node_id, NodeStatus.LOADING)
    start = time.monotonic()
    try:
        response = await llm.acomplete(
            [{"role": "user", "content": prompt}],
            system=system,
            max_tokens=config.max_tokens,
            model=config.model,
        )
    except Exception:
        await capabilities.publish_status(node_id, NodeStatus.ERROR)
        raise
    duration_ms = int((time.monotonic() - start) * 1000)

    cost = calculate_cost(
        response.input_tokens, response.output_tokens, tier_for_model(response.model)
    )
    if capabilities.tracer is not None:
        capabilities.tracer.log_llm_call(
            model=response.model,
            input=prompt,
            output=response.content,
            tokens_in=response.input_tokens,
            tokens_out=response.output_tokens,
            cost=cost,
            duration_ms=duration_ms,
            metadata={"node_id": node_id},
        )
    logger.info(
        f"LLM node {node_id} generated {len(response.content)} chars",
        extra={
            "latency_ms": duration_ms,
            "tokens_used": response.input_tokens + response.output_tokens,
            "model": response.model,
        },
    )

    await capabilities.publish_status(node_id, NodeStatus.SUCCESS)
    return context.with_values(**{config.variable_name: response.content})
