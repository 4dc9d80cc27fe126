"""Condition node: picks one outgoing branch.

Branches are evaluated in order and the first match wins. When nothing
matches, the last branch is the fallback, which needs no evaluator of its
own. With no branches configured the node selects ``main``.
"""

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from flowengine.errors import ExecutorConfigError
from flowengine.graph.capabilities import Capabilities
from flowengine.graph.models import ExecutionContext
from flowengine.llm.provider import LLMProvider

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
CLASSIFY_MODEL = "anthropic/claude-haiku-4-5-20251001"


class ConditionBranch(BaseModel):
    id: str
    label: str = ""
    prompt: str = ""
    evaluator: str = Field(
        default="",
        description="domain_check | domain_check_inverse | llm_classify | llm_classify_inverse",
    )


class ConditionConfig(BaseModel):
    conditions: list[ConditionBranch] = Field(default_factory=list)


def has_external_attendees(calendar_event: dict[str, Any] | None, inverse: bool) -> bool:
    """
    Domain check against the organizer's email domain.

    Returns True when some attendee is outside the organizer's domain (or,
    with ``inverse``, when every attendee is inside it). No attendees counts
    as internal; an unknown organizer domain counts as external.
    """
    attendees = (calendar_event or {}).get("attendees") or []
    if not attendees:
        return inverse

    organizer_email = ((calendar_event or {}).get("organizer") or {}).get("email", "")
    _, _, domain = organizer_email.partition("@")
    if not domain:
        return not inverse

    has_external = any(
        a.get("email") and not a["email"].lower().endswith(f"@{domain.lower()}")
        for a in attendees
    )
    return not has_external if inverse else has_external


async def llm_classify(
    llm: LLMProvider, branch: ConditionBranch, context: ExecutionContext, inverse: bool
) -> bool:
    event = context.get("calendarEvent") or {}
    summary = context.get("summary")
    transcript = context.get("transcript")
    info = "\n".join(
        part
        for part in (
            f"Meeting title: {event['title']}" if event.get("title") else "",
            f"Summary: {summary}" if summary else "",
            f"Transcript excerpt: {str(transcript)[:500]}" if transcript else "",
        )
        if part
    )
    prompt = (
        f'Based on the following information, does this match the condition: "{branch.prompt}"?'
        f"\n\n{info}\n\nRespond with only YES or NO."
    )
    response = await llm.acomplete(
        [{"role": "user", "content": prompt}], max_tokens=10, model=CLASSIFY_MODEL
    )
    is_yes = response.content.strip().upper().startswith("YES")
    return not is_yes if inverse else is_yes


async def condition(
    data: dict[str, Any],
    node_id: str,
    user_id: str,
    context: ExecutionContext,
    capabilities: Capabilities,
) -> ExecutionContext:
    try:
        config = ConditionConfig.model_validate(data)
    except ValidationError as e:
        raise ExecutorConfigError(node_id, f"invalid condition config: {e}") from e

    if not config.conditions:
        return context.with_branch(DEFAULT_BRANCH)

    for branch in config.conditions:
        inverse = branch.evaluator.endswith("_inverse")
        if branch.evaluator.startswith("domain_check"):
            matched = has_external_attendees(context.get("calendarEvent"), inverse)
        elif branch.evaluator.startswith("llm_classify"):
            matched = await llm_classify(capabilities.require("llm"), branch, context, inverse)
        else:
            if branch.evaluator:
                logger.warning(f"Unknown evaluator '{branch.evaluator}' on branch {branch.id}")
            matched = False

        if matched:
            logger.info(f"Condition {node_id} matched branch '{branch.id}'")
            return context.with_branch(branch.id)

    fallback = config.conditions[-1]
    logger.info(f"Condition {node_id}: no match, falling back to '{fallback.id}'")
    return context.with_branch(fallback.id)
