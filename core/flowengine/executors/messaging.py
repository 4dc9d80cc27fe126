"""
Side-effecting messaging nodes (email, chat).

These nodes never call an external service without passing the eval gate.
``requireConfirmation`` (default true) forces the review tier so a
pending confirmation is created instead of sending. This keeps the nodes
safe under whole-job retries.
"""

import json
import logging
import re
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from flowengine.errors import ActionBlocked, ExecutorConfigError
from flowengine.eval.engine import EvalRules
from flowengine.eval.gate import AutonomyTier, GateOutcome, GateStatus
from flowengine.executors.templating import render
from flowengine.graph.capabilities import Capabilities, NodeStatus
from flowengine.graph.models import ExecutionContext
from flowengine.observability.logging import get_trace_context

logger = logging.getLogger(__name__)

DRAFT_SYSTEM_PROMPT = """You are a follow-up email writer. {instructions}

Output as JSON: {{"subject": "...", "body": "..."}}
The body should be the email text only (no subject line).
Address the recipient as {recipient_name}."""

DEFAULT_DRAFT_INSTRUCTIONS = (
    "Draft a concise, specific follow-up email based on the meeting context. "
    "Always mention next steps."
)


class GatedNodeConfig(BaseModel):
    require_confirmation: bool = Field(default=True, alias="requireConfirmation")
    autonomy_tier: AutonomyTier | None = Field(default=None, alias="autonomyTier")
    eval_rules: EvalRules | None = Field(default=None, alias="evalRules")

    model_config = {"populate_by_name": True, "extra": "allow"}


class SendEmailConfig(GatedNodeConfig):
    to_source: str = Field(default="external_attendee", alias="toSource")
    to: str | None = None
    subject_template: str | None = Field(default=None, alias="subjectTemplate")
    body_template: str | None = Field(default=None, alias="bodyTemplate")
    body_prompt: str | None = Field(default=None, alias="bodyPrompt")


class SlackMessageConfig(GatedNodeConfig):
    channel: str = Field(min_length=1)
    text_template: str = Field(alias="textTemplate", min_length=1)


def resolve_external_attendee(calendar_event: dict[str, Any] | None) -> dict[str, Any] | None:
    """First attendee whose address is outside the organizer's domain."""
    event = calendar_event or {}
    _, _, domain = ((event.get("organizer") or {}).get("email") or "").partition("@")
    if not domain:
        return None
    for attendee in event.get("attendees") or []:
        email = attendee.get("email") or ""
        if email and not email.lower().endswith(f"@{domain.lower()}"):
            return attendee
    return None


def _effective_tier(config: GatedNodeConfig, context: ExecutionContext) -> AutonomyTier:
    tier = config.autonomy_tier or AutonomyTier(context.get("autonomyTier", "review"))
    if config.require_confirmation and tier == AutonomyTier.AUTO:
        return AutonomyTier.REVIEW
    return tier


def _effective_rules(config: GatedNodeConfig, context: ExecutionContext) -> EvalRules | None:
    if config.eval_rules is not None:
        return config.eval_rules
    raw = context.get("evalRules")
    return EvalRules.model_validate(raw) if raw else None


async def _gated_action(
    action: str,
    content: str,
    action_args: dict[str, Any],
    config: GatedNodeConfig,
    node_id: str,
    user_id: str,
    context: ExecutionContext,
    capabilities: Capabilities,
) -> GateOutcome:
    tier = _effective_tier(config, context)
    if tier == AutonomyTier.READONLY:
        raise ActionBlocked(action, "agent is in read-only mode")

    gate = capabilities.require("gate")
    sink = capabilities.actions

    async def perform() -> dict[str, Any]:
        if sink is None:
            raise RuntimeError("Capability 'actions' is not configured")
        return await sink.perform(action, action_args, user_id)

    trace_ctx = get_trace_context()
    outcome = await gate.run_action(
        action,
        content,
        perform,
        tier=tier,
        rules=_effective_rules(config, context),
        action_args=action_args,
        user_id=user_id,
        origin={
            "workflow_id": trace_ctx.get("workflow_id"),
            "execution_id": trace_ctx.get("execution_id"),
            "node_id": node_id,
        },
    )
    if capabilities.tracer is not None:
        capabilities.tracer.log_decision(
            reasoning=f"Eval gate for {action}",
            decision=str(outcome.status),
            metadata=outcome.to_dict(),
        )
    logger.info(f"{action} from node {node_id}: {outcome.status}")
    return outcome


async def _draft_email(
    capabilities: Capabilities,
    config: SendEmailConfig,
    context: ExecutionContext,
    recipient_name: str,
    node_id: str,
) -> tuple[str, str]:
    event = context.get("calendarEvent") or {}
    title = event.get("title") or "our meeting"

    if config.body_template:
        subject = render(config.subject_template or f"{title} - Follow Up", context.data, node_id)
        return subject, render(config.body_template, context.data, node_id)

    llm = capabilities.require("llm")
    parts = [
        f"Meeting summary:\n{context.get('summary')}" if context.get("summary") else "",
        f"Notes:\n{str(context.get('notesContent'))[:3000]}" if context.get("notesContent") else "",
        f"Transcript excerpt:\n{str(context.get('transcript'))[:3000]}"
        if context.get("transcript")
        else "",
    ]
    system = DRAFT_SYSTEM_PROMPT.format(
        instructions=config.body_prompt or DEFAULT_DRAFT_INSTRUCTIONS,
        recipient_name=recipient_name,
    )
    response = await llm.acomplete(
        [
            {
                "role": "user",
                "content": f"Write a follow-up email for this meeting:\n\nMeeting: {title}\n"
                f"Recipient: {recipient_name}\n\n" + "\n\n".join(p for p in parts if p),
            }
        ],
        system=system,
        json_mode=True,
    )
    if capabilities.tracer is not None:
        capabilities.tracer.log_llm_call(
            model=response.model,
            input=system,
            output=response.content,
            tokens_in=response.input_tokens,
            tokens_out=response.output_tokens,
            metadata={"node_id": node_id, "purpose": "email_draft"},
        )

    fallback_subject = f"{title} - Follow Up"
    match = re.search(r"\{.*\}", response.content, re.DOTALL)
    if match:
        try:
            parsed = json.loads(match.group(0))
            return parsed.get("subject") or fallback_subject, parsed.get("body") or response.content
        except json.JSONDecodeError:
            pass
    return fallback_subject, response.content


async def send_email(
    data: dict[str, Any],
    node_id: str,
    user_id: str,
    context: ExecutionContext,
    capabilities: Capabilities,
) -> ExecutionContext:
    try:
        config = SendEmailConfig.model_validate(data)
    except ValidationError as e:
        raise ExecutorConfigError(node_id, f"invalid email config: {e}") from e

    event = context.get("calendarEvent")
    if config.to_source == "manual":
        recipient = {"email": render(config.to or "", context.data, node_id).strip()}
    else:
        recipient = resolve_external_attendee(event)
    if not recipient or not recipient.get("email"):
        raise ExecutorConfigError(node_id, "could not determine recipient email")

    email = recipient["email"]
    recipient_name = recipient.get("displayName") or email.split("@")[0]

    await capabilities.publish_status(node_id, NodeStatus.LOADING)
    try:
        subject, body = await _draft_email(capabilities, config, context, recipient_name, node_id)
        outcome = await _gated_action(
            "send_email",
            body,
            {"to": email, "subject": subject, "body": body},
            config,
            node_id,
            user_id,
            context,
            capabilities,
        )
    except Exception:
        await capabilities.publish_status(node_id, NodeStatus.ERROR)
        raise
    await capabilities.publish_status(node_id, NodeStatus.SUCCESS)

    values: dict[str, Any] = {"emailTo": email, "emailSubject": subject}
    if outcome.status == GateStatus.EXECUTED:
        values["emailSent"] = True
    elif outcome.status == GateStatus.REQUIRES_APPROVAL:
        values["emailDrafted"] = True
        values["confirmationId"] = outcome.confirmation.id if outcome.confirmation else None
    else:
        values["emailBlocked"] = True
        values["emailBlockReason"] = outcome.reason
    if outcome.eval is not None:
        values["emailEval"] = outcome.eval.summary()
    return context.with_values(**values)


async def send_message(
    data: dict[str, Any],
    node_id: str,
    user_id: str,
    context: ExecutionContext,
    capabilities: Capabilities,
) -> ExecutionContext:
    try:
        config = SlackMessageConfig.model_validate(data)
    except ValidationError as e:
        raise ExecutorConfigError(node_id, f"invalid Slack config: {e}") from e

    text = render(config.text_template, context.data, node_id)
    channel = render(config.channel, context.data, node_id)

    await capabilities.publish_status(node_id, NodeStatus.LOADING)
    try:
        outcome = await _gated_action(
            "send_slack_message",
            text,
            {"channel": channel, "text": text},
            config,
            node_id,
            user_id,
            context,
            capabilities,
        )
    except Exception:
        await capabilities.publish_status(node_id, NodeStatus.ERROR)
        raise
    await capabilities.publish_status(node_id, NodeStatus.SUCCESS)

    return context.with_values(slackMessage=outcome.to_dict())
