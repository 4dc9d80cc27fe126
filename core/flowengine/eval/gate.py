"""
Eval gate for side-effecting actions.

Every externally visible action a node wants to take passes through here:

1. readonly tier + side-effect action -> blocked
2. action without side effects        -> performed directly
3. eval decision ``blocked``          -> blocked (an outcome, not an exception)
4. auto tier + ``auto_send``          -> performed
5. anything else                      -> pending ConfirmationRecord for a human

Actions are never retried here; a pending confirmation is the idempotent
alternative to acting under at-least-once job delivery.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from flowengine.eval.engine import EvalDecision, EvalEngine, EvalResult, EvalRules
from flowengine.runtime.event_bus import EngineEvent, EventBus, EventType
from flowengine.storage.backend import RecordStore

logger = logging.getLogger(__name__)

SIDE_EFFECT_ACTIONS = frozenset(
    {
        "send_email",
        "send_outlook_email",
        "create_calendar_event",
        "send_slack_message",
        "send_teams_message",
        "create_notion_page",
        "append_to_notion",
        "append_to_sheet",
        "update_sheet",
        "create_spreadsheet",
        "upload_drive_file",
        "delete_drive_file",
        "create_doc",
        "append_to_doc",
    }
)

ACTION_LABELS = {
    "send_email": "Send email",
    "send_outlook_email": "Send Outlook email",
    "create_calendar_event": "Create calendar event",
    "send_slack_message": "Send Slack message",
    "send_teams_message": "Send Teams message",
    "create_notion_page": "Create Notion page",
    "append_to_notion": "Append to Notion page",
    "append_to_sheet": "Append to spreadsheet",
    "update_sheet": "Update spreadsheet",
    "create_spreadsheet": "Create spreadsheet",
    "upload_drive_file": "Upload file to Drive",
    "delete_drive_file": "Delete Drive file",
    "create_doc": "Create document",
    "append_to_doc": "Append to document",
}


class AutonomyTier(StrEnum):
    AUTO = "auto"
    REVIEW = "review"
    READONLY = "readonly"


class ConfirmationStatus(StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ConfirmationRecord(BaseModel):
    """A side effect waiting for a human decision."""

    id: str = Field(default_factory=lambda: f"confirm_{uuid.uuid4().hex[:16]}")
    action: str
    label: str
    action_args: dict[str, Any] = Field(default_factory=dict)
    eval_summary: dict[str, Any] = Field(default_factory=dict)
    status: ConfirmationStatus = ConfirmationStatus.PENDING
    user_id: str = ""
    workflow_id: str | None = None
    execution_id: str | None = None
    node_id: str | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    result: dict[str, Any] | None = None


class GateStatus(StrEnum):
    EXECUTED = "executed"
    REQUIRES_APPROVAL = "requires_approval"
    BLOCKED = "blocked"


@dataclass
class GateOutcome:
    status: GateStatus
    output: dict[str, Any] | None = None
    reason: str | None = None
    eval: EvalResult | None = None
    confirmation: ConfirmationRecord | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": str(self.status),
            "output": self.output,
            "reason": self.reason,
            "eval": self.eval.summary() if self.eval else None,
            "confirmation_id": self.confirmation.id if self.confirmation else None,
        }


PerformFn = Callable[[], Awaitable[dict[str, Any]]]


class EvalGate:
    def __init__(
        self,
        engine: EvalEngine,
        confirmations: RecordStore[ConfirmationRecord],
        event_bus: EventBus | None = None,
    ):
        self.engine = engine
        self.confirmations = confirmations
        self.event_bus = event_bus

    async def _publish(
        self, event_type: EventType, origin: dict[str, str | None] | None, data: dict[str, Any]
    ) -> None:
        if self.event_bus is None:
            return
        origin = origin or {}
        await self.event_bus.publish(
            EngineEvent(
                type=event_type,
                workflow_id=origin.get("workflow_id"),
                execution_id=origin.get("execution_id"),
                node_id=origin.get("node_id"),
                data=data,
            )
        )

    async def run_action(
        self,
        action: str,
        content: str,
        perform: PerformFn,
        tier: AutonomyTier | str = AutonomyTier.REVIEW,
        rules: EvalRules | None = None,
        action_args: dict[str, Any] | None = None,
        user_id: str = "",
        origin: dict[str, str | None] | None = None,
    ) -> GateOutcome:
        """Evaluate ``content`` and perform, queue, or refuse the action."""
        tier = AutonomyTier(tier)
        if action not in SIDE_EFFECT_ACTIONS:
            return GateOutcome(GateStatus.EXECUTED, output=await perform())

        if tier == AutonomyTier.READONLY:
            logger.info(f"Refusing {action}: agent is read-only")
            return GateOutcome(
                GateStatus.BLOCKED,
                reason="Agent is in read-only mode. Side-effect actions are disabled.",
            )

        try:
            result = await self.engine.evaluate(content, rules, action=action)
        except Exception as e:
            # The evaluator itself broke: queue for a human instead of acting blind
            logger.error(f"Eval engine error for {action}, requiring approval: {e}", exc_info=True)
            record = await self._request_confirmation(
                action, action_args, {"error": str(e)}, user_id, origin
            )
            return GateOutcome(GateStatus.REQUIRES_APPROVAL, reason=str(e), confirmation=record)

        await self._publish(EventType.EVAL_DECISION, origin, {"action": action, **result.summary()})
        if result.decision == EvalDecision.BLOCKED:
            return GateOutcome(GateStatus.BLOCKED, reason=result.block_reason, eval=result)

        if tier == AutonomyTier.AUTO and result.decision == EvalDecision.AUTO_SEND:
            output = await perform()
            return GateOutcome(GateStatus.EXECUTED, output=output, eval=result)

        record = await self._request_confirmation(
            action, action_args, result.summary(), user_id, origin
        )
        return GateOutcome(GateStatus.REQUIRES_APPROVAL, eval=result, confirmation=record)

    async def request_confirmation(
        self,
        action: str,
        action_args: dict[str, Any] | None,
        user_id: str = "",
        origin: dict[str, str | None] | None = None,
        eval_summary: dict[str, Any] | None = None,
    ) -> ConfirmationRecord:
        """Queue an action for approval without evaluating it."""
        return await self._request_confirmation(
            action, action_args, eval_summary or {}, user_id, origin
        )

    async def _request_confirmation(
        self,
        action: str,
        action_args: dict[str, Any] | None,
        eval_summary: dict[str, Any],
        user_id: str,
        origin: dict[str, str | None] | None,
    ) -> ConfirmationRecord:
        origin = origin or {}
        record = ConfirmationRecord(
            action=action,
            label=ACTION_LABELS.get(action, action),
            action_args=action_args or {},
            eval_summary=eval_summary,
            user_id=user_id,
            workflow_id=origin.get("workflow_id"),
            execution_id=origin.get("execution_id"),
            node_id=origin.get("node_id"),
        )
        await self.confirmations.save(record.id, record)
        logger.info(f"Confirmation {record.id} requested for {action}")
        await self._publish(
            EventType.CONFIRMATION_REQUESTED,
            origin,
            {"confirmation_id": record.id, "action": action, "label": record.label},
        )
        return record

    async def resolve(
        self,
        confirmation_id: str,
        approved: bool,
        perform: PerformFn | None = None,
        resolved_by: str | None = None,
    ) -> ConfirmationRecord:
        """Approve or reject a pending confirmation; approval performs the action."""
        record = await self.confirmations.load(confirmation_id)
        if record is None:
            raise KeyError(f"Confirmation not found: {confirmation_id}")
        if record.status != ConfirmationStatus.PENDING:
            raise ValueError(f"Confirmation {confirmation_id} already {record.status}")

        if approved and perform is not None:
            record.result = await perform()
        record.status = ConfirmationStatus.APPROVED if approved else ConfirmationStatus.REJECTED
        record.resolved_at = datetime.now(UTC)
        record.resolved_by = resolved_by
        await self.confirmations.save(record.id, record)
        return record
