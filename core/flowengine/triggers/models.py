"""Trigger records: rules deciding when a workflow run is enqueued."""

import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class TriggerType(StrEnum):
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    EMAIL = "email"
    CHAT = "chat"
    AGENT_MESSAGE = "agent_message"


class Trigger(BaseModel):
    """
    A per-user trigger row.

    The scheduler writes ``last_run_at``/``next_run_at`` after each fire;
    users own ``enabled`` and ``cron_expression``.
    """

    id: str = Field(default_factory=lambda: f"trg_{uuid.uuid4().hex[:12]}")
    agent_id: str
    workflow_id: str | None = None
    user_id: str | None = None
    name: str = ""
    type: TriggerType = TriggerType.SCHEDULE
    cron_expression: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
