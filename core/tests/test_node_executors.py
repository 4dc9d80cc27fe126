"""
Tests for the built-in node executors: triggers, condition, HTTP request
and LLM text nodes.
"""

import json

import httpx
import pytest

from flowengine.errors import ExecutorConfigError
from flowengine.executors import BUILTIN_EXECUTORS, register_builtin_executors
from flowengine.executors.condition import condition, has_external_attendees
from flowengine.executors.http_request import http_request
from flowengine.executors.llm import llm_text
from flowengine.executors.templating import render
from flowengine.executors.triggers import calendar_trigger, manual_trigger
from flowengine.graph.capabilities import Capabilities, NodeStatus
from flowengine.graph.models import ExecutionContext
from flowengine.graph.registry import ExecutorRegistry
from flowengine.llm.mock import MockLLMProvider
from flowengine.observability.trace_schemas import StepType
from flowengine.observability.tracer import CreateTraceInput, Tracer

EVENT = {
    "title": "Quarterly review",
    "organizer": {"email": "me@acme.com"},
    "attendees": [{"email": "me@acme.com"}, {"email": "bob@client.io", "displayName": "Bob"}],
}


class StatusLog:
    def __init__(self):
        self.events = []

    async def __call__(self, node_id, status):
        self.events.append((node_id, status))


def _tracer():
    return Tracer(CreateTraceInput(agent_id="a1", user_id="u1"))


# ---------------------------------------------------------------------------
# Registry / triggers / templating
# ---------------------------------------------------------------------------


def test_builtin_registry_covers_node_types():
    registry = register_builtin_executors(ExecutorRegistry())
    assert set(registry.node_types()) == set(BUILTIN_EXECUTORS)
    assert registry.get("initial") is manual_trigger


@pytest.mark.asyncio
async def test_manual_trigger_passes_context_through():
    ctx = ExecutionContext(data={"prompt": "go"})
    assert await manual_trigger({}, "t", "u", ctx, Capabilities()) is ctx


@pytest.mark.asyncio
async def test_calendar_trigger_keeps_existing_event():
    ctx = ExecutionContext(data={"calendarEvent": EVENT})
    result = await calendar_trigger({}, "t", "u", ctx, Capabilities())
    assert result.get("calendarEvent") is EVENT


@pytest.mark.asyncio
async def test_calendar_trigger_placeholder_for_manual_runs():
    result = await calendar_trigger({}, "t", "u", ExecutionContext(), Capabilities())
    assert result.get("calendarEvent")["id"] == "manual"
    assert result.get("calendarEvent")["attendees"] == []


def test_render_uses_context_values():
    assert render("Hi {{ name }}", {"name": "Ada"}) == "Hi Ada"


def test_render_syntax_error_is_config_error():
    with pytest.raises(ExecutorConfigError):
        render("{{ broken", {}, "n1")


def test_render_missing_variable_is_config_error():
    with pytest.raises(ExecutorConfigError, match="summary"):
        render("Notes: {{ summary }}", {"transcript": "..."}, "n1")


# ---------------------------------------------------------------------------
# Condition
# ---------------------------------------------------------------------------


class TestCondition:
    def test_domain_check(self):
        assert has_external_attendees(EVENT, inverse=False) is True
        assert has_external_attendees(EVENT, inverse=True) is False

    def test_no_attendees_counts_as_internal(self):
        assert has_external_attendees({"attendees": []}, inverse=False) is False
        assert has_external_attendees(None, inverse=True) is True

    def test_unknown_organizer_domain_counts_as_external(self):
        event = {"attendees": [{"email": "x@y.com"}], "organizer": {}}
        assert has_external_attendees(event, inverse=False) is True

    @pytest.mark.asyncio
    async def test_no_conditions_selects_main(self):
        result = await condition({}, "c", "u", ExecutionContext(), Capabilities())
        assert result.selected_branch == "main"

    @pytest.mark.asyncio
    async def test_first_match_wins(self):
        data = {
            "conditions": [
                {"id": "internal", "evaluator": "domain_check_inverse"},
                {"id": "external", "evaluator": "domain_check"},
            ]
        }
        ctx = ExecutionContext(data={"calendarEvent": EVENT})
        result = await condition(data, "c", "u", ctx, Capabilities())
        assert result.selected_branch == "external"

    @pytest.mark.asyncio
    async def test_last_branch_is_fallback(self):
        data = {
            "conditions": [
                {"id": "a", "evaluator": "not_a_real_evaluator"},
                {"id": "b", "evaluator": "also_unknown"},
            ]
        }
        result = await condition(data, "c", "u", ExecutionContext(), Capabilities())
        assert result.selected_branch == "b"

    @pytest.mark.asyncio
    async def test_fallback_branch_without_evaluator(self):
        data = {"conditions": [{"id": "external", "evaluator": "domain_check"}, {"id": "internal"}]}
        internal = {**EVENT, "attendees": [{"email": "me@acme.com"}]}
        ctx = ExecutionContext(data={"calendarEvent": internal})
        result = await condition(data, "c", "u", ctx, Capabilities())
        assert result.selected_branch == "internal"

    @pytest.mark.asyncio
    async def test_llm_classify(self):
        llm = MockLLMProvider(responses=["NO", "YES"])
        data = {
            "conditions": [
                {"id": "sales", "evaluator": "llm_classify", "prompt": "Is this a sales call?"},
                {"id": "support", "evaluator": "llm_classify", "prompt": "Is this support?"},
                {"id": "other", "evaluator": "domain_check_inverse"},
            ]
        }
        ctx = ExecutionContext(data={"calendarEvent": EVENT, "summary": "Ticket triage"})
        result = await condition(data, "c", "u", ctx, Capabilities(llm=llm))
        assert result.selected_branch == "support"
        assert "Ticket triage" in llm.calls[0]["messages"][0]["content"]

    @pytest.mark.asyncio
    async def test_llm_classify_without_llm_fails(self):
        data = {"conditions": [{"id": "x", "evaluator": "llm_classify", "prompt": "?"}]}
        with pytest.raises(RuntimeError, match="llm"):
            await condition(data, "c", "u", ExecutionContext(), Capabilities())

    @pytest.mark.asyncio
    async def test_invalid_config(self):
        with pytest.raises(ExecutorConfigError):
            config = {"conditions": [{"evaluator": "domain_check"}]}
            await condition(config, "c", "u", ExecutionContext(), Capabilities())


# ---------------------------------------------------------------------------
# HTTP request
# ---------------------------------------------------------------------------


class TestHttpRequest:
    def _client(self, handler):
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    @pytest.mark.asyncio
    async def test_post_renders_body_and_stores_response(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["body"] = json.loads(request.content)
            return httpx.Response(201, json={"ok": True})

        status = StatusLog()
        tracer = _tracer()
        async with self._client(handler) as client:
            caps = Capabilities(http=client, tracer=tracer, publish_status=status)
            ctx = ExecutionContext(data={"userId": "42", "name": "Ada"})
            result = await http_request(
                {
                    "endpoint": "https://api.example.com/users/{{ userId }}",
                    "method": "POST",
                    "variableName": "created",
                    "body": '{"name": "{{ name }}"}',
                },
                "h1",
                "u1",
                ctx,
                caps,
            )

        assert captured == {"url": "https://api.example.com/users/42", "body": {"name": "Ada"}}
        assert result.get("created")["httpResponse"]["status"] == 201
        assert result.get("created")["httpResponse"]["data"] == {"ok": True}
        assert status.events == [("h1", NodeStatus.LOADING), ("h1", NodeStatus.SUCCESS)]
        assert tracer.steps[0].type == StepType.TOOL_CALL

    @pytest.mark.asyncio
    async def test_get_returns_text_body(self):
        async with self._client(lambda r: httpx.Response(200, text="pong")) as client:
            result = await http_request(
                {"endpoint": "https://example.com/ping", "method": "GET", "variableName": "ping"},
                "h1",
                "u1",
                ExecutionContext(),
                Capabilities(http=client),
            )
        assert result.get("ping")["httpResponse"]["data"] == "pong"

    @pytest.mark.asyncio
    async def test_transport_error_marks_node_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        status = StatusLog()
        async with self._client(handler) as client:
            with pytest.raises(httpx.ConnectError):
                await http_request(
                    {"endpoint": "https://down.example.com", "method": "GET", "variableName": "r"},
                    "h1",
                    "u1",
                    ExecutionContext(),
                    Capabilities(http=client, publish_status=status),
                )
        assert status.events[-1] == ("h1", NodeStatus.ERROR)

    @pytest.mark.asyncio
    async def test_missing_variable_name(self):
        with pytest.raises(ExecutorConfigError):
            await http_request(
                {"endpoint": "https://x", "method": "GET"},
                "h1",
                "u1",
                ExecutionContext(),
                Capabilities(),
            )

    @pytest.mark.asyncio
    async def test_invalid_json_body(self):
        async with self._client(lambda r: httpx.Response(200)) as client:
            with pytest.raises(ExecutorConfigError, match="not valid JSON"):
                await http_request(
                    {
                        "endpoint": "https://x",
                        "method": "POST",
                        "variableName": "r",
                        "body": "{nope",
                    },
                    "h1",
                    "u1",
                    ExecutionContext(),
                    Capabilities(http=client),
                )


# ---------------------------------------------------------------------------
# LLM text
# ---------------------------------------------------------------------------


class TestLLMText:
    @pytest.mark.asyncio
    async def test_renders_prompt_and_stores_reply(self):
        llm = MockLLMProvider(responses=["A short summary."])
        tracer = _tracer()
        result = await llm_text(
            {
                "prompt": "Summarize: {{ transcript }}",
                "variableName": "summary",
                "system": "Be brief",
            },
            "l1",
            "u1",
            ExecutionContext(data={"transcript": "long meeting"}),
            Capabilities(llm=llm, tracer=tracer),
        )
        assert result.get("summary") == "A short summary."
        assert llm.calls[0]["messages"][0]["content"] == "Summarize: long meeting"
        assert llm.calls[0]["system"] == "Be brief"
        step = tracer.steps[0]
        assert step.type == StepType.LLM_CALL
        assert step.cost > 0

    @pytest.mark.asyncio
    async def test_requires_llm(self):
        with pytest.raises(RuntimeError):
            await llm_text(
                {"prompt": "x", "variableName": "y"}, "l1", "u1", ExecutionContext(), Capabilities()
            )

    @pytest.mark.asyncio
    async def test_provider_error_propagates(self):
        llm = MockLLMProvider(fail_with=RuntimeError("rate limited"))
        status = StatusLog()
        with pytest.raises(RuntimeError, match="rate limited"):
            await llm_text(
                {"prompt": "x", "variableName": "y"},
                "l1",
                "u1",
                ExecutionContext(),
                Capabilities(llm=llm, publish_status=status),
            )
        assert status.events[-1] == ("l1", NodeStatus.ERROR)
