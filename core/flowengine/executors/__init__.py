"""Built-in node executors."""

from flowengine.executors.condition import condition
from flowengine.executors.http_request import http_request
from flowengine.executors.llm import llm_text
from flowengine.executors.messaging import send_email, send_message
from flowengine.executors.triggers import calendar_trigger, manual_trigger
from flowengine.graph.registry import ExecutorRegistry

BUILTIN_EXECUTORS = {
    "manual_trigger": manual_trigger,
    "initial": manual_trigger,
    "calendar_trigger": calendar_trigger,
    "condition": condition,
    "http_request": http_request,
    "llm": llm_text,
    "send_email": send_email,
    "send_message": send_message,
}


def register_builtin_executors(registry: ExecutorRegistry) -> ExecutorRegistry:
    for node_type, executor in BUILTIN_EXECUTORS.items():
        registry.register(node_type, executor)
    return registry


__all__ = ["BUILTIN_EXECUTORS", "register_builtin_executors"]
