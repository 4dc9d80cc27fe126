"""Jinja2 rendering of node configuration against the execution context."""

import json
from typing import Any

from jinja2 import Environment, StrictUndefined, TemplateError

from flowengine.errors import ExecutorConfigError

# A variable missing from the context is a config error, never an empty string
_env = Environment(autoescape=False, keep_trailing_newline=True, undefined=StrictUndefined)
_env.filters["json"] = lambda value: json.dumps(value, indent=2, default=str)


def render(template: str, values: dict[str, Any], node_id: str = "") -> str:
    """Render ``template`` with context values as top-level variables."""
    try:
        return _env.from_string(template).render(**values)
    except TemplateError as e:
        raise ExecutorConfigError(node_id, f"template error: {e}") from e
