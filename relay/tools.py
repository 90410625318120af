from __future__ import annotations

import inspect
from typing import Any, Callable, Dict, List, Mapping, Optional

from jsonschema import Draft7Validator

from .errors import InvalidArgumentError
from .models import EventActions


class ToolContext:
    """
    What a tool sees while it runs: the invocation context plus the
    side-effect record of the event that will carry its result.
    """

    def __init__(self, invocation_context: Any, function_call_id: Optional[str] = None, actions: Optional[EventActions] = None):
        self.invocation_context = invocation_context
        self.function_call_id = function_call_id
        self.actions = actions if actions is not None else EventActions()

    @property
    def agent_name(self) -> str:
        return self.invocation_context.agent.name

    @property
    def state(self) -> Dict[str, Any]:
        return self.invocation_context.state

    def set_state(self, key: str, value: Any) -> None:
        """Record a state change; applied to the session when the event is appended."""
        self.actions.state_delta[key] = value


class BaseTool:
    """
    Tool capability surface offered to the model.

    Subclasses provide a stable `name`, a human-readable `description`, an
    optional JSON-schema for parameters and `run`.
    """

    name: str = ""
    description: str = ""
    parameters: Optional[Dict[str, Any]] = None

    def declaration(self) -> Optional[Dict[str, Any]]:
        return {"name": self.name, "description": self.description, "parameters": self.parameters}

    def run(self, tool_context: ToolContext, args: Optional[Mapping[str, Any]]) -> Any:  # pragma: no cover - interface only
        raise NotImplementedError


def validate_args(args: Any, schema: Dict[str, Any]) -> List[Dict[str, Any]]:
    validator = Draft7Validator(schema)
    errors: List[Dict[str, Any]] = []
    for err in validator.iter_errors(args):
        errors.append(
            {
                "path": list(err.path),
                "message": err.message,
            }
        )
    return errors


class FunctionTool(BaseTool):
    """
    Wrap a plain callable as a tool.

    The callable receives the validated arguments as keyword arguments and,
    when it declares a `tool_context` parameter, the ToolContext as well.
    """

    def __init__(
        self,
        func: Callable[..., Any],
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        parameters: Optional[Dict[str, Any]] = None,
    ):
        self.func = func
        self.name = name or func.__name__
        self.description = description if description is not None else (func.__doc__ or "").strip()
        if parameters is not None:
            Draft7Validator.check_schema(parameters)
        self.parameters = parameters

    def run(self, tool_context: ToolContext, args: Optional[Mapping[str, Any]]) -> Any:
        call_args = dict(args or {})
        if self.parameters is not None:
            errors = validate_args(call_args, self.parameters)
            if errors:
                raise InvalidArgumentError(
                    f"Invalid arguments for tool {self.name!r}",
                    details=errors,
                )
        if _accepts_tool_context(self.func):
            call_args["tool_context"] = tool_context
        return self.func(**call_args)


def _accepts_tool_context(func: Callable[..., Any]) -> bool:
    try:
        parameters = inspect.signature(func).parameters
    except (TypeError, ValueError):
        return False
    param = parameters.get("tool_context")
    return param is not None and param.kind not in (param.VAR_POSITIONAL, param.VAR_KEYWORD)
