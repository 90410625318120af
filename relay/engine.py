"""
Turn flow of a model-backed agent.

One step builds an LlmRequest through the request processors, calls the
model backend and yields an event per response. When the final response asks
for tools, the tools run and their results are yielded as one function
response event; a requested transfer then hands the rest of the invocation to
the target agent. Steps repeat until the model produces a final response.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from .contents import contents_request_processor
from .errors import AgentNotFound, NotFoundError, RelayError, UnsupportedError, UpstreamError
from .models import Content, Event, EventActions, FunctionCall, FunctionResponse, Part, new_id
from .providers import BaseModelBackend, LlmRequest, LlmResponse
from .tools import ToolContext
from .transfer import agent_transfer_request_processor

logger = logging.getLogger("agent-relay")


def identity_request_processor(ctx: Any, request: LlmRequest) -> None:
    agent = ctx.agent
    if not agent.model_backed:
        return
    model = resolve_model(ctx)
    request.model = model.name
    lines = [f'You are an agent. Your internal name is "{agent.name}".']
    if agent.description:
        lines.append(f' The description about you is "{agent.description}".')
    request.append_instructions(["".join(lines)])
    if agent.instruction:
        request.append_instructions([agent.instruction])


def tools_request_processor(ctx: Any, request: LlmRequest) -> None:
    agent = ctx.agent
    if not agent.model_backed:
        return
    request.append_tools(list(agent.tools))


REQUEST_PROCESSORS: List[Callable[[Any, LlmRequest], None]] = [
    identity_request_processor,
    contents_request_processor,
    tools_request_processor,
    agent_transfer_request_processor,
]


def resolve_model(ctx: Any) -> BaseModelBackend:
    """The agent's own backend, else the nearest model-backed ancestor's."""
    current = ctx.agent
    while current is not None:
        if getattr(current, "model", None) is not None:
            return current.model
        current = ctx.tree.parent_of(current)
    raise UnsupportedError(f"No model found for agent {ctx.agent.name!r}")


def build_request(ctx: Any) -> LlmRequest:
    request = LlmRequest()
    for processor in REQUEST_PROCESSORS:
        processor(ctx, request)
    return request


def run_flow(ctx: Any) -> Iterator[Event]:
    while True:
        last_event: Optional[Event] = None
        for event in _run_one_step(ctx):
            last_event = event
            yield event
        if last_event is None or last_event.partial or last_event.is_final_response():
            return

        target_name = last_event.actions.transfer_to_agent
        if target_name:
            target = ctx.tree.find_agent(target_name)
            if target is None:
                raise AgentNotFound(
                    f"Agent {target_name!r} not found in the agent tree",
                    details={"from": ctx.agent.name},
                )
            logger.info(
                "transfer invocation_id=%s from=%s to=%s",
                ctx.invocation_id,
                ctx.agent.name,
                target.name,
            )
            yield from target.run(ctx)
            return


def _run_one_step(ctx: Any) -> Iterator[Event]:
    ctx.raise_if_ended()
    request = build_request(ctx)
    model = resolve_model(ctx)
    ctx.increment_llm_calls()

    stream = ctx.run_config.streaming_mode == "sse"
    start = time.monotonic()
    final_event: Optional[Event] = None
    for response in _generate(model, request, stream):
        ctx.raise_if_ended()
        event = _response_to_event(ctx, response)
        if not event.partial:
            final_event = event
        yield event

    _log_llm_call(ctx, model, (time.monotonic() - start) * 1000.0)

    if final_event is None or not final_event.function_calls():
        return
    ctx.raise_if_ended()
    yield _handle_function_calls(ctx, final_event, request.tools)


def _generate(model: BaseModelBackend, request: LlmRequest, stream: bool) -> Iterator[LlmResponse]:
    """Iterate the backend, surfacing its failures as UpstreamError."""
    try:
        responses = iter(model.generate(request, stream=stream))
    except RelayError:
        raise
    except Exception as exc:
        raise UpstreamError("Model backend failure", details={"model": model.name, "message": str(exc)}) from exc

    while True:
        try:
            response = next(responses)
        except StopIteration:
            return
        except RelayError:
            raise
        except Exception as exc:
            raise UpstreamError("Model backend failure", details={"model": model.name, "message": str(exc)}) from exc
        yield response


def _response_to_event(ctx: Any, response: LlmResponse) -> Event:
    content = response.content
    if content is not None and not response.partial:
        content = _with_call_ids(content)
    return ctx.new_event(
        content=content,
        partial=response.partial,
        turn_complete=response.turn_complete,
        error_code=response.error_code,
        error_message=response.error_message,
    )


def _with_call_ids(content: Content) -> Content:
    if all(p.function_call is None or p.function_call.id for p in content.parts):
        return content
    parts = []
    for part in content.parts:
        if part.function_call is not None and not part.function_call.id:
            call = part.function_call.model_copy(update={"id": "relay-" + new_id()})
            part = part.model_copy(update={"function_call": call})
        parts.append(part)
    return content.model_copy(update={"parts": parts})


def _handle_function_calls(ctx: Any, event: Event, tools: Dict[str, Any]) -> Event:
    actions = EventActions()
    parts: List[Part] = []
    for call in event.function_calls():
        response, tool_actions = _call_tool(ctx, call, tools)
        parts.append(Part(function_response=FunctionResponse(id=call.id, name=call.name, response=response)))
        actions.merge(tool_actions)
    return ctx.new_event(content=Content(role="user", parts=parts), actions=actions)


def _call_tool(ctx: Any, call: FunctionCall, tools: Dict[str, Any]) -> Tuple[Dict[str, Any], EventActions]:
    tool = tools.get(call.name)
    if tool is None:
        raise NotFoundError(
            f"Tool {call.name!r} is not available to agent {ctx.agent.name!r}",
            details={"available": sorted(tools)},
        )
    tool_context = ToolContext(ctx, function_call_id=call.id)
    result = tool.run(tool_context, call.args)
    if not isinstance(result, dict):
        result = {"result": result}
    return result, tool_context.actions


def _log_llm_call(ctx: Any, model: BaseModelBackend, latency_ms: float) -> None:
    logger.info(
        "llm_call invocation_id=%s agent=%s model=%s calls=%s latency_ms=%.2f",
        ctx.invocation_id,
        ctx.agent.name,
        model.name,
        ctx.llm_calls,
        latency_ms,
    )
