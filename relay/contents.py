"""
Contents request processor.

Turns the session event log into the list of conversation turns sent to the
model for the active agent:

- branch scoping: only events on the invocation's branch (or its ancestors
  and descendants, by whole dot-separated segments) are visible;
- foreign events (authored by another agent) are rewritten into user-role
  "For context:" summaries so the active agent never continues another
  agent's raw tool exchange;
- include_contents="none" keeps only the current turn.
"""

from __future__ import annotations

import json
from typing import Any, List, Sequence

from .models import USER_AUTHOR, Content, Event, Part

REQUEST_CREDENTIAL_TOOL = "adk_request_credential"
FOREIGN_EVENT_MARKER = "For context:"


def contents_request_processor(ctx: Any, request: Any) -> None:
    """Append the history relevant to ctx.agent to request.contents."""
    agent = ctx.agent
    if not agent.model_backed:
        return

    events: Sequence[Event] = list(ctx.session.events) if ctx.session is not None else []
    if agent.include_contents == "none":
        request.contents.extend(current_turn_contents(ctx.branch, events, agent.name))
    else:
        request.contents.extend(build_contents(ctx.branch, events, agent.name))


def build_contents(branch: str, events: Sequence[Event], agent_name: str) -> List[Content]:
    contents: List[Content] = []
    for event in events:
        if _is_empty(event) or not is_event_on_branch(branch, event) or is_credential_event(event):
            continue
        if is_foreign_event(agent_name, event):
            event = convert_foreign_event(event)
        contents.append(event.content.model_copy(deep=True))
    return contents


def current_turn_contents(branch: str, events: Sequence[Event], agent_name: str) -> List[Content]:
    """
    Contents from the start of the current turn onward.

    The turn starts at the latest branch-visible event authored by the user
    or by another agent; with no such event the whole history is the turn.
    """
    start = 0
    for i in range(len(events) - 1, -1, -1):
        event = events[i]
        if not is_event_on_branch(branch, event):
            continue
        if event.author == USER_AUTHOR or is_foreign_event(agent_name, event):
            start = i
            break
    return build_contents(branch, events[start:], agent_name)


def is_event_on_branch(branch: str, event: Event) -> bool:
    if not branch or not event.branch:
        return True
    if event.branch == branch:
        return True
    return event.branch.startswith(branch + ".") or branch.startswith(event.branch + ".")


def is_foreign_event(agent_name: str, event: Event) -> bool:
    return bool(agent_name) and event.author not in (agent_name, USER_AUTHOR)


def is_credential_event(event: Event) -> bool:
    if event.content is None or not event.content.parts:
        return False
    for part in event.content.parts:
        if part.function_call is not None and part.function_call.name == REQUEST_CREDENTIAL_TOOL:
            continue
        if part.function_response is not None and part.function_response.name == REQUEST_CREDENTIAL_TOOL:
            continue
        return False
    return True


def _is_empty(event: Event) -> bool:
    content = event.content
    if content is None or not content.role or not content.parts:
        return True
    return content.parts[0].text == ""


def _dump(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def convert_foreign_event(event: Event) -> Event:
    """Rewrite another agent's event as user-provided context."""
    if event.content is None or not event.content.parts:
        return event

    parts = [Part(text=FOREIGN_EVENT_MARKER)]
    for part in event.content.parts:
        if part.text:
            parts.append(Part(text=f"[{event.author}] said: {part.text}"))
        elif part.function_call is not None:
            call = part.function_call
            parts.append(Part(text=f'[{event.author}] called tool "{call.name}" with parameters: {_dump(call.args)}'))
        elif part.function_response is not None:
            result = part.function_response
            parts.append(Part(text=f'[{event.author}] "{result.name}" tool returned result: {_dump(result.response)}'))
        else:
            parts.append(part)

    return event.model_copy(update={"author": USER_AUTHOR, "content": Content(role="user", parts=parts)})
