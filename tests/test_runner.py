import threading
from dataclasses import dataclass, field
from typing import Any, List

import pytest

from relay.agents import Agent, LlmAgent, SequentialAgent
from relay.artifacts import InMemoryArtifactService
from relay.errors import (
    AgentNotFound,
    DuplicateAgentNameError,
    InvalidArgumentError,
    InvocationCancelled,
    LlmCallLimitExceeded,
    NotFoundError,
    SessionNotFound,
    UnsupportedError,
    UpstreamError,
)
from relay.models import Blob, Content, Event, FunctionCall, Part, RunConfig, SessionKey
from relay.providers import BaseModelBackend, EchoBackend, LlmResponse
from relay.runner import Runner
from relay.sessions import EventLog, InMemorySessionService, Session
from relay.tools import FunctionTool
from relay.transfer import TransferToAgentTool

APP = "test_app"
USER = "user1"


class ScriptedBackend(BaseModelBackend):
    """
    Test double that replays a fixed list of contents, one per model call, and
    records every request it receives. The last content repeats once the
    script runs out.
    """

    def __init__(self, script: List[Content], name: str = "scripted") -> None:
        self.name = name
        self.script = list(script)
        self.requests: List[Any] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def generate(self, request, *, stream=False):
        self.requests.append(request)
        index = min(len(self.requests), len(self.script)) - 1
        yield LlmResponse(content=self.script[index], turn_complete=True)


class RaisingBackend(BaseModelBackend):
    name = "raising"

    def generate(self, request, *, stream=False):
        raise RuntimeError("boom")


@dataclass(eq=False)
class CountingAgent(Agent):
    """Custom agent that answers "hello" and counts its runs."""

    call_counter: int = 0
    contexts: List[Any] = field(default_factory=list)

    def _run_impl(self, ctx):
        self.call_counter += 1
        self.contexts.append(ctx)
        yield ctx.new_event(content=Content.from_text("hello", "model"))
        yield ctx.new_event(content=Content.from_text("still here", "model"))


@dataclass(eq=False)
class WaitForEndAgent(Agent):
    """Blocks until another thread ends the invocation, then tries to emit."""

    contexts: List[Any] = field(default_factory=list)

    def _run_impl(self, ctx):
        self.contexts.append(ctx)
        threading.Thread(target=ctx.end, args=("end",)).start()
        assert ctx.wait(timeout=5)
        yield ctx.new_event(content=Content.from_text("too late", "model"))


def _text(text):
    return Content.from_text(text, "model")


def _transfer_call(agent_name, text=None):
    parts = [Part(text=text)] if text else []
    parts.append(Part(function_call=FunctionCall(name="transfer_to_agent", args={"agent_name": agent_name})))
    return Content(role="model", parts=parts)


def _runner(agent, **kwargs):
    service = kwargs.pop("session_service", None) or InMemorySessionService()
    service.create_session(app_name=APP, user_id=USER, session_id="s1")
    return Runner(app_name=APP, agent=agent, session_service=service, **kwargs)


def _stored(runner):
    return runner.session_service.get_session(SessionKey(APP, USER, "s1"))


def _run(runner, text="hello", run_config=None):
    return list(
        runner.run(
            user_id=USER,
            session_id="s1",
            new_message=Content.from_text(text, "user"),
            run_config=run_config,
        )
    )


### 1) Agent resolution ########################################################


def _resolution_tree():
    no_transfer = LlmAgent(name="no_transfer_agent", disallow_transfer_to_parent=True)
    allows_transfer = LlmAgent(name="allows_transfer_agent")
    root = LlmAgent(name="root", model=EchoBackend(), sub_agents=[no_transfer, allows_transfer])
    return Runner(app_name=APP, agent=root, session_service=InMemorySessionService())


def _session_with(*authors):
    events = [Event(author=a, content=Content.from_text("x", "model")) for a in authors]
    return Session(key=SessionKey(APP, USER, "s1"), events=EventLog(events))


@pytest.mark.parametrize(
    "authors, expected",
    [
        ((), "root"),
        (("user",), "root"),
        (("allows_transfer_agent",), "allows_transfer_agent"),
        (("allows_transfer_agent", "user"), "allows_transfer_agent"),
        (("no_transfer_agent",), "root"),
        (("allows_transfer_agent", "no_transfer_agent"), "allows_transfer_agent"),
        (("allows_transfer_agent", "root", "user"), "root"),
        (("allows_transfer_agent", "ghost"), "allows_transfer_agent"),
    ],
)
def test_find_agent_to_run(authors, expected):
    runner = _resolution_tree()
    session = _session_with(*authors)
    assert runner.find_agent_to_run(session).name == expected
    # Same history, same answer.
    assert runner.find_agent_to_run(session).name == expected


def test_unknown_author_is_logged(caplog):
    runner = _resolution_tree()
    with caplog.at_level("WARNING", logger="agent-relay"):
        agent = runner.find_agent_to_run(_session_with("ghost"))
    assert agent.name == "root"
    assert "unknown agent: ghost" in caplog.text


def test_duplicate_agent_names_fail_runner_construction():
    root = Agent(name="root", sub_agents=[Agent(name="dup"), Agent(name="dup")])
    with pytest.raises(DuplicateAgentNameError) as exc_info:
        Runner(app_name=APP, agent=root, session_service=InMemorySessionService())
    assert "failed to create agent tree" in str(exc_info.value)


### 2) Running a custom agent ##################################################


def test_custom_agent_runs_once_per_run():
    agent = CountingAgent(name="custom")
    runner = _runner(agent)

    events = _run(runner)

    assert agent.call_counter == 1
    assert [e.content.parts[0].text for e in events] == ["hello", "still here"]
    assert all(e.author == "custom" for e in events)
    assert len({e.invocation_id for e in events}) == 1


def test_user_message_is_persisted_but_not_yielded():
    runner = _runner(CountingAgent(name="custom"))
    events = _run(runner, text="hi there")

    stored = list(_stored(runner).events)
    assert stored[0].author == "user"
    assert stored[0].content == Content.from_text("hi there", "user")
    assert stored[0].invocation_id == events[0].invocation_id
    assert [e.id for e in stored[1:]] == [e.id for e in events]


def test_events_are_persisted_before_they_are_yielded():
    runner = _runner(CountingAgent(name="custom"))
    for event in runner.run(user_id=USER, session_id="s1", new_message=Content.from_text("hi")):
        assert _stored(runner).events[len(_stored(runner).events) - 1].id == event.id


def test_missing_session_raises():
    runner = Runner(app_name=APP, agent=CountingAgent(name="custom"), session_service=InMemorySessionService())
    with pytest.raises(SessionNotFound):
        list(runner.run(user_id=USER, session_id="missing"))


def test_closing_the_run_ends_the_invocation():
    agent = CountingAgent(name="custom")
    runner = _runner(agent)

    run = runner.run(user_id=USER, session_id="s1", new_message=Content.from_text("hi"))
    next(run)
    run.close()

    ctx = agent.contexts[0]
    assert ctx.ended
    assert ctx.cause == "runner finished"
    # Only the user message and the first event were committed.
    assert len(_stored(runner).events) == 2


def test_end_from_another_thread_cancels_the_agent():
    agent = WaitForEndAgent(name="waiter")
    runner = _runner(agent)

    with pytest.raises(InvocationCancelled):
        _run(runner)

    assert agent.contexts[0].cause == "end"
    assert [e.author for e in _stored(runner).events] == ["user"]


### 3) Model-backed agents #####################################################


def test_echo_agent_replies_and_history_grows():
    runner = _runner(LlmAgent(name="echoer", model=EchoBackend()))

    first = _run(runner, "ping")
    second = _run(runner, "pong")

    assert first[-1].content.parts[0].text == "echo: ping"
    assert second[-1].content.parts[0].text == "echo: pong"
    assert len(_stored(runner).events) == 4


def test_partial_events_are_yielded_but_not_persisted():
    runner = _runner(LlmAgent(name="echoer", model=EchoBackend()))

    events = _run(runner, "stream me", run_config=RunConfig(streaming_mode="sse"))

    assert [e.partial for e in events] == [True, False]
    stored = list(_stored(runner).events)
    assert len(stored) == 2
    assert not any(e.partial for e in stored)


def test_agent_without_any_model_is_unsupported():
    runner = _runner(LlmAgent(name="modelless"))
    with pytest.raises(UnsupportedError):
        _run(runner)


def test_sub_agent_inherits_ancestor_model():
    backend = ScriptedBackend([_transfer_call("child"), _text("from child")])
    child = LlmAgent(name="child")
    runner = _runner(LlmAgent(name="root", model=backend, sub_agents=[child]))

    events = _run(runner)

    assert events[-1].author == "child"
    assert backend.calls == 2


def test_backend_failure_is_upstream_error():
    runner = _runner(LlmAgent(name="broken", model=RaisingBackend()))
    with pytest.raises(UpstreamError) as exc_info:
        _run(runner)
    assert exc_info.value.details["message"] == "boom"


def test_tool_call_runs_tool_and_applies_state_delta():
    def remember(color, tool_context):
        tool_context.set_state("color", color)
        return {"saved": color}

    tool = FunctionTool(
        remember,
        parameters={"type": "object", "properties": {"color": {"type": "string"}}, "required": ["color"]},
    )
    call = Content(role="model", parts=[Part(function_call=FunctionCall(name="remember", args={"color": "blue"}))])
    backend = ScriptedBackend([call, _text("done")])
    runner = _runner(LlmAgent(name="painter", model=backend, tools=[tool]))

    events = _run(runner)

    assert len(events) == 3
    call_id = events[0].function_calls()[0].id
    assert call_id
    response = events[1].function_responses()[0]
    assert response.id == call_id
    assert response.response == {"saved": "blue"}
    assert events[1].content.role == "user"
    assert events[2].is_final_response()
    assert _stored(runner).state["color"] == "blue"
    # The second request carries the tool exchange.
    assert backend.requests[1].contents[-1].parts[0].function_response.name == "remember"


def test_unknown_tool_is_not_found():
    call = Content(role="model", parts=[Part(function_call=FunctionCall(name="nope", args={}))])
    runner = _runner(LlmAgent(name="caller", model=ScriptedBackend([call])))
    with pytest.raises(NotFoundError):
        _run(runner)


def test_max_llm_calls_is_enforced():
    tool = FunctionTool(lambda: {"ok": True}, name="again")
    call = Content(role="model", parts=[Part(function_call=FunctionCall(name="again", args={}))])
    backend = ScriptedBackend([call])
    runner = _runner(LlmAgent(name="looper", model=backend, tools=[tool]))

    with pytest.raises(LlmCallLimitExceeded):
        _run(runner, run_config=RunConfig(max_llm_calls=2))
    assert backend.calls == 2


### 4) Agent transfer ##########################################################


def test_transfer_hands_off_and_next_run_resumes_target():
    backend_a = ScriptedBackend([_transfer_call("B", text="let me transfer")])
    backend_b = ScriptedBackend([_text("hi from B"), _text("B again")])
    agent_b = LlmAgent(name="B", description="handles follow ups", model=backend_b)
    agent_a = LlmAgent(name="A", model=backend_a, sub_agents=[agent_b])
    runner = _runner(agent_a)

    first = _run(runner, "hello")

    assert [e.author for e in first] == ["A", "A", "B"]
    assert first[1].actions.transfer_to_agent == "B"
    assert first[2].content.parts[0].text == "hi from B"
    assert runner.find_agent_to_run(_stored(runner)).name == "B"

    second = _run(runner, "and then?")

    assert [e.author for e in second] == ["B"]
    assert second[0].content.parts[0].text == "B again"
    assert backend_a.calls == 1
    assert backend_b.calls == 2
    # A's tool exchange reaches B only as user-role context.
    first_request_to_b = backend_b.requests[0]
    assert all(c.role == "user" for c in first_request_to_b.contents)
    # B may still hand back to its parent.
    assert "transfer_to_agent" in first_request_to_b.tools


def test_transfer_to_unlisted_agent_is_rejected():
    backend = ScriptedBackend([_transfer_call("stranger")])
    runner = _runner(LlmAgent(name="A", model=backend, sub_agents=[LlmAgent(name="B")]))
    with pytest.raises(InvalidArgumentError):
        _run(runner)


def test_transfer_to_agent_missing_from_tree_is_not_found():
    backend = ScriptedBackend([_transfer_call("ghost")])
    runner = _runner(LlmAgent(name="solo", model=backend, tools=[TransferToAgentTool()]))

    with pytest.raises(AgentNotFound) as exc_info:
        _run(runner)

    assert exc_info.value.details == {"from": "solo"}
    stored = list(_stored(runner).events)
    assert [e.author for e in stored] == ["user", "solo", "solo"]
    assert stored[-1].actions.transfer_to_agent == "ghost"
    assert backend.calls == 1


def test_sub_agent_with_disallowed_parent_transfer_is_not_resumed():
    backend = ScriptedBackend([_transfer_call("B"), _text("B answers")])
    agent_b = LlmAgent(name="B", disallow_transfer_to_parent=True)
    runner = _runner(LlmAgent(name="A", model=backend, sub_agents=[agent_b]))

    _run(runner)

    assert runner.find_agent_to_run(_stored(runner)).name == "A"


### 5) Callbacks and workflow agents ###########################################


def test_before_agent_callback_short_circuits():
    agent = CountingAgent(name="custom", before_agent_callbacks=[lambda ctx: Content.from_text("blocked", "model")])
    runner = _runner(agent)

    events = _run(runner)

    assert agent.call_counter == 0
    assert [e.content.parts[0].text for e in events] == ["blocked"]


def test_after_agent_callback_appends_event():
    seen = []

    def after(ctx):
        seen.append(ctx.agent.name)
        return Content.from_text("goodbye", "model")

    agent = CountingAgent(
        name="custom",
        before_agent_callbacks=[lambda ctx: None],
        after_agent_callbacks=[after],
    )
    events = _run(_runner(agent))

    assert seen == ["custom"]
    assert [e.content.parts[0].text for e in events] == ["hello", "still here", "goodbye"]


def test_sequential_agent_runs_sub_agents_in_order():
    first = LlmAgent(name="first", model=ScriptedBackend([_text("one")]))
    second = LlmAgent(name="second", model=ScriptedBackend([_text("two")]))
    runner = _runner(SequentialAgent(name="pipeline", sub_agents=[first, second]))

    events = _run(runner)

    assert [(e.author, e.content.parts[0].text) for e in events] == [("first", "one"), ("second", "two")]


### 6) RunConfig options #######################################################


def test_cfc_requires_gemini_2_model():
    runner = _runner(LlmAgent(name="echoer", model=EchoBackend()))
    with pytest.raises(UnsupportedError) as exc_info:
        _run(runner, run_config=RunConfig(support_cfc=True))
    assert "CFC is not supported for model: echo" in str(exc_info.value)


def test_cfc_accepts_gemini_2_model():
    runner = _runner(LlmAgent(name="live", model=ScriptedBackend([_text("ok")], name="gemini-2.0-flash")))
    events = _run(runner, run_config=RunConfig(support_cfc=True))
    assert events[-1].content.parts[0].text == "ok"


def test_cfc_rejects_non_model_backed_agent():
    runner = _runner(CountingAgent(name="custom"))
    with pytest.raises(UnsupportedError):
        _run(runner, run_config=RunConfig(support_cfc=True))


def test_input_blobs_are_saved_as_artifacts():
    artifacts = InMemoryArtifactService()
    runner = _runner(CountingAgent(name="custom"), artifact_service=artifacts)
    message = Content(
        role="user",
        parts=[Part(text="see attached"), Part(inline_data=Blob(mime_type="text/plain", data=b"file body"))],
    )

    events = list(
        runner.run(
            user_id=USER,
            session_id="s1",
            new_message=message,
            run_config=RunConfig(save_input_blobs_as_artifacts=True),
        )
    )

    name = f"artifact_{events[0].invocation_id}_1"
    stored_message = _stored(runner).events[0].content
    assert stored_message.parts[0].text == "see attached"
    assert stored_message.parts[1].text == f"Uploaded file: {name}. It is saved into artifacts"
    saved = artifacts.load_artifact(app_name=APP, user_id=USER, session_id="s1", filename=name)
    assert saved.inline_data.data == b"file body"
