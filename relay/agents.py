"""
Agents: named participants arranged in a tree.

`model_backed` is the capability flag the processors and the runner query
("does this agent talk to a model"); plain and workflow agents leave it off.
Parents are not stored on agents; see relay.tree.AgentTree.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, ClassVar, Iterator, List, Optional

from .engine import run_flow
from .models import Content, Event

AgentCallback = Callable[[Any], Optional[Content]]


@dataclass(eq=False)
class Agent:
    """
    Base agent. Subclasses override `_run_impl`; the base implementation
    produces no events.
    """

    model_backed: ClassVar[bool] = False

    name: str
    description: str = ""
    sub_agents: List["Agent"] = field(default_factory=list)
    disallow_transfer_to_parent: bool = False
    disallow_transfer_to_peers: bool = False
    before_agent_callbacks: List[AgentCallback] = field(default_factory=list)
    after_agent_callbacks: List[AgentCallback] = field(default_factory=list)

    def run(self, parent_context: Any) -> Iterator[Event]:
        """
        Run this agent inside `parent_context`'s invocation.

        A before callback returning content short-circuits the run with a
        single event; content returned by an after callback is emitted as one
        extra event. The invocation is checked for cancellation before every
        yield.
        """
        ctx = parent_context.for_agent(self)
        ctx.raise_if_ended()

        for callback in self.before_agent_callbacks:
            content = callback(ctx)
            if content is not None:
                yield ctx.new_event(content=content)
                return

        for event in self._run_impl(ctx):
            ctx.raise_if_ended()
            yield event

        for callback in self.after_agent_callbacks:
            content = callback(ctx)
            if content is not None:
                ctx.raise_if_ended()
                yield ctx.new_event(content=content)
                return

    def _run_impl(self, ctx: Any) -> Iterator[Event]:
        return iter(())


@dataclass(eq=False)
class LlmAgent(Agent):
    """Model-backed agent; its turns come from relay.engine.run_flow."""

    model_backed: ClassVar[bool] = True

    model: Any = None
    instruction: str = ""
    # "" and "default" include the whole history, "none" only the current turn.
    include_contents: str = "default"
    tools: List[Any] = field(default_factory=list)

    def _run_impl(self, ctx: Any) -> Iterator[Event]:
        return run_flow(ctx)


@dataclass(eq=False)
class SequentialAgent(Agent):
    """Workflow agent running its sub-agents one after another."""

    def _run_impl(self, ctx: Any) -> Iterator[Event]:
        for sub_agent in self.sub_agents:
            yield from sub_agent.run(ctx)
