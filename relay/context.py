"""
Invocation context: per-call state for one Runner.run invocation.

Contexts derived for transferred or child agents (`for_agent`) share the
cancellation flag and the model-call counter of the invocation.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Optional

from .errors import InvocationCancelled, LlmCallLimitExceeded
from .models import Content, Event, EventActions, RunConfig, new_id
from .tree import AgentTree


class _InvocationState:
    def __init__(self) -> None:
        self.cancelled = threading.Event()
        self.cause: Optional[str] = None
        self.llm_calls = 0


class InvocationContext:
    def __init__(
        self,
        *,
        agent: Any,
        session: Any = None,
        session_service: Any = None,
        invocation_id: Optional[str] = None,
        branch: str = "",
        user_content: Optional[Content] = None,
        artifacts: Any = None,
        run_config: Optional[RunConfig] = None,
        tree: Optional[AgentTree] = None,
        id_factory: Callable[[], str] = new_id,
        _state: Optional[_InvocationState] = None,
    ):
        self.agent = agent
        self.session = session
        self.session_service = session_service
        self.id_factory = id_factory
        self.invocation_id = invocation_id or "e-" + id_factory()
        self.branch = branch
        self.user_content = user_content
        self.artifacts = artifacts
        self.run_config = run_config or RunConfig()
        self.tree = tree or AgentTree(agent)
        self._state = _state or _InvocationState()

    def for_agent(self, agent: Any) -> "InvocationContext":
        """Context for `agent` within the same invocation."""
        return InvocationContext(
            agent=agent,
            session=self.session,
            session_service=self.session_service,
            invocation_id=self.invocation_id,
            branch=self.branch,
            user_content=self.user_content,
            artifacts=self.artifacts,
            run_config=self.run_config,
            tree=self.tree,
            id_factory=self.id_factory,
            _state=self._state,
        )

    @property
    def state(self) -> dict:
        return self.session.state if self.session is not None else {}

    def new_event(
        self,
        *,
        author: Optional[str] = None,
        content: Optional[Content] = None,
        actions: Optional[EventActions] = None,
        **fields: Any,
    ) -> Event:
        return Event(
            id=self.id_factory(),
            invocation_id=self.invocation_id,
            author=author if author is not None else self.agent.name,
            branch=self.branch,
            content=content,
            actions=actions or EventActions(),
            **fields,
        )

    def end(self, cause: str = "invocation ended") -> None:
        if not self._state.cancelled.is_set():
            self._state.cause = cause
            self._state.cancelled.set()

    @property
    def ended(self) -> bool:
        return self._state.cancelled.is_set()

    @property
    def cause(self) -> Optional[str]:
        return self._state.cause

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the invocation is ended or `timeout` elapses."""
        return self._state.cancelled.wait(timeout)

    def raise_if_ended(self) -> None:
        if self.ended:
            raise InvocationCancelled(
                f"invocation {self.invocation_id} cancelled: {self._state.cause}",
                details={"agent": self.agent.name},
            )

    def increment_llm_calls(self) -> None:
        self._state.llm_calls += 1
        limit = self.run_config.max_llm_calls
        if limit > 0 and self._state.llm_calls > limit:
            raise LlmCallLimitExceeded(
                f"Max number of llm calls limit of {limit} exceeded",
                details={"invocation_id": self.invocation_id},
            )

    @property
    def llm_calls(self) -> int:
        return self._state.llm_calls
