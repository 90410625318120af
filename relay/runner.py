"""
Runner: the top-level control loop.

Each `run` call resolves the active agent from the session history, builds an
invocation context, appends the new user message, then drives the agent and
commits every non-partial event to the session before handing it to the
caller (persisted-before-observed).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Iterator, Optional

from .artifacts import BaseArtifactService, SessionArtifacts
from .config import default_run_config
from .context import InvocationContext
from .errors import DuplicateAgentNameError, RelayError, UnsupportedError, UpstreamError
from .models import USER_AUTHOR, Content, Event, Part, RunConfig, SessionKey, new_id
from .sessions import BaseSessionService, Session
from .tree import AgentTree

logger = logging.getLogger("agent-relay")

CFC_MODEL_PREFIX = "gemini-2"


class Runner:
    def __init__(
        self,
        *,
        app_name: str,
        agent: Any,
        session_service: BaseSessionService,
        artifact_service: Optional[BaseArtifactService] = None,
        id_factory: Callable[[], str] = new_id,
    ):
        try:
            self.tree = AgentTree(agent)
        except DuplicateAgentNameError as exc:
            raise DuplicateAgentNameError(f"failed to create agent tree: {exc.message}", details=exc.details) from exc
        self.app_name = app_name
        self.agent = agent
        self.session_service = session_service
        self.artifact_service = artifact_service
        self.id_factory = id_factory

    def run(
        self,
        *,
        user_id: str,
        session_id: str,
        new_message: Optional[Content] = None,
        run_config: Optional[RunConfig] = None,
    ) -> Iterator[Event]:
        """
        Lazily run one invocation and yield the events it produces.

        Errors end the iteration by being raised from it. Closing the
        iterator early ends the invocation context.
        """
        run_config = run_config or default_run_config()
        session = self._get_session(SessionKey(app_name=self.app_name, user_id=user_id, session_id=session_id))
        agent = self.find_agent_to_run(session)
        if run_config.support_cfc:
            self._setup_cfc(agent)

        artifacts = SessionArtifacts(self.artifact_service, session.key) if self.artifact_service else None
        ctx = InvocationContext(
            agent=agent,
            session=session,
            session_service=self.session_service,
            user_content=new_message,
            artifacts=artifacts,
            run_config=run_config,
            tree=self.tree,
            id_factory=self.id_factory,
        )

        start = time.monotonic()
        produced = 0
        try:
            if new_message is not None:
                self._append_new_message(ctx, session, new_message)

            for event in agent.run(ctx):
                if not event.partial:
                    self._append_event(session, event)
                produced += 1
                yield event
        finally:
            ctx.end("runner finished")
            logger.info(
                "run invocation_id=%s app=%s session_id=%s agent=%s events=%s latency_ms=%.2f",
                ctx.invocation_id,
                self.app_name,
                session_id,
                agent.name,
                produced,
                (time.monotonic() - start) * 1000.0,
            )

    def find_agent_to_run(self, session: Session) -> Any:
        """
        The agent that should handle the next request, based on history.

        Scans backward for the latest agent-authored event whose author can
        be resumed directly; falls back to the root agent.
        """
        events = session.events
        for i in range(len(events) - 1, -1, -1):
            event = events[i]
            if event.author == USER_AUTHOR:
                continue
            if event.author == self.tree.root.name:
                return self.tree.root

            agent = self.tree.find_agent(event.author)
            if agent is None:
                logger.warning("Event from an unknown agent: %s, event id: %s", event.author, event.id)
                continue
            if self.tree.is_transferable(agent):
                return agent
        return self.tree.root

    def _get_session(self, key: SessionKey) -> Session:
        try:
            return self.session_service.get_session(key)
        except RelayError:
            raise
        except Exception as exc:
            raise UpstreamError("failed to get session", details={"session_id": key.session_id, "message": str(exc)}) from exc

    def _setup_cfc(self, agent: Any) -> None:
        if not agent.model_backed:
            raise UnsupportedError(f"failed to setup CFC: agent {agent.name!r} is not model-backed")
        model = getattr(agent, "model", None)
        if model is None:
            raise UnsupportedError(f"failed to setup CFC: agent {agent.name!r} has no model")
        if not model.name.startswith(CFC_MODEL_PREFIX):
            raise UnsupportedError(
                f"failed to setup CFC: CFC is not supported for model: {model.name}",
                details={"model": model.name},
            )

    def _append_new_message(self, ctx: InvocationContext, session: Session, message: Content) -> None:
        if ctx.run_config.save_input_blobs_as_artifacts and ctx.artifacts is not None:
            message = self._save_input_blobs(ctx, message)
        event = ctx.new_event(author=USER_AUTHOR, content=message)
        self._append_event(session, event)

    def _save_input_blobs(self, ctx: InvocationContext, message: Content) -> Content:
        parts = []
        for i, part in enumerate(message.parts):
            if part.inline_data is None:
                parts.append(part)
                continue
            file_name = f"artifact_{ctx.invocation_id}_{i}"
            ctx.artifacts.save(file_name, part)
            parts.append(Part(text=f"Uploaded file: {file_name}. It is saved into artifacts"))
        return message.model_copy(update={"parts": parts})

    def _append_event(self, session: Session, event: Event) -> None:
        try:
            self.session_service.append_event(session, event)
        except Exception as exc:
            raise UpstreamError(
                "failed to add event to session",
                details={"session_id": session.id, "event_id": event.id, "message": str(exc)},
            ) from exc
