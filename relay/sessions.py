"""
Sessions and their append-only event log.

A Session is the single source of truth for what happened in a conversation.
Only the Runner appends to it, through BaseSessionService.append_event, once
per committed (non-partial) event.
"""

from __future__ import annotations

import copy
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .errors import SessionNotFound
from .models import Event, SessionKey, new_id


class EventLog:
    """
    Append-only sequence of events with random access by index.

    Iteration is restartable: each iter() walks a snapshot of the events taken
    when iter() is called.
    """

    def __init__(self, events: Optional[Iterable[Event]] = None):
        self._events: List[Event] = list(events or [])
        self._lock = threading.Lock()

    def append(self, event: Event) -> None:
        with self._lock:
            self._events.append(event)

    def __len__(self) -> int:
        return len(self._events)

    def __getitem__(self, index: int) -> Event:
        return self._events[index]

    def __iter__(self) -> Iterator[Event]:
        with self._lock:
            snapshot = self._events[:]
        return iter(snapshot)

    def __repr__(self) -> str:
        return f"EventLog(len={len(self._events)})"


@dataclass
class Session:
    key: SessionKey
    events: EventLog = field(default_factory=EventLog)
    state: Dict[str, Any] = field(default_factory=dict)
    last_update_time: float = 0.0

    @property
    def id(self) -> str:
        return self.key.session_id

    @property
    def app_name(self) -> str:
        return self.key.app_name

    @property
    def user_id(self) -> str:
        return self.key.user_id


class BaseSessionService:
    """
    Session storage interface consumed by the Runner.

    append_event applies the event to the in-memory Session (log + state
    delta); storage-backed subclasses persist first and then call it.
    """

    def create_session(
        self,
        *,
        app_name: str,
        user_id: str,
        session_id: Optional[str] = None,
        state: Optional[Dict[str, Any]] = None,
    ) -> Session:  # pragma: no cover - interface only
        raise NotImplementedError

    def get_session(self, key: SessionKey) -> Session:  # pragma: no cover - interface only
        raise NotImplementedError

    def list_sessions(self, *, app_name: str, user_id: str) -> List[SessionKey]:  # pragma: no cover - interface only
        raise NotImplementedError

    def delete_session(self, key: SessionKey) -> None:  # pragma: no cover - interface only
        raise NotImplementedError

    def append_event(self, session: Session, event: Event) -> Event:
        if event.partial:
            return event
        if event.actions.state_delta:
            session.state.update(event.actions.state_delta)
        session.events.append(event)
        session.last_update_time = event.timestamp
        return event


class InMemorySessionService(BaseSessionService):
    """
    Process-local session service.

    get_session hands out the stored Session itself, so every runner sees
    appends made by the others. Appends are serialized per session.
    """

    def __init__(self) -> None:
        self._sessions: Dict[SessionKey, Session] = {}
        self._locks: Dict[SessionKey, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, key: SessionKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def create_session(
        self,
        *,
        app_name: str,
        user_id: str,
        session_id: Optional[str] = None,
        state: Optional[Dict[str, Any]] = None,
    ) -> Session:
        key = SessionKey(app_name=app_name, user_id=user_id, session_id=session_id or new_id())
        session = Session(key=key, state=copy.deepcopy(state or {}), last_update_time=time.time())
        with self._registry_lock:
            self._sessions[key] = session
        return session

    def get_session(self, key: SessionKey) -> Session:
        session = self._sessions.get(key)
        if session is None:
            raise SessionNotFound(
                f"Session not found: {key.session_id}",
                details={"app_name": key.app_name, "user_id": key.user_id},
            )
        return session

    def list_sessions(self, *, app_name: str, user_id: str) -> List[SessionKey]:
        return [k for k in self._sessions if k.app_name == app_name and k.user_id == user_id]

    def delete_session(self, key: SessionKey) -> None:
        with self._registry_lock:
            self._sessions.pop(key, None)
            self._locks.pop(key, None)

    def append_event(self, session: Session, event: Event) -> Event:
        if event.partial:
            return event
        stored = self._sessions.get(session.key)
        if stored is None:
            raise SessionNotFound(f"Session not found: {session.key.session_id}")
        with self._lock_for(session.key):
            super().append_event(stored, event)
            if session is not stored:
                super().append_event(session, event)
        return event
