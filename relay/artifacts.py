"""
Artifact storage: versioned binary parts scoped to a session.

Only reachable through the invocation context's artifact handle; the request
processors never touch it.
"""

from __future__ import annotations

import threading
from typing import Dict, List, Optional, Tuple

from .errors import NotFoundError
from .models import Part, SessionKey


class BaseArtifactService:
    def save_artifact(
        self, *, app_name: str, user_id: str, session_id: str, filename: str, artifact: Part
    ) -> int:  # pragma: no cover - interface only
        raise NotImplementedError

    def load_artifact(
        self, *, app_name: str, user_id: str, session_id: str, filename: str, version: Optional[int] = None
    ) -> Optional[Part]:  # pragma: no cover - interface only
        raise NotImplementedError

    def list_artifact_keys(self, *, app_name: str, user_id: str, session_id: str) -> List[str]:  # pragma: no cover
        raise NotImplementedError

    def list_versions(
        self, *, app_name: str, user_id: str, session_id: str, filename: str
    ) -> List[int]:  # pragma: no cover - interface only
        raise NotImplementedError

    def delete_artifact(
        self, *, app_name: str, user_id: str, session_id: str, filename: str
    ) -> None:  # pragma: no cover - interface only
        raise NotImplementedError


class InMemoryArtifactService(BaseArtifactService):
    """Keeps every saved version in memory; version numbers start at 0."""

    def __init__(self) -> None:
        self._artifacts: Dict[Tuple[str, str, str, str], List[Part]] = {}
        self._lock = threading.Lock()

    def save_artifact(self, *, app_name: str, user_id: str, session_id: str, filename: str, artifact: Part) -> int:
        key = (app_name, user_id, session_id, filename)
        with self._lock:
            versions = self._artifacts.setdefault(key, [])
            versions.append(artifact.model_copy(deep=True))
            return len(versions) - 1

    def load_artifact(
        self, *, app_name: str, user_id: str, session_id: str, filename: str, version: Optional[int] = None
    ) -> Optional[Part]:
        versions = self._artifacts.get((app_name, user_id, session_id, filename))
        if not versions:
            return None
        if version is None:
            return versions[-1]
        if version < 0 or version >= len(versions):
            return None
        return versions[version]

    def list_artifact_keys(self, *, app_name: str, user_id: str, session_id: str) -> List[str]:
        return sorted(
            filename
            for (a, u, s, filename) in self._artifacts
            if (a, u, s) == (app_name, user_id, session_id)
        )

    def list_versions(self, *, app_name: str, user_id: str, session_id: str, filename: str) -> List[int]:
        versions = self._artifacts.get((app_name, user_id, session_id, filename), [])
        return list(range(len(versions)))

    def delete_artifact(self, *, app_name: str, user_id: str, session_id: str, filename: str) -> None:
        with self._lock:
            self._artifacts.pop((app_name, user_id, session_id, filename), None)


class SessionArtifacts:
    """Artifact handle bound to one session, exposed on the invocation context."""

    def __init__(self, service: BaseArtifactService, key: SessionKey):
        self.service = service
        self.key = key

    def save(self, name: str, part: Part) -> int:
        return self.service.save_artifact(
            app_name=self.key.app_name,
            user_id=self.key.user_id,
            session_id=self.key.session_id,
            filename=name,
            artifact=part,
        )

    def load(self, name: str, version: Optional[int] = None) -> Part:
        part = self.service.load_artifact(
            app_name=self.key.app_name,
            user_id=self.key.user_id,
            session_id=self.key.session_id,
            filename=name,
            version=version,
        )
        if part is None:
            raise NotFoundError(f"Artifact not found: {name}", details={"version": version})
        return part

    def list(self) -> List[str]:
        return self.service.list_artifact_keys(
            app_name=self.key.app_name,
            user_id=self.key.user_id,
            session_id=self.key.session_id,
        )
