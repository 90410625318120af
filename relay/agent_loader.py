from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

from .agents import Agent, LlmAgent, SequentialAgent
from .config import get_settings
from .errors import DuplicateAgentNameError
from .providers import build_backend
from .tools import validate_args
from .tree import build_parent_map

logger = logging.getLogger("agent-relay")

AGENT_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "definitions": {
        "agent": {
            "type": "object",
            "required": ["name"],
            "additionalProperties": False,
            "properties": {
                "name": {"type": "string", "minLength": 1, "not": {"const": "user"}},
                "kind": {"type": "string", "enum": ["llm", "sequential"]},
                "description": {"type": "string"},
                "instruction": {"type": "string"},
                "model": {"type": "string"},
                "include_contents": {"type": "string", "enum": ["", "default", "none"]},
                "disallow_transfer_to_parent": {"type": "boolean"},
                "disallow_transfer_to_peers": {"type": "boolean"},
                "sub_agents": {"type": "array", "items": {"$ref": "#/definitions/agent"}},
            },
        }
    },
    "$ref": "#/definitions/agent",
}


class AgentLoadError(RuntimeError):
    """Raised when an agent definition cannot be loaded or validated."""


def _read_agents_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise AgentLoadError(f"Agent file not found: {path}")

    with path.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as exc:
            raise AgentLoadError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise AgentLoadError("Agent YAML must deserialize to a mapping")
    return data


def _build_agent(spec: Dict[str, Any]) -> Agent:
    common = dict(
        name=spec["name"],
        description=spec.get("description", ""),
        sub_agents=[_build_agent(child) for child in spec.get("sub_agents") or []],
        disallow_transfer_to_parent=bool(spec.get("disallow_transfer_to_parent", False)),
        disallow_transfer_to_peers=bool(spec.get("disallow_transfer_to_peers", False)),
    )
    kind = spec.get("kind", "llm")
    if kind == "sequential":
        return SequentialAgent(**common)

    # Agents without a model inherit their nearest ancestor's at run time.
    model = build_backend(spec["model"]) if spec.get("model") else None
    return LlmAgent(
        model=model,
        instruction=spec.get("instruction", ""),
        include_contents=spec.get("include_contents", "default"),
        **common,
    )


def build_agent_tree(spec: Dict[str, Any]) -> Agent:
    """Validate an agent definition mapping and build the agent tree it describes."""
    errors = validate_args(spec, AGENT_SCHEMA)
    if errors:
        first = errors[0]
        where = ".".join(str(p) for p in first["path"]) or "<root>"
        raise AgentLoadError(f"Invalid agent definition at {where}: {first['message']}")

    root = _build_agent(spec)
    try:
        build_parent_map(root)
    except DuplicateAgentNameError as exc:
        raise AgentLoadError(exc.message) from exc
    return root


def load_agent_tree(path: Union[str, Path]) -> Agent:
    """Load an agent tree from a YAML file."""
    path = Path(path)
    root = build_agent_tree(_read_agents_yaml(path))
    logger.info("loaded agent tree root=%s from %s", root.name, path)
    return root


def load_configured_agent_tree() -> Optional[Agent]:
    """Agent tree from AGENTS_FILE, or None when it is not set."""
    settings = get_settings()
    if not settings.agents_file:
        return None
    return load_agent_tree(settings.agents_file)
