"""
Agent tree: a rooted hierarchy of named agents.

Agents own their sub_agents list and carry no parent pointer; the reverse
lookup lives in a name -> parent table built once by depth-first traversal.
The tree is read-only after construction and safe to share across runners.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .errors import DuplicateAgentNameError


def build_parent_map(root: Any) -> Dict[str, Any]:
    """
    Return a mapping agent name -> parent agent for every non-root agent.

    Raises DuplicateAgentNameError when two agents share a name. An agent
    object reachable twice (a cycle or a shared child) trips the same check.
    """
    parents: Dict[str, Any] = {}
    seen = {root.name}
    stack = [root]
    while stack:
        current = stack.pop()
        for child in current.sub_agents:
            if child.name in seen:
                raise DuplicateAgentNameError(
                    f"duplicate agent name: {child.name!r}",
                    details={"agent": child.name, "parent": current.name},
                )
            seen.add(child.name)
            parents[child.name] = current
            stack.append(child)
    return parents


def find_agent(root: Any, name: str) -> Optional[Any]:
    """Depth-first search for `name` starting at `root`."""
    if root is None or root.name == name:
        return root
    for child in root.sub_agents:
        found = find_agent(child, name)
        if found is not None:
            return found
    return None


class AgentTree:
    def __init__(self, root: Any):
        self.root = root
        self.parents = build_parent_map(root)

    def find_agent(self, name: str) -> Optional[Any]:
        return find_agent(self.root, name)

    def parent_of(self, agent: Any) -> Optional[Any]:
        return self.parents.get(agent.name)

    def children_of(self, agent: Any) -> List[Any]:
        return list(agent.sub_agents)

    def peers_of(self, agent: Any) -> List[Any]:
        parent = self.parent_of(agent)
        if parent is None:
            return []
        return [a for a in parent.sub_agents if a.name != agent.name]

    def is_transferable(self, agent: Any) -> bool:
        """
        Whether a conversation may resume directly at `agent`.

        Every agent on the path from `agent` up to the root (root excluded)
        must be model-backed and allow transfer to its parent.
        """
        current = agent
        while self.parent_of(current) is not None:
            if not current.model_backed or current.disallow_transfer_to_parent:
                return False
            current = self.parent_of(current)
        return True
