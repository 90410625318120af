"""
Agent transfer: which agents the active agent may hand off to, and the tool
the model calls to request the hand-off.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import InvalidArgumentError
from .tools import BaseTool, ToolContext

logger = logging.getLogger("agent-relay")

TRANSFER_TOOL_NAME = "transfer_to_agent"


class TransferToAgentTool(BaseTool):
    """
    Records a requested hand-off in the event actions.

    When `allowed_agents` is given (the set offered to the model), names
    outside it are rejected before anything is recorded.
    """

    name = TRANSFER_TOOL_NAME
    description = (
        "Transfer the question to another agent. "
        "Pass the target agent's exact name as the `agent_name` argument."
    )

    def __init__(self, allowed_agents: Optional[Iterable[str]] = None):
        self.allowed_agents = frozenset(allowed_agents) if allowed_agents is not None else None

    def declaration(self) -> Dict[str, Any]:
        # Free-text agent_name argument, no structured schema.
        return {"name": self.name, "description": self.description, "parameters": None}

    def run(self, tool_context: ToolContext, args: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        if not args or "agent_name" not in args:
            raise InvalidArgumentError("transfer_to_agent requires an 'agent_name' argument")
        agent_name = args["agent_name"]
        if not isinstance(agent_name, str):
            raise InvalidArgumentError(
                "'agent_name' must be a string",
                details={"type": type(agent_name).__name__},
            )
        if not agent_name:
            raise InvalidArgumentError("'agent_name' must not be empty")
        if self.allowed_agents is not None and agent_name not in self.allowed_agents:
            raise InvalidArgumentError(
                f"Agent {agent_name!r} is not a valid transfer target",
                details={"allowed": sorted(self.allowed_agents)},
            )

        tool_context.actions.transfer_to_agent = agent_name
        return {"status": "transferred", "agent_name": agent_name}


def transfer_targets(tree: Any, agent: Any) -> List[Any]:
    """Children, then the parent and peers when the agent's flags allow them."""
    targets: List[Any] = list(tree.children_of(agent))
    parent = tree.parent_of(agent)
    if parent is not None and not agent.disallow_transfer_to_parent:
        targets.append(parent)
    if parent is not None and not agent.disallow_transfer_to_peers:
        targets.extend(tree.peers_of(agent))
    return [t for t in targets if t.name != agent.name]


def build_transfer_instruction(targets: List[Any], parent: Optional[Any]) -> str:
    lines = ["You have a list of other agents to transfer to:", ""]
    for target in targets:
        lines.append(f"Agent name: {target.name}")
        lines.append(f"Agent description: {target.description}")
        lines.append("")
    lines.append(
        "If you are the best to answer the question according to your description, "
        "you can answer it."
    )
    lines.append("")
    lines.append(
        "If another agent is better for answering the question according to its description, "
        f"call the `{TRANSFER_TOOL_NAME}` function to transfer the question to that agent. "
        "When transferring, do not generate any text other than the function call."
    )
    lines.append("")
    lines.append(
        "Only transfer to an agent from the list above. "
        "Never transfer to yourself or to an agent that is not listed."
    )
    if parent is not None and any(t.name == parent.name for t in targets):
        lines.append("")
        lines.append(
            f"Your parent agent is {parent.name}. If neither the other agents nor you are best "
            "for answering the question according to the descriptions, transfer to your parent agent."
        )
    return "\n".join(lines)


def agent_transfer_request_processor(ctx: Any, request: Any) -> None:
    """Offer the transfer tool when the active agent has legal targets."""
    agent = ctx.agent
    if not agent.model_backed:
        return

    targets = transfer_targets(ctx.tree, agent)
    if not targets:
        return

    tool = TransferToAgentTool(allowed_agents=[t.name for t in targets])
    request.append_tools([tool])
    request.append_instructions([build_transfer_instruction(targets, ctx.tree.parent_of(agent))])
    logger.debug(
        "transfer targets agent=%s targets=%s",
        agent.name,
        ",".join(t.name for t in targets),
    )
