"""
Matrix Agents

One Agent runtime, three stage behaviours: Planner, Doer, Reviewer.

Usage:
    from matrix_framework.agents import AgentRole, create_agent

    planner = create_agent(AgentRole.PLANNER, "Planner")
    doer = create_agent("doer", "Doer", artifact_producer=my_producer)
"""

from typing import Dict, Optional, Type, Union

from ..config import AgentConfig
from ..exceptions import InvalidAgentError
from .base import (
    BROADCAST,
    Agent,
    AgentIdentity,
    AgentMessage,
    AgentMetrics,
    AgentRole,
    AgentState,
    AgentStatus,
    Capability,
    MessageType,
    StageBehaviour,
    WorkingMemory,
)
from .doer import ArtifactProducer, ArtifactResult, Doer, Workspace
from .planner import PLAN_TEMPLATES, Planner
from .reviewer import Reviewer


BEHAVIOURS: Dict[AgentRole, Type[StageBehaviour]] = {
    AgentRole.PLANNER: Planner,
    AgentRole.DOER: Doer,
    AgentRole.REVIEWER: Reviewer,
}


def create_agent(role: Union[AgentRole, str], name: str,
                 agent_id: Optional[str] = None,
                 config: Optional[AgentConfig] = None,
                 **behaviour_kwargs) -> Agent:
    """Build an agent for a role.

    Extra keyword arguments go to the behaviour constructor, e.g.
    ``artifact_producer`` for a doer or ``templates`` for a planner.
    """
    try:
        role = AgentRole(role)
    except ValueError:
        raise InvalidAgentError(f"unknown role '{role}'")
    behaviour = BEHAVIOURS[role](**behaviour_kwargs)
    return Agent(behaviour, name, agent_id=agent_id, config=config)


__all__ = [
    "Agent", "AgentIdentity", "AgentMessage", "AgentMetrics", "AgentRole",
    "AgentState", "AgentStatus", "Capability", "MessageType", "StageBehaviour",
    "WorkingMemory", "BROADCAST",
    "Planner", "Doer", "Reviewer", "PLAN_TEMPLATES",
    "ArtifactProducer", "ArtifactResult", "Workspace",
    "BEHAVIOURS", "create_agent",
]
