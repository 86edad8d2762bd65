"""
The one place agents are looked up by identity.

Every AgentId must map to a defined agent and every handoff target must exist;
both are checked when this module is imported.
"""

from typing import Dict, Mapping

from clinconnect.agents.base import Agent, AgentId
from clinconnect.agents.chat_supervisor import CHAT_AGENT
from clinconnect.agents.clinical_trials import CLINICAL_TRIALS_AGENTS
from clinconnect.config.settings import SCENARIO_CHAT_SUPERVISOR, SCENARIO_CLINICAL_TRIALS

AGENTS: Dict[AgentId, Agent] = {agent.id: agent for agent in CLINICAL_TRIALS_AGENTS + (CHAT_AGENT,)}

SCENARIO_ENTRY_AGENTS = {
    SCENARIO_CLINICAL_TRIALS: AgentId.INTAKE,
    SCENARIO_CHAT_SUPERVISOR: AgentId.CHAT,
}


def get_agent(agent_id: AgentId) -> Agent:
    """Resolve an agent identity to its configuration."""
    return AGENTS[AgentId(agent_id)]


def entry_agent_for(scenario: str) -> AgentId:
    """Agent that answers a new call in the given scenario."""
    try:
        return SCENARIO_ENTRY_AGENTS[scenario]
    except KeyError:
        raise ValueError(f"Unknown agent scenario: {scenario}")


def verify_catalog(agents: Mapping[AgentId, Agent]) -> None:
    """
    Check that the catalogue is complete and its handoff graph is closed.

    Raises:
        ValueError: an identity has no agent, an agent is filed under the wrong
            identity, or a handoff points at itself or at a missing agent
    """
    missing = [agent_id.value for agent_id in AgentId if agent_id not in agents]
    if missing:
        raise ValueError(f"No agent defined for: {', '.join(missing)}")

    for agent_id, agent in agents.items():
        if agent.id != agent_id:
            raise ValueError(f"Agent {agent.id.value} registered as {agent_id.value}")
        if agent_id in agent.handoffs:
            raise ValueError(f"Agent {agent_id.value} lists itself as a handoff target")
        unknown = [t.value for t in agent.handoffs if t not in agents]
        if unknown:
            raise ValueError(f"Agent {agent_id.value} hands off to undefined agents: {unknown}")
        names = [tool.name for tool in agent.tools]
        if len(names) != len(set(names)):
            raise ValueError(f"Agent {agent_id.value} defines duplicate tool names")


verify_catalog(AGENTS)
