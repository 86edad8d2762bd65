"""
Agent configurations for the ClinConnect voice bridge.

Agents are plain immutable data; the turn handler and the delegation protocol
are what bring them to life on a call.

Key components:
- base: AgentId, Agent, Tool and ToolResult, plus the shared prompt builder.
- clinical_trials: intake, trial search, enrollment and support agents with
  their tools.
- chat_supervisor: the junior chat agent and the supervisor's tools and
  instructions.
- supervisor: the filler-then-delegate protocol and the supervisor pass.
- catalog: AGENTS and the get_agent dispatcher, verified at import time.

Usage examples:
```python
from clinconnect.agents import AgentId, get_agent

agent = get_agent(AgentId.INTAKE)
print(agent.introduction)
print([tool.name for tool in agent.tools])
```
"""

from clinconnect.agents.base import Agent, AgentId, Tool, ToolContext, ToolResult
from clinconnect.agents.catalog import AGENTS, entry_agent_for, get_agent

__all__ = [
    "AGENTS",
    "Agent",
    "AgentId",
    "Tool",
    "ToolContext",
    "ToolResult",
    "entry_agent_for",
    "get_agent",
]
