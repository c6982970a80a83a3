"""
Collector module - typed state collection

Contains:
- kubernetes: declared state from the control plane (pods, services, endpoints)
- agent: realized state and dataplane tables reported by each agent
"""

from .kubernetes import (
    BackendAddress,
    ControlPlane,
    EndpointDesiredRecord,
    PodStatus,
    ServiceDesiredRecord,
)
from .agent import (
    AgentClient,
    AgentCommands,
    AgentHandle,
    AgentStatus,
    ServiceRealizedRecord,
    list_agents,
)

__all__ = [
    'AgentClient',
    'AgentCommands',
    'AgentHandle',
    'AgentStatus',
    'BackendAddress',
    'ControlPlane',
    'EndpointDesiredRecord',
    'PodStatus',
    'ServiceDesiredRecord',
    'ServiceRealizedRecord',
    'list_agents',
]
