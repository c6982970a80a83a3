"""
Consistency snapshot

Collects the three views of service state in one pass:
1. desired services and endpoints from the control plane
2. realized services reported by every agent
3. dataplane load-balancer table of every agent

The build is single-shot. Any failure aborts it; callers that want retries
wrap build_snapshot in a poller.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Mapping, Optional, Sequence, Tuple

from collector.agent import AgentHandle, ServiceRealizedRecord
from collector.kubernetes import EndpointDesiredRecord, ServiceDesiredRecord
from errors import Malformed, TransientUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentState:
    """Realized services and dataplane table of one agent."""
    agent: AgentHandle
    services: Tuple[ServiceRealizedRecord, ...]
    dataplane: Mapping[str, Tuple[str, ...]]


@dataclass(frozen=True)
class ConsistencySnapshot:
    """Desired, realized and dataplane service state at one point in time."""
    services: Tuple[ServiceDesiredRecord, ...]
    endpoints: Tuple[EndpointDesiredRecord, ...]
    agents: Tuple[AgentState, ...]

    def find_service(self, name: str, namespace: str) -> Optional[ServiceDesiredRecord]:
        for svc in self.services:
            if svc.name == name and svc.namespace == namespace:
                return svc
        return None

    def endpoints_for(self, service: ServiceDesiredRecord) -> Tuple[EndpointDesiredRecord, ...]:
        return tuple(
            ep for ep in self.endpoints
            if ep.name == service.name and ep.namespace == service.namespace
        )


def build_snapshot(
    control_plane,
    agent_client,
    agents: Sequence[AgentHandle],
    timeout: Optional[float] = None
) -> ConsistencySnapshot:
    """
    Build a snapshot of service state.

    Args:
        control_plane: collector.kubernetes.ControlPlane
        agent_client: collector.agent.AgentClient
        agents: Agents to collect realized state from
        timeout: Per-command timeout in seconds

    Returns:
        A frozen ConsistencySnapshot

    Raises:
        TransientUnavailable: If any listing or agent command failed
        Malformed: If any response could not be parsed
    """
    services = tuple(control_plane.list_services(timeout=timeout))
    endpoints = tuple(control_plane.list_endpoints(timeout=timeout))

    states = []
    for agent in agents:
        try:
            realized = tuple(agent_client.services(agent, timeout=timeout))
            table = agent_client.dataplane(agent, timeout=timeout)
        except TransientUnavailable as e:
            raise TransientUnavailable(f"unable to collect service state of agent '{agent}': {e}") from e
        except Malformed as e:
            raise Malformed(f"unable to parse service state of agent '{agent}': {e}") from e

        states.append(AgentState(
            agent=agent,
            services=realized,
            dataplane=MappingProxyType(dict(table)),
        ))
        logger.debug(f"Agent '{agent}': {len(realized)} services, {len(table)} dataplane entries")

    logger.info(
        f"Snapshot built: {len(services)} services, {len(endpoints)} endpoints, "
        f"{len(states)} agents"
    )
    return ConsistencySnapshot(services=services, endpoints=endpoints, agents=tuple(states))
