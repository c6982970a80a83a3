"""
Service Consistency Validation

Cross-checks a ConsistencySnapshot, agent by agent:

Desired -> Realized
- every realized service matches a desired service, by cluster IP first and
  then by the first declared port equal to the frontend port
- every realized backend is an endpoint address of that desired service
- every desired service with a cluster IP (not headless, not ExternalName)
  is realized on the agent

Realized -> Dataplane
- every realized frontend has a dataplane entry
- every realized backend appears in that entry
- the agent has as many dataplane entries as realized services

Dataplane backend strings carry extra metadata after the address, so by
default a backend matches an entry that contains it as a substring.
"""

import logging
from typing import Iterator, List, Optional, Sequence

from collector.agent import ServiceRealizedRecord
from collector.kubernetes import BackendAddress, ServiceDesiredRecord
from errors import Inconsistent

from .snapshot import AgentState, ConsistencySnapshot

logger = logging.getLogger(__name__)


class ConsistencyValidator:
    """
    Validates desired, realized and dataplane service state.

    validate() raises the first inconsistency found; find_issues() returns
    all of them, for reports.
    """

    def __init__(self, strict_backends: bool = False):
        """
        Initialize validator.

        Args:
            strict_backends: Require the address part of a dataplane backend
                to equal the realized backend instead of containing it
        """
        self.strict_backends = strict_backends

    def validate(self, snapshot: ConsistencySnapshot) -> None:
        """
        Raises:
            Inconsistent: On the first mismatch, in agent order
        """
        for issue in self._check_snapshot(snapshot):
            raise issue

    def find_issues(self, snapshot: ConsistencySnapshot) -> List[Inconsistent]:
        issues = list(self._check_snapshot(snapshot))
        logger.info(f"Consistency check complete: {len(issues)} issues on {len(snapshot.agents)} agents")
        return issues

    def validate_service(self, snapshot: ConsistencySnapshot, name: str, namespace: str) -> None:
        """
        Check that one desired service is realized and programmed on every agent.

        Raises:
            Inconsistent: If the service is unknown, unrealized or unprogrammed
        """
        service = snapshot.find_service(name, namespace)
        if service is None:
            raise Inconsistent(f"{namespace}/{name} service not found in desired state")

        for state in snapshot.agents:
            realized = _find_realized(service, state.services)
            if realized is None:
                raise Inconsistent(
                    f"agent '{state.agent}': no realized service corresponding to "
                    f"{service.key} ({service.cluster_ip})",
                    agent=state.agent.name,
                )
            for issue in self._check_backends(snapshot, state, realized, service):
                raise issue
            for issue in self._check_dataplane_entry(state, realized):
                raise issue

    def _check_snapshot(self, snapshot: ConsistencySnapshot) -> Iterator[Inconsistent]:
        for state in snapshot.agents:
            yield from self._check_desired_to_realized(snapshot, state)
            yield from self._check_realized_to_dataplane(state)

    def _check_desired_to_realized(
        self,
        snapshot: ConsistencySnapshot,
        state: AgentState
    ) -> Iterator[Inconsistent]:
        found = set()
        for realized in state.services:
            service = _find_by_ip(realized.frontend.ip, snapshot.services)
            if service is None:
                yield Inconsistent(
                    f"agent '{state.agent}': no desired service with cluster IP "
                    f"{realized.frontend.ip} for realized frontend {realized.frontend_key}",
                    agent=state.agent.name,
                    frontend=realized.frontend_key,
                )
                continue

            if realized.frontend.port not in service.ports:
                yield Inconsistent(
                    f"agent '{state.agent}': desired service {service.key} has no port "
                    f"{realized.frontend.port} for realized frontend {realized.frontend_key}",
                    agent=state.agent.name,
                    frontend=realized.frontend_key,
                )
                continue

            found.add(service.key)
            yield from self._check_backends(snapshot, state, realized, service)

        missing = [
            svc.key for svc in snapshot.services
            if svc.realizable and svc.key not in found
        ]
        if missing:
            yield Inconsistent(
                f"agent '{state.agent}': no realized service corresponding to desired "
                f"services {', '.join(missing)}",
                agent=state.agent.name,
            )

    def _check_backends(
        self,
        snapshot: ConsistencySnapshot,
        state: AgentState,
        realized: ServiceRealizedRecord,
        service: ServiceDesiredRecord
    ) -> Iterator[Inconsistent]:
        desired = set()
        for ep in snapshot.endpoints_for(service):
            desired.update(ep.addresses())

        for backend in realized.backends:
            if backend not in desired:
                yield Inconsistent(
                    f"agent '{state.agent}': realized backend {backend} of "
                    f"{realized.frontend_key} does not match any endpoint of {service.key}",
                    agent=state.agent.name,
                    frontend=realized.frontend_key,
                    backend=str(backend),
                )

    def _check_realized_to_dataplane(self, state: AgentState) -> Iterator[Inconsistent]:
        for realized in state.services:
            yield from self._check_dataplane_entry(state, realized)

        if len(state.services) != len(state.dataplane):
            realized_keys = {r.frontend_key for r in state.services}
            stale = sorted(k for k in state.dataplane if k not in realized_keys)
            detail = f" (unrealized entries: {', '.join(stale)})" if stale else ""
            yield Inconsistent(
                f"agent '{state.agent}': {len(state.services)} realized services but "
                f"{len(state.dataplane)} dataplane entries{detail}",
                agent=state.agent.name,
            )

    def _check_dataplane_entry(
        self,
        state: AgentState,
        realized: ServiceRealizedRecord
    ) -> Iterator[Inconsistent]:
        frontend = realized.frontend_key
        programmed = state.dataplane.get(frontend)

        if programmed is None:
            pairs = ", ".join(f"{frontend} -> {b}" for b in realized.backends) or frontend
            yield Inconsistent(
                f"agent '{state.agent}': dataplane entry {frontend} not found (missing {pairs})",
                agent=state.agent.name,
                frontend=frontend,
                backend=str(realized.backends[0]) if realized.backends else None,
            )
            return

        for backend in realized.backends:
            if not self._programmed(backend, programmed):
                yield Inconsistent(
                    f"agent '{state.agent}': {frontend} -> {backend} not found in dataplane table",
                    agent=state.agent.name,
                    frontend=frontend,
                    backend=str(backend),
                )

    def _programmed(self, backend: BackendAddress, programmed: Sequence[str]) -> bool:
        wanted = str(backend)
        for entry in programmed:
            if self.strict_backends:
                parts = entry.split()
                if parts and parts[0] == wanted:
                    return True
            elif wanted in entry:
                return True
        return False


def _find_by_ip(ip: str, services: Sequence[ServiceDesiredRecord]) -> Optional[ServiceDesiredRecord]:
    """First desired service with this cluster IP, in listing order."""
    for svc in services:
        if svc.cluster_ip == ip:
            return svc
    return None


def _find_realized(
    service: ServiceDesiredRecord,
    realized: Sequence[ServiceRealizedRecord]
) -> Optional[ServiceRealizedRecord]:
    """First realized record on the service's cluster IP and one of its ports."""
    for record in realized:
        if record.frontend.ip != service.cluster_ip:
            continue
        for port in service.ports:
            if record.frontend.port == port:
                return record
    return None
