"""
Preflight Orchestrator

Composite readiness gate over the agents and the service state:

1. agent discovery
2. agent status and kvstore quorum
3. controller failures
4. connectivity health (skipped for some integrations)
5. service snapshot build
6. service consistency validation
7. well-known service check

Each poll tick runs the whole sequence from the top and stops at the first
failing stage. Repeated identical failures are logged once every
log_repeat_threshold ticks.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from collector.agent import AgentHandle, AgentStatus, list_agents
from errors import Malformed, Timeout, TransientUnavailable, Unhealthy, VerificationError
from output.formatters import format_agent_report, format_endpoint_diagnostic

from .consistency import ConsistencyValidator
from .fanout import wait_for_all
from .poll import DEFAULT_INTERVAL, Deadline, PollConfig, with_deadline
from .readiness import wait_for_pods
from .snapshot import ConsistencySnapshot, build_snapshot

logger = logging.getLogger(__name__)

DEFAULT_LOG_REPEAT_THRESHOLD = 5


@dataclass(frozen=True)
class PreflightSettings:
    """Knobs of the preflight checker, usually loaded by inventory.load_inventory."""
    agent_namespace: str = "kube-system"
    agent_selector: str = "k8s-app=cilium"
    timeout: float = 240.0
    interval: float = DEFAULT_INTERVAL
    command_timeout: float = 30.0
    log_repeat_threshold: int = DEFAULT_LOG_REPEAT_THRESHOLD
    integration: str = ""
    skip_health_integrations: Tuple[str, ...] = ("flannel",)
    service_name: str = "kubernetes"
    service_namespace: str = "default"
    strict_backends: bool = False

    @property
    def health_check_enabled(self) -> bool:
        return self.integration.lower() not in {i.lower() for i in self.skip_health_integrations}


class FailureLogDeduper:
    """
    Decides whether a failure message is worth logging.

    A new message is always logged. The same message again is suppressed
    until it has repeated threshold times, then logged once more and the
    count starts over.
    """

    def __init__(self, threshold: int = DEFAULT_LOG_REPEAT_THRESHOLD):
        self.threshold = threshold
        self.last_message: Optional[str] = None
        self.repeats = 0

    def should_log(self, message: str) -> bool:
        if message != self.last_message:
            self.last_message = message
            self.repeats = 0
            return True

        self.repeats += 1
        if self.repeats >= self.threshold:
            self.repeats = 0
            return True
        return False


@dataclass
class _Tick:
    """State handed from stage to stage within a single tick."""
    deadline: Deadline
    agents: List[AgentHandle] = field(default_factory=list)
    statuses: Dict[AgentHandle, AgentStatus] = field(default_factory=dict)
    snapshot: Optional[ConsistencySnapshot] = None


class PreflightChecker:
    """
    Entry point of the verification engine.

    Holds collaborators and settings only. Every operation collects fresh
    state; nothing is cached between calls.
    """

    def __init__(
        self,
        control_plane,
        agent_client,
        settings: Optional[PreflightSettings] = None,
        validator: Optional[ConsistencyValidator] = None
    ):
        """
        Args:
            control_plane: collector.kubernetes.ControlPlane
            agent_client: collector.agent.AgentClient
            settings: Checker settings
            validator: Consistency validator, built from settings when omitted
        """
        self.control_plane = control_plane
        self.agent_client = agent_client
        self.settings = settings or PreflightSettings()
        self.validator = validator or ConsistencyValidator(
            strict_backends=self.settings.strict_backends
        )

    # Exposed operations

    def wait_for_ready(
        self,
        selector: str,
        min_count: int = 0,
        timeout: Optional[float] = None,
        namespace: Optional[str] = None
    ) -> None:
        """
        Wait for pods matching selector to be ready.

        Raises:
            Timeout: If fewer than required pods became ready in time
        """
        wait_for_pods(
            self.control_plane,
            namespace or self.settings.agent_namespace,
            selector,
            min_count,
            timeout if timeout is not None else self.settings.timeout,
            interval=self.settings.interval,
        )

    def run_preflight(self, timeout: Optional[float] = None) -> None:
        """
        Poll the full preflight sequence until it passes.

        Raises:
            Timeout: If no tick passed before the timeout; the message carries
                the last failure
        """
        timeout = timeout if timeout is not None else self.settings.timeout
        deduper = FailureLogDeduper(self.settings.log_repeat_threshold)
        last_error: Optional[str] = None

        def body(deadline: Deadline) -> bool:
            nonlocal last_error
            failure = self._run_tick(_Tick(deadline=deadline))
            if failure is None:
                return True
            last_error = failure
            if deduper.should_log(failure):
                logger.warning(f"Agents are not ready yet: {failure}")
            return False

        logger.info(f"Performing preflight check (timeout {timeout}s)")
        try:
            with_deadline(body, Deadline(timeout), self.settings.interval, "preflight check failed")
        except Timeout as e:
            raise Timeout(f"{e.message}: last polled error: {last_error}", e.details) from e
        logger.info("Preflight check passed")

    def validate_service_consistency(self) -> ConsistencySnapshot:
        """
        Build a fresh snapshot and validate it.

        Returns:
            The validated snapshot

        Raises:
            TransientUnavailable, Malformed: If the snapshot could not be built
            Inconsistent: On the first mismatch
        """
        snapshot = self.build_snapshot()
        self.validator.validate(snapshot)
        logger.info(f"Service state consistent on {len(snapshot.agents)} agents")
        return snapshot

    def validate_service(self, name: str, namespace: str) -> None:
        """
        Check that a single service is realized and programmed on every agent.

        Raises:
            TransientUnavailable, Malformed: If the snapshot could not be built
            Inconsistent: If the service is missing anywhere
        """
        snapshot = self.build_snapshot()
        self.validator.validate_service(snapshot, name, namespace)

    def wait_for_endpoints_ready(self, timeout: Optional[float] = None) -> None:
        """
        Wait until every endpoint managed by every agent is ready.

        Raises:
            TransientUnavailable: If the agents cannot be listed
            Timeout: If some agent still had unready endpoints at the deadline;
                details list every endpoint per agent
        """
        agents = self.agents()
        client = self.agent_client

        def endpoints_ready(agent: AgentHandle, deadline: Deadline) -> bool:
            endpoints = client.endpoints(agent, timeout=self._command_timeout(deadline))
            invalid = sum(1 for ep in endpoints if not ep.ready)
            logger.info(f"Agent '{agent}': {len(endpoints)} endpoints, {invalid} not ready")
            return invalid == 0

        def describe(agent: AgentHandle) -> str:
            endpoints = client.endpoints(agent, timeout=self.settings.command_timeout)
            return format_endpoint_diagnostic(agent, endpoints)

        wait_for_all(
            agents,
            endpoints_ready,
            PollConfig(
                timeout=timeout if timeout is not None else self.settings.timeout,
                interval=self.settings.interval,
            ),
            message="timed out waiting for agent endpoints to be ready",
            describe=describe,
        )

    def check_report(self, sink) -> None:
        """
        Write a status summary of every agent to sink.write(label, text).

        Only diagnostic; collection errors end up in the report text.
        """
        try:
            agents = self.agents()
        except VerificationError as e:
            sink.write("agents", f"cannot retrieve agents: {e}")
            return

        statuses: Dict[AgentHandle, object] = {}
        for agent in agents:
            try:
                statuses[agent] = self.agent_client.status(agent, timeout=self.settings.command_timeout)
            except VerificationError as e:
                statuses[agent] = e
        sink.write("agents", format_agent_report(agents, statuses))

    # Building blocks

    def agents(self, deadline: Optional[Deadline] = None) -> List[AgentHandle]:
        """
        Raises:
            TransientUnavailable: If listing failed or no agent exists
        """
        agents = list_agents(
            self.control_plane,
            self.settings.agent_namespace,
            self.settings.agent_selector,
            timeout=self._command_timeout(deadline),
        )
        if not agents:
            raise TransientUnavailable(
                f"no agents found with selector '{self.settings.agent_selector}' "
                f"in namespace {self.settings.agent_namespace}"
            )
        return agents

    def build_snapshot(self, deadline: Optional[Deadline] = None) -> ConsistencySnapshot:
        return build_snapshot(
            self.control_plane,
            self.agent_client,
            self.agents(deadline),
            timeout=self._command_timeout(deadline),
        )

    def _command_timeout(self, deadline: Optional[Deadline]) -> float:
        if deadline is None:
            return self.settings.command_timeout
        return min(self.settings.command_timeout, max(deadline.remaining(), 0.001))

    # Tick stages

    def _stages(self) -> List[Tuple[str, Callable[[_Tick], None]]]:
        stages = [
            ("cannot retrieve agents", self._discover_agents),
            ("status is unhealthy", self._check_status),
            ("controllers are failing", self._check_controllers),
        ]
        if self.settings.health_check_enabled:
            stages.append(("connectivity health is failing", self._check_health))
        else:
            logger.debug(f"Skipping health check for integration '{self.settings.integration}'")
        stages.extend([
            ("unable to build service snapshot", self._build_snapshot),
            ("services are not set up correctly", self._check_services),
            (f"{self.settings.service_name} service is not ready", self._check_well_known_service),
        ])
        return stages

    def _run_tick(self, tick: _Tick) -> Optional[str]:
        """Run every stage; return the failure message of the first failing one."""
        for label, stage in self._stages():
            try:
                stage(tick)
            except VerificationError as e:
                return f"{label}: {e}"
        return None

    def _discover_agents(self, tick: _Tick) -> None:
        tick.agents = self.agents(tick.deadline)

    def _check_status(self, tick: _Tick) -> None:
        for agent in tick.agents:
            try:
                status = self.agent_client.status(agent, timeout=self._command_timeout(tick.deadline))
            except (TransientUnavailable, Malformed) as e:
                raise Unhealthy(f"agent '{agent}' is unhealthy: {e}") from e
            if not status.has_quorum:
                raise Unhealthy(
                    f"agent '{agent}': kvstore doesn't have quorum: {status.kvstore_message}"
                )
            tick.statuses[agent] = status

    def _check_controllers(self, tick: _Tick) -> None:
        for agent in tick.agents:
            failing = tick.statuses[agent].failing_controllers()
            if failing:
                controller = failing[0]
                raise Unhealthy(
                    f"agent '{agent}': controller {controller.name} is failing "
                    f"({controller.consecutive_failures} consecutive failures): "
                    f"{controller.last_failure}"
                )

    def _check_health(self, tick: _Tick) -> None:
        for agent in tick.agents:
            try:
                health = self.agent_client.health(agent, timeout=self._command_timeout(tick.deadline))
            except (TransientUnavailable, Malformed) as e:
                raise Unhealthy(f"cluster connectivity is unhealthy on '{agent}': {e}") from e

            if len(health.nodes) != len(tick.agents):
                names = [n.name for n in health.nodes]
                raise Unhealthy(
                    f"agent '{agent}': only {len(health.nodes)}/{len(tick.agents)} nodes "
                    f"appeared in health status: {names}"
                )
            for node in health.nodes:
                if not node.healthy:
                    raise Unhealthy(
                        f"agent '{agent}': connectivity to node '{node.name}' "
                        f"is unhealthy: '{node.http_status}'"
                    )

    def _build_snapshot(self, tick: _Tick) -> None:
        tick.snapshot = build_snapshot(
            self.control_plane,
            self.agent_client,
            tick.agents,
            timeout=self._command_timeout(tick.deadline),
        )

    def _check_services(self, tick: _Tick) -> None:
        self.validator.validate(tick.snapshot)

    def _check_well_known_service(self, tick: _Tick) -> None:
        self.validator.validate_service(
            tick.snapshot,
            self.settings.service_name,
            self.settings.service_namespace,
        )
