"""
Agent collector

Runs commands inside the per-node agent pods (through `kubectl exec` on the
control node) and projects their JSON output into typed records:
- agent status (kvstore quorum, controllers)
- connectivity health report
- realized service list
- dataplane load-balancer table
- endpoint list
"""

import logging
import shlex
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from errors import Malformed
from ssh_client import CmdResult

from .command import (
    decode_json, expect_dict, expect_list, get_dict, get_int, get_list, get_str,
    run_command,
)
from .kubernetes import BackendAddress

logger = logging.getLogger(__name__)

# kubectl exec sometimes exits 126 under load (cgroup races); such runs are retried
EXEC_RETRY_EXIT_CODE = 126
EXEC_RETRY_LIMIT = 5
EXEC_RETRY_PAUSE = 0.2

# Identity held by endpoints that are not ready to receive traffic yet
RESERVED_INIT_IDENTITY = 5


@dataclass(frozen=True)
class AgentHandle:
    """Identity of one agent: the pod it runs in and the node it serves."""
    name: str
    namespace: str = "kube-system"
    node: str = ""

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class AgentCommands:
    """Agent-side commands. Output must be JSON."""
    status: str = "cilium status --all-controllers --all-health --all-nodes -o json"
    health: str = "cilium-health status -o json --probe"
    services: str = "cilium service list -o json"
    dataplane: str = "cilium bpf lb list -o json"
    endpoints: str = "cilium endpoint list -o json"


@dataclass(frozen=True)
class ControllerStatus:
    name: str
    consecutive_failures: int = 0
    last_failure: str = ""

    @property
    def failing(self) -> bool:
        return self.consecutive_failures != 0


@dataclass(frozen=True)
class AgentStatus:
    """Projection of the agent status report."""
    state: str = ""
    kvstore_state: str = ""
    kvstore_message: str = ""
    health_state: str = ""
    kubernetes_state: str = ""
    nodes: Tuple[str, ...] = ()
    controllers: Tuple[ControllerStatus, ...] = ()

    @property
    def has_quorum(self) -> bool:
        return "has-quorum=false" not in self.kvstore_message

    def failing_controllers(self) -> List[ControllerStatus]:
        return [c for c in self.controllers if c.failing]


@dataclass(frozen=True)
class NodeHealth:
    name: str
    http_status: str = ""

    @property
    def healthy(self) -> bool:
        return self.http_status == ""


@dataclass(frozen=True)
class HealthStatus:
    nodes: Tuple[NodeHealth, ...] = ()


@dataclass(frozen=True)
class ServiceRealizedRecord:
    """A service as realized by one agent."""
    frontend: BackendAddress
    backends: Tuple[BackendAddress, ...] = field(default_factory=tuple)

    @property
    def frontend_key(self) -> str:
        return str(self.frontend)


@dataclass(frozen=True)
class EndpointStatus:
    id: int
    state: str = ""
    identity: int = 0
    pod_name: str = ""

    @property
    def ready(self) -> bool:
        return self.state == "ready" and self.identity != RESERVED_INIT_IDENTITY


def parse_agent_status(payload: Any) -> AgentStatus:
    what = "agent status"
    data = expect_dict(payload, what)
    # quorum is read from the kvstore section; without it nothing can be concluded
    kvstore = get_dict(data, "kvstore", what, required=True)
    cluster = get_dict(data, "cluster", what)

    controllers = []
    for item in get_list(data, "controllers", what):
        name = get_str(item, "name", what, required=True)
        status = get_dict(item, "status", f"{what} controller {name}")
        controllers.append(ControllerStatus(
            name=name,
            consecutive_failures=get_int(status, "consecutive-failure-count", what),
            last_failure=get_str(status, "last-failure-msg", what),
        ))

    return AgentStatus(
        state=get_str(get_dict(data, "cilium", what), "state", what),
        kvstore_state=get_str(kvstore, "state", what, required=True),
        kvstore_message=get_str(kvstore, "msg", what),
        health_state=get_str(get_dict(cluster, "ciliumHealth", what), "state", what),
        kubernetes_state=get_str(get_dict(data, "kubernetes", what), "state", what),
        nodes=tuple(get_str(n, "name", what, required=True) for n in get_list(cluster, "nodes", what)),
        controllers=tuple(controllers),
    )


def parse_health_status(payload: Any) -> HealthStatus:
    what = "health status"
    nodes = []
    for item in get_list(expect_dict(payload, what), "nodes", what):
        name = get_str(item, "name", what, required=True)
        node_what = f"{what} of node {name}"
        primary = get_dict(get_dict(item, "host", node_what), "primary-address", node_what)
        http = get_dict(primary, "http", node_what)
        nodes.append(NodeHealth(name=name, http_status=get_str(http, "status", node_what)))
    return HealthStatus(nodes=tuple(nodes))


def _parse_address(data: Any, what: str) -> BackendAddress:
    return BackendAddress(
        ip=get_str(data, "ip", what, required=True),
        port=get_int(data, "port", what, required=True),
    )


def parse_service_list(payload: Any) -> List[ServiceRealizedRecord]:
    what = "agent service list"
    services = []
    for item in expect_list(payload, what):
        status = get_dict(item, "status", what, required=True)
        realized = get_dict(status, "realized", what, required=True)
        frontend = get_dict(realized, "frontend-address", what)
        if not frontend:
            raise Malformed(f"{what}: service without realized frontend address")
        services.append(ServiceRealizedRecord(
            frontend=_parse_address(frontend, what),
            backends=tuple(
                _parse_address(b, what) for b in get_list(realized, "backend-addresses", what)
            ),
        ))
    return services


def parse_dataplane_table(payload: Any) -> Dict[str, Tuple[str, ...]]:
    what = "dataplane table"
    table = {}
    for frontend, backends in expect_dict(payload, what).items():
        entry_what = f"{what} entry {frontend}"
        table[str(frontend)] = tuple(
            _expect_str(b, entry_what) for b in expect_list(backends, entry_what)
        )
    return table


def _expect_str(value: Any, what: str) -> str:
    if not isinstance(value, str):
        raise Malformed(f"{what}: expected string, got {type(value).__name__}")
    return value


def parse_endpoint_list(payload: Any) -> List[EndpointStatus]:
    what = "endpoint list"
    endpoints = []
    for item in expect_list(payload, what):
        ep_id = get_int(item, "id", what, required=True)
        ep_what = f"{what} endpoint {ep_id}"
        status = get_dict(item, "status", ep_what, required=True)
        endpoints.append(EndpointStatus(
            id=ep_id,
            state=get_str(status, "state", ep_what, required=True),
            identity=get_int(get_dict(status, "identity", ep_what), "id", ep_what),
            pod_name=get_str(get_dict(status, "external-identifiers", ep_what), "pod-name", ep_what),
        ))
    return endpoints


class AgentClient:
    """
    Executes agent commands in agent pods.

    Query methods raise TransientUnavailable when the command cannot run or
    fails, Malformed when the output does not match the expected schema.
    """

    def __init__(self, runner, kubectl: str = "kubectl", commands: Optional[AgentCommands] = None):
        """
        Initialize the client.

        Args:
            runner: Command runner on the control node, needs execute(cmd, timeout)
            kubectl: kubectl binary (and global flags) to invoke
            commands: Agent-side commands, defaults to AgentCommands()
        """
        self.runner = runner
        self.kubectl = kubectl
        self.commands = commands or AgentCommands()

    def exec(self, agent: AgentHandle, cmd: str, timeout: Optional[float] = None) -> CmdResult:
        """Run cmd inside the agent pod, retrying spurious exit code 126."""
        command = (
            f"{self.kubectl} exec -n {shlex.quote(agent.namespace)} "
            f"{shlex.quote(agent.name)} -- {cmd}"
        )
        res = None
        for attempt in range(EXEC_RETRY_LIMIT):
            res = self.runner.execute(command, timeout=timeout)
            if res.exit_code != EXEC_RETRY_EXIT_CODE:
                break
            logger.debug(f"{agent}: exec exited {EXEC_RETRY_EXIT_CODE}, retry {attempt + 1}")
            time.sleep(EXEC_RETRY_PAUSE)
        return res

    def _query(self, agent: AgentHandle, cmd: str, what: str, timeout: Optional[float]) -> Any:
        runner = _AgentRunner(self, agent)
        res = run_command(runner, cmd, f"{what} on agent '{agent}'", timeout)
        return decode_json(res.stdout, f"{what} on agent '{agent}'")

    def status(self, agent: AgentHandle, timeout: Optional[float] = None) -> AgentStatus:
        return parse_agent_status(self._query(agent, self.commands.status, "status", timeout))

    def health(self, agent: AgentHandle, timeout: Optional[float] = None) -> HealthStatus:
        return parse_health_status(self._query(agent, self.commands.health, "health status", timeout))

    def services(self, agent: AgentHandle, timeout: Optional[float] = None) -> List[ServiceRealizedRecord]:
        return parse_service_list(self._query(agent, self.commands.services, "service list", timeout))

    def dataplane(self, agent: AgentHandle, timeout: Optional[float] = None) -> Dict[str, Tuple[str, ...]]:
        return parse_dataplane_table(
            self._query(agent, self.commands.dataplane, "dataplane table", timeout)
        )

    def endpoints(self, agent: AgentHandle, timeout: Optional[float] = None) -> List[EndpointStatus]:
        return parse_endpoint_list(self._query(agent, self.commands.endpoints, "endpoint list", timeout))


class _AgentRunner:
    """Adapts AgentClient.exec to the runner interface for run_command."""

    def __init__(self, client: AgentClient, agent: AgentHandle):
        self._client = client
        self._agent = agent

    def execute(self, cmd: str, timeout: Optional[float] = None) -> CmdResult:
        return self._client.exec(self._agent, cmd, timeout)


def list_agents(control_plane, namespace: str, selector: str, timeout: Optional[float] = None) -> List[AgentHandle]:
    """
    Discover agents from the control plane.

    Args:
        control_plane: collector.kubernetes.ControlPlane
        namespace: Namespace of the agent pods
        selector: Label selector of the agent pods

    Returns:
        One AgentHandle per agent pod, in listing order
    """
    pods = control_plane.list_pods(namespace, selector, timeout=timeout)
    return [AgentHandle(name=p.name, namespace=p.namespace or namespace, node=p.node) for p in pods]
