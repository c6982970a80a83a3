"""
Control-plane collector

Lists the declared state of the cluster through kubectl on the control
node and projects the JSON into typed records:
- pods (for readiness waits and agent discovery)
- services (desired frontends)
- endpoints (desired backends)
"""

import logging
import shlex
from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

from .command import (
    expect_dict, get_bool, get_dict, get_int, get_list, get_str, run_json,
)

logger = logging.getLogger(__name__)

SERVICE_TYPE_CLUSTER_IP = "ClusterIP"
SERVICE_TYPE_EXTERNAL_NAME = "ExternalName"
CLUSTER_IP_NONE = "None"


@dataclass(frozen=True)
class BackendAddress:
    """An ip:port pair, used for endpoint addresses and agent backends."""
    ip: str
    port: int

    def __str__(self) -> str:
        return f"{self.ip}:{self.port}"


@dataclass(frozen=True)
class PodStatus:
    """The fields of a pod that readiness checks look at."""
    namespace: str
    name: str
    node: str = ""
    phase: str = ""
    deleting: bool = False
    container_ready: Tuple[bool, ...] = ()


@dataclass(frozen=True)
class ServiceDesiredRecord:
    """A service as declared in the control plane."""
    namespace: str
    name: str
    cluster_ip: str = ""
    ports: Tuple[int, ...] = ()
    type: str = SERVICE_TYPE_CLUSTER_IP

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def headless(self) -> bool:
        return self.type == SERVICE_TYPE_CLUSTER_IP and self.cluster_ip in (CLUSTER_IP_NONE, "")

    @property
    def realizable(self) -> bool:
        """Agents program a frontend for it: not headless, not an ExternalName alias."""
        return not self.headless and self.type != SERVICE_TYPE_EXTERNAL_NAME

    @property
    def kind(self) -> str:
        return "headless" if self.headless else "normal"


@dataclass(frozen=True)
class EndpointSubset:
    addresses: Tuple[str, ...] = ()
    ports: Tuple[int, ...] = ()


@dataclass(frozen=True)
class EndpointDesiredRecord:
    """Endpoints object of a service: the backends the control plane expects."""
    namespace: str
    name: str
    subsets: Tuple[EndpointSubset, ...] = field(default_factory=tuple)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def addresses(self) -> List[BackendAddress]:
        """Every address of every subset, combined with every port of that subset."""
        result = []
        for subset in self.subsets:
            for ip in subset.addresses:
                for port in subset.ports:
                    result.append(BackendAddress(ip=ip, port=port))
        return result


def _metadata(item: Any, what: str) -> Tuple[str, str]:
    """namespace and name of a listed object, both required."""
    metadata = get_dict(item, "metadata", what, required=True)
    return (
        get_str(metadata, "namespace", what, required=True),
        get_str(metadata, "name", what, required=True),
    )


def parse_pod_list(payload: Any) -> List[PodStatus]:
    """Project a `kubectl get pods -o json` payload."""
    what = "pod list"
    pods = []
    for item in get_list(expect_dict(payload, what), "items", what, required=True):
        namespace, name = _metadata(item, what)
        item_what = f"pod {namespace}/{name}"
        spec = get_dict(item, "spec", item_what)
        status = get_dict(item, "status", item_what)

        ready = []
        for container in get_list(status, "containerStatuses", item_what):
            ready.append(get_bool(container, "ready", item_what))

        pods.append(PodStatus(
            namespace=namespace,
            name=name,
            node=get_str(spec, "nodeName", item_what),
            phase=get_str(status, "phase", item_what),
            deleting=item["metadata"].get("deletionTimestamp") is not None,
            container_ready=tuple(ready),
        ))
    return pods


def parse_service_list(payload: Any) -> List[ServiceDesiredRecord]:
    """Project a `kubectl get services -o json` payload."""
    what = "service list"
    services = []
    for item in get_list(expect_dict(payload, what), "items", what, required=True):
        namespace, name = _metadata(item, what)
        item_what = f"service {namespace}/{name}"
        spec = get_dict(item, "spec", item_what, required=True)

        ports = []
        for port in get_list(spec, "ports", item_what):
            ports.append(get_int(port, "port", item_what, required=True))

        type_ = get_str(spec, "type", item_what, default=SERVICE_TYPE_CLUSTER_IP)
        services.append(ServiceDesiredRecord(
            namespace=namespace,
            name=name,
            # ExternalName services are DNS aliases without a cluster IP
            cluster_ip=get_str(
                spec, "clusterIP", item_what, required=type_ != SERVICE_TYPE_EXTERNAL_NAME
            ),
            ports=tuple(ports),
            type=type_,
        ))
    return services


def parse_endpoints_list(payload: Any) -> List[EndpointDesiredRecord]:
    """Project a `kubectl get endpoints -o json` payload."""
    what = "endpoints list"
    endpoints = []
    for item in get_list(expect_dict(payload, what), "items", what, required=True):
        namespace, name = _metadata(item, what)
        item_what = f"endpoints {namespace}/{name}"

        subsets = []
        for subset in get_list(item, "subsets", item_what):
            addresses = tuple(
                get_str(addr, "ip", item_what, required=True)
                for addr in get_list(subset, "addresses", item_what)
            )
            ports = tuple(
                get_int(port, "port", item_what, required=True)
                for port in get_list(subset, "ports", item_what)
            )
            subsets.append(EndpointSubset(addresses=addresses, ports=ports))

        endpoints.append(EndpointDesiredRecord(
            namespace=namespace,
            name=name,
            subsets=tuple(subsets),
        ))
    return endpoints


class ControlPlane:
    """
    Typed listings of the control-plane objects.

    Every method raises TransientUnavailable when kubectl fails and
    Malformed when its output does not parse.
    """

    def __init__(self, runner, kubectl: str = "kubectl"):
        """
        Initialize the collector.

        Args:
            runner: Command runner on the control node, needs execute(cmd, timeout)
            kubectl: kubectl binary (and global flags) to invoke
        """
        self.runner = runner
        self.kubectl = kubectl

    def list_pods(
        self,
        namespace: str,
        selector: str = "",
        timeout: Optional[float] = None
    ) -> List[PodStatus]:
        cmd = f"{self.kubectl} get pods -n {shlex.quote(namespace)}"
        if selector:
            cmd += f" -l {shlex.quote(selector)}"
        cmd += " -o json"
        what = f"pods in {namespace} with selector '{selector}'"
        return parse_pod_list(run_json(self.runner, cmd, what, timeout))

    def list_services(self, timeout: Optional[float] = None) -> List[ServiceDesiredRecord]:
        cmd = f"{self.kubectl} get services --all-namespaces -o json"
        services = parse_service_list(run_json(self.runner, cmd, "services in all namespaces", timeout))
        logger.debug(f"Listed {len(services)} services")
        return services

    def list_endpoints(
        self,
        namespace: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> List[EndpointDesiredRecord]:
        if namespace:
            cmd = f"{self.kubectl} get endpoints -n {shlex.quote(namespace)} -o json"
            what = f"endpoints in {namespace}"
        else:
            cmd = f"{self.kubectl} get endpoints --all-namespaces -o json"
            what = "endpoints in all namespaces"
        endpoints = parse_endpoints_list(run_json(self.runner, cmd, what, timeout))
        logger.debug(f"Listed {len(endpoints)} endpoints objects")
        return endpoints
