import pytest

import collector.agent
from collector.agent import (
    AgentClient, AgentCommands, AgentHandle, EndpointStatus, list_agents, parse_agent_status,
    parse_dataplane_table, parse_endpoint_list, parse_health_status,
)
from collector.agent import parse_service_list as parse_realized_services
from collector.kubernetes import (
    BackendAddress, ControlPlane, parse_endpoints_list, parse_pod_list, parse_service_list,
)
from output.formatters import format_endpoint_diagnostic
from errors import Malformed, TransientUnavailable
from fakes import AGENT_A, FakeRunner, ok_json
from ssh_client import CmdResult, SSHClientError

PODS_CMD = "kubectl get pods -n kube-system -l k8s-app=cilium -o json"
SERVICES_CMD = "kubectl get services --all-namespaces -o json"
ENDPOINTS_CMD = "kubectl get endpoints --all-namespaces -o json"
EXEC = "kubectl exec -n kube-system cilium-a -- "

POD_LIST = {
    "items": [
        {
            "metadata": {"namespace": "kube-system", "name": "cilium-a"},
            "spec": {"nodeName": "node-a"},
            "status": {"phase": "Running", "containerStatuses": [{"ready": True}]},
        },
        {
            "metadata": {
                "namespace": "kube-system", "name": "cilium-b",
                "deletionTimestamp": "2024-01-01T00:00:00Z",
            },
            "spec": {"nodeName": "node-b"},
            "status": {"phase": "Running", "containerStatuses": [{"ready": True}, {"ready": False}]},
        },
    ]
}

SERVICE_LIST = {
    "items": [
        {
            "metadata": {"namespace": "default", "name": "kubernetes"},
            "spec": {"clusterIP": "10.96.0.1", "type": "ClusterIP", "ports": [{"port": 443}]},
        },
        {
            "metadata": {"namespace": "default", "name": "db"},
            "spec": {"clusterIP": "None", "ports": [{"port": 5432}]},
        },
    ]
}

ENDPOINTS_LIST = {
    "items": [
        {
            "metadata": {"namespace": "default", "name": "kubernetes"},
            "subsets": [{"addresses": [{"ip": "192.168.0.10"}], "ports": [{"port": 6443}]}],
        },
        {"metadata": {"namespace": "default", "name": "empty"}},
    ]
}


def test_list_pods_projects_readiness_fields():
    runner = FakeRunner({PODS_CMD: ok_json(POD_LIST)})

    pods = ControlPlane(runner).list_pods("kube-system", "k8s-app=cilium", timeout=5.0)

    assert runner.calls == [PODS_CMD]
    assert runner.timeouts == [5.0]
    assert [(p.name, p.node, p.deleting) for p in pods] == [
        ("cilium-a", "node-a", False), ("cilium-b", "node-b", True),
    ]
    assert pods[1].container_ready == (True, False)


def test_list_agents_from_pods():
    runner = FakeRunner({PODS_CMD: ok_json(POD_LIST)})

    agents = list_agents(ControlPlane(runner), "kube-system", "k8s-app=cilium")

    assert agents == [AgentHandle("cilium-a", "kube-system", "node-a"), AgentHandle("cilium-b", "kube-system", "node-b")]


def test_list_services_and_endpoints():
    runner = FakeRunner({SERVICES_CMD: ok_json(SERVICE_LIST), ENDPOINTS_CMD: ok_json(ENDPOINTS_LIST)})
    cp = ControlPlane(runner)

    services = cp.list_services()
    endpoints = cp.list_endpoints()

    assert [(s.key, s.cluster_ip, s.ports, s.kind) for s in services] == [
        ("default/kubernetes", "10.96.0.1", (443,), "normal"),
        ("default/db", "None", (5432,), "headless"),
    ]
    assert endpoints[0].addresses() == [BackendAddress("192.168.0.10", 6443)]
    assert endpoints[1].addresses() == []


def test_namespaced_endpoints_and_custom_kubectl():
    cmd = "kubectl --kubeconfig /etc/admin.conf get endpoints -n default -o json"
    runner = FakeRunner({cmd: ok_json({"items": []})})

    assert ControlPlane(runner, kubectl="kubectl --kubeconfig /etc/admin.conf").list_endpoints("default") == []


def test_selector_is_shell_quoted():
    runner = FakeRunner()

    with pytest.raises(TransientUnavailable):
        ControlPlane(runner).list_pods("default", "app in (web, api)")

    assert runner.calls == ["kubectl get pods -n default -l 'app in (web, api)' -o json"]


def test_nonzero_exit_is_transient():
    runner = FakeRunner({SERVICES_CMD: CmdResult(stdout="", stderr="connection refused", exit_code=1)})

    with pytest.raises(TransientUnavailable, match="connection refused"):
        ControlPlane(runner).list_services()


def test_ssh_failure_is_transient():
    runner = FakeRunner({SERVICES_CMD: SSHClientError("Connection lost")})

    with pytest.raises(TransientUnavailable, match="Connection lost"):
        ControlPlane(runner).list_services()


def test_invalid_json_is_malformed():
    runner = FakeRunner({SERVICES_CMD: CmdResult(stdout="{not json")})

    with pytest.raises(Malformed, match="invalid JSON"):
        ControlPlane(runner).list_services()


def test_schema_mismatch_is_malformed():
    payload = {"items": [{"metadata": {"namespace": "default", "name": "web"}, "spec": {"ports": [{"port": "80"}]}}]}
    runner = FakeRunner({SERVICES_CMD: ok_json(payload)})

    with pytest.raises(Malformed, match="expected integer"):
        ControlPlane(runner).list_services()

    runner = FakeRunner({SERVICES_CMD: ok_json([])})
    with pytest.raises(Malformed, match="expected object"):
        ControlPlane(runner).list_services()


def test_agent_service_list():
    payload = [
        {
            "status": {
                "realized": {
                    "frontend-address": {"ip": "10.96.0.1", "port": 443},
                    "backend-addresses": [{"ip": "192.168.0.10", "port": 6443}],
                }
            }
        }
    ]
    runner = FakeRunner({EXEC + "cilium service list -o json": ok_json(payload)})

    [svc] = AgentClient(runner).services(AGENT_A)

    assert svc.frontend_key == "10.96.0.1:443"
    assert [str(b) for b in svc.backends] == ["192.168.0.10:6443"]


def test_agent_service_without_frontend_is_malformed():
    runner = FakeRunner({EXEC + "cilium service list -o json": ok_json([{"status": {"realized": {}}}])})

    with pytest.raises(Malformed, match="frontend"):
        AgentClient(runner).services(AGENT_A)


def test_agent_dataplane_table():
    payload = {"10.96.0.1:443": ["192.168.0.10:6443 (1)"], "10.96.0.10:53": []}
    runner = FakeRunner({EXEC + "cilium bpf lb list -o json": ok_json(payload)})

    table = AgentClient(runner).dataplane(AGENT_A)

    assert table == {"10.96.0.1:443": ("192.168.0.10:6443 (1)",), "10.96.0.10:53": ()}


def test_agent_status_quorum_and_controllers():
    payload = {
        "cilium": {"state": "Ok"},
        "kubernetes": {"state": "Ok"},
        "kvstore": {"state": "Ok", "msg": "etcd: 1/1 connected, has-quorum=false"},
        "cluster": {"ciliumHealth": {"state": "Ok"}, "nodes": [{"name": "node-a"}]},
        "controllers": [
            {"name": "sync", "status": {"consecutive-failure-count": 0}},
            {"name": "ipcache", "status": {"consecutive-failure-count": 2, "last-failure-msg": "boom"}},
        ],
    }
    cmd = EXEC + "cilium status --all-controllers --all-health --all-nodes -o json"
    runner = FakeRunner({cmd: ok_json(payload)})

    status = AgentClient(runner).status(AGENT_A)

    assert not status.has_quorum
    assert status.nodes == ("node-a",)
    assert [c.name for c in status.failing_controllers()] == ["ipcache"]


def test_agent_health_report():
    payload = {
        "nodes": [
            {"name": "node-a", "host": {"primary-address": {"http": {}}}},
            {"name": "node-b", "host": {"primary-address": {"http": {"status": "timeout"}}}},
        ]
    }
    runner = FakeRunner({EXEC + "cilium-health status -o json --probe": ok_json(payload)})

    health = AgentClient(runner).health(AGENT_A)

    assert [(n.name, n.healthy) for n in health.nodes] == [("node-a", True), ("node-b", False)]


def test_agent_endpoint_readiness():
    payload = [
        {"id": 1, "status": {"state": "ready", "identity": {"id": 1000}}},
        {"id": 2, "status": {"state": "ready", "identity": {"id": 5}}},
        {"id": 3, "status": {"state": "regenerating", "identity": {"id": 1000}}},
    ]
    runner = FakeRunner({EXEC + "cilium endpoint list -o json": ok_json(payload)})

    endpoints = AgentClient(runner).endpoints(AGENT_A)

    assert [ep.ready for ep in endpoints] == [True, False, False]


def test_custom_agent_commands():
    commands = AgentCommands(services="agent-cli svc ls --json")
    runner = FakeRunner({EXEC + "agent-cli svc ls --json": ok_json([])})

    assert AgentClient(runner, commands=commands).services(AGENT_A) == []


def test_exec_retries_exit_code_126(monkeypatch):
    monkeypatch.setattr(collector.agent, "EXEC_RETRY_PAUSE", 0)
    cmd = EXEC + "cilium bpf lb list -o json"
    runner = FakeRunner({cmd: [CmdResult("", "", 126), CmdResult("", "", 126), ok_json({})]})

    assert AgentClient(runner).dataplane(AGENT_A) == {}
    assert runner.calls == [cmd] * 3


def test_exec_gives_up_after_retry_limit(monkeypatch):
    monkeypatch.setattr(collector.agent, "EXEC_RETRY_PAUSE", 0)
    cmd = EXEC + "cilium bpf lb list -o json"
    runner = FakeRunner({cmd: [CmdResult("", "cannot exec", 126)]})

    with pytest.raises(TransientUnavailable, match="exit code 126"):
        AgentClient(runner).dataplane(AGENT_A)

    assert len(runner.calls) == collector.agent.EXEC_RETRY_LIMIT


def service_item(spec, metadata=None):
    return {"metadata": metadata or {"namespace": "default", "name": "web"}, "spec": spec}


@pytest.mark.parametrize("payload", [
    {"items": [42]},
    {"items": [{"spec": {"clusterIP": "10.0.0.1"}}]},
    {"items": [service_item({"clusterIP": "10.0.0.1"}, metadata={"name": "web"})]},
    {"items": [{"metadata": {"namespace": "default", "name": "web"}}]},
    {"items": [service_item({"ports": [{"port": 80}]})]},
    {"items": [service_item({"clusterIP": "10.0.0.1", "ports": [{"name": "http"}]})]},
    {"items": [service_item({"clusterIP": "10.0.0.1", "ports": [80]})]},
    {},
])
def test_desired_service_schema_violations_are_malformed(payload):
    with pytest.raises(Malformed):
        parse_service_list(payload)


def test_external_name_service_has_no_cluster_ip():
    [svc] = parse_service_list({"items": [
        service_item({"type": "ExternalName", "externalName": "db.example.com"}),
    ]})

    assert svc.cluster_ip == ""
    assert not svc.realizable
    assert not svc.headless


@pytest.mark.parametrize("subset", [
    {"addresses": ["10.1.1.1"], "ports": [{"port": 80}]},
    {"addresses": [{"hostname": "web-0"}], "ports": [{"port": 80}]},
    {"addresses": [{"ip": "10.1.1.1"}], "ports": [{"name": "http"}]},
    {"addresses": [{"ip": "10.1.1.1"}], "ports": [{"port": "80"}]},
])
def test_endpoint_schema_violations_are_malformed(subset):
    payload = {"items": [{"metadata": {"namespace": "default", "name": "web"}, "subsets": [subset]}]}

    with pytest.raises(Malformed):
        parse_endpoints_list(payload)


def test_pod_schema_violations_are_malformed():
    with pytest.raises(Malformed, match="namespace"):
        parse_pod_list({"items": [{"metadata": {"name": "cilium-a"}}]})
    with pytest.raises(Malformed, match="expected boolean"):
        parse_pod_list({"items": [{
            "metadata": {"namespace": "kube-system", "name": "cilium-a"},
            "status": {"containerStatuses": [{"ready": "true"}]},
        }]})
    with pytest.raises(Malformed):
        parse_pod_list({"items": ["cilium-a"]})


@pytest.mark.parametrize("payload", [
    {},
    {"kvstore": "Ok"},
    {"kvstore": {"msg": "etcd: 1/1 connected, has-quorum=true"}},
    {"kvstore": {"state": "Ok"}, "controllers": [{"status": {"consecutive-failure-count": 3}}]},
    {"kvstore": {"state": "Ok"}, "controllers": ["sync"]},
    {"kvstore": {"state": "Ok"}, "cluster": {"nodes": [{"addr": "10.0.0.1"}]}},
])
def test_agent_status_schema_violations_are_malformed(payload):
    with pytest.raises(Malformed):
        parse_agent_status(payload)


def test_minimal_agent_status_parses():
    status = parse_agent_status({"kvstore": {"state": "Disabled"}})

    assert status.kvstore_state == "Disabled"
    assert status.has_quorum
    assert status.controllers == ()


@pytest.mark.parametrize("item", [
    {"status": {"realized": {"frontend-address": {"ip": "10.96.0.1"}}}},
    {"status": {"realized": {"frontend-address": {"ip": "10.96.0.1", "port": 443},
                             "backend-addresses": [{"port": 6443}]}}},
    {"status": {"realized": {"frontend-address": {"ip": "10.96.0.1", "port": 443},
                             "backend-addresses": ["192.168.0.10:6443"]}}},
    {"status": {}},
    {"spec": {}},
])
def test_realized_service_schema_violations_are_malformed(item):
    with pytest.raises(Malformed):
        parse_realized_services([item])


def test_other_agent_payload_violations_are_malformed():
    with pytest.raises(Malformed):
        parse_health_status({"nodes": [{"host": {}}]})
    with pytest.raises(Malformed):
        parse_dataplane_table({"10.96.0.1:443": [{"ip": "192.168.0.10"}]})
    with pytest.raises(Malformed):
        parse_endpoint_list([{"status": {"state": "ready"}}])
    with pytest.raises(Malformed):
        parse_endpoint_list([{"id": 1}])


def test_endpoint_pod_name_reaches_the_diagnostic():
    payload = [{
        "id": 7,
        "status": {
            "state": "waiting-for-identity",
            "identity": {"id": 5},
            "external-identifiers": {"pod-name": "default/web-0"},
        },
    }]

    endpoints = parse_endpoint_list(payload)
    text = format_endpoint_diagnostic(AGENT_A, endpoints)

    assert endpoints == [EndpointStatus(id=7, state="waiting-for-identity", identity=5, pod_name="default/web-0")]
    assert text == "\tAgent: cilium-a \tEndpoint: 7 \tIdentity: 5\tState: waiting-for-identity \tPod: default/web-0"
