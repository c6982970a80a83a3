import dataclasses

import pytest

from engine.snapshot import build_snapshot
from errors import Malformed, TransientUnavailable
from fakes import (
    AGENT_A, AGENT_B, FakeAgentClient, FakeControlPlane, desired_endpoints, desired_service, realized,
)


def cluster():
    cp = FakeControlPlane(
        services=[desired_service("default", "web", "10.0.0.1")],
        endpoints=[desired_endpoints("default", "web", ["10.1.1.1"], [8080])],
    )
    client = FakeAgentClient(
        services={
            "cilium-a": [realized("10.0.0.1:80", ["10.1.1.1:8080"])],
            "cilium-b": [realized("10.0.0.1:80", ["10.1.1.1:8080"])],
        },
        dataplane={
            "cilium-a": {"10.0.0.1:80": ("10.1.1.1:8080 (1)",)},
            "cilium-b": {"10.0.0.1:80": ("10.1.1.1:8080 (1)",)},
        },
    )
    return cp, client


def test_snapshot_collects_all_three_views():
    cp, client = cluster()

    snapshot = build_snapshot(cp, client, [AGENT_A, AGENT_B])

    assert [s.key for s in snapshot.services] == ["default/web"]
    assert [e.key for e in snapshot.endpoints] == ["default/web"]
    assert [a.agent for a in snapshot.agents] == [AGENT_A, AGENT_B]
    assert snapshot.agents[1].dataplane["10.0.0.1:80"] == ("10.1.1.1:8080 (1)",)
    # services then dataplane, agent by agent
    assert client.calls == ["cilium-a", "cilium-a", "cilium-b", "cilium-b"]


def test_snapshot_is_immutable():
    cp, client = cluster()
    snapshot = build_snapshot(cp, client, [AGENT_A])

    with pytest.raises(dataclasses.FrozenInstanceError):
        snapshot.services = ()
    with pytest.raises(TypeError):
        snapshot.agents[0].dataplane["10.0.0.9:80"] = ()


def test_agent_failure_aborts_the_build_with_agent_context():
    cp, client = cluster()
    client.dataplane_map["cilium-a"] = TransientUnavailable("exec failed")

    with pytest.raises(TransientUnavailable) as excinfo:
        build_snapshot(cp, client, [AGENT_A, AGENT_B])

    assert "cilium-a" in str(excinfo.value)
    assert "exec failed" in str(excinfo.value)
    assert "cilium-b" not in client.calls


def test_malformed_agent_output_aborts_the_build():
    cp, client = cluster()
    client.service_map["cilium-b"] = Malformed("expected list")

    with pytest.raises(Malformed, match="cilium-b"):
        build_snapshot(cp, client, [AGENT_A, AGENT_B])


def test_lookup_helpers():
    cp, client = cluster()
    snapshot = build_snapshot(cp, client, [AGENT_A])

    web = snapshot.find_service("web", "default")
    assert web is not None
    assert snapshot.find_service("web", "other") is None
    assert [str(a) for e in snapshot.endpoints_for(web) for a in e.addresses()] == ["10.1.1.1:8080"]
