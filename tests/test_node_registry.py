#tests/test_node_registry.py

"""Node registration, authentication, heartbeats and staleness."""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from paas_engine.core.errors import AuthenticationError, NotFoundError, ValidationError
from paas_engine.infrastructure.memory.node_repository import InMemoryNodeRepository
from paas_engine.node_manager.models import CapacityMetrics, NodeStatus
from paas_engine.node_manager.service import NodeInfo, NodeRegistry, capacity_alerts


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repo():
    return InMemoryNodeRepository()


@pytest.fixture
def registry(repo, clock):
    return NodeRegistry(repo, registration_ttl_minutes=30, alert_cooldown_minutes=15, clock=clock)


def info(name="node-1", region="us-east", **kwargs):
    return NodeInfo(name=name, region=region, runtime_agent_url=f"http://{name}:9000", **kwargs)


class TestRegistration:
    """Workers register directly or with a one-time token."""

    def test_register_creates_online_node(self, registry):
        node_id, token = registry.register(info())

        node = registry.get(node_id)
        assert node.status == NodeStatus.ONLINE
        assert node.runtime_agent_url == "http://node-1:9000"
        assert node.auth_token_hash != token
        assert token

    def test_register_requires_name_and_region(self, registry):
        with pytest.raises(ValidationError):
            registry.register(NodeInfo(name="", region="us-east"))
        with pytest.raises(ValidationError):
            registry.register(NodeInfo(name="node-1", region=""))

    def test_re_registration_by_name_reuses_node(self, registry):
        first_id, first_token = registry.register(info())
        second_id, second_token = registry.register(info())

        assert first_id == second_id
        assert first_token != second_token
        with pytest.raises(AuthenticationError):
            registry.authenticate(first_id, first_token)

    def test_registration_token_binds_precreated_node(self, registry):
        node_id, registration_token = registry.create_registration("node-7", "eu-west")
        assert registry.get(node_id).status == NodeStatus.OFFLINE

        registered_id, _ = registry.register(info(name="node-7", region="eu-west"), registration_token=registration_token)

        assert registered_id == node_id
        assert registry.get(node_id).status == NodeStatus.ONLINE

    def test_registration_token_is_single_use(self, registry):
        _, registration_token = registry.create_registration("node-7", "eu-west")
        registry.register(info(name="node-7", region="eu-west"), registration_token=registration_token)

        with pytest.raises(AuthenticationError):
            registry.register(info(name="node-7", region="eu-west"), registration_token=registration_token)

    def test_expired_registration_token_rejected(self, registry, clock):
        _, registration_token = registry.create_registration("node-7", "eu-west")
        clock.advance(minutes=31)

        with pytest.raises(AuthenticationError):
            registry.register(info(name="node-7"), registration_token=registration_token)

    def test_token_required_when_configured(self, repo, clock):
        registry = NodeRegistry(repo, require_registration_token=True, clock=clock)
        with pytest.raises(AuthenticationError):
            registry.register(info())


class TestAuthentication:

    def test_valid_token(self, registry):
        node_id, token = registry.register(info())
        assert registry.authenticate(node_id, token).node_id == node_id

    def test_wrong_token(self, registry):
        node_id, _ = registry.register(info())
        with pytest.raises(AuthenticationError):
            registry.authenticate(node_id, "not-the-token")

    def test_unknown_node(self, registry):
        with pytest.raises(AuthenticationError):
            registry.authenticate(uuid4(), "whatever")


class TestHeartbeat:
    """Self-reported capacity and derived status."""

    def test_heartbeat_stores_metrics(self, registry, clock):
        node_id, _ = registry.register(info())
        clock.advance(seconds=30)

        node = registry.heartbeat(node_id, CapacityMetrics(cpu_total=4000, cpu_used=1000, memory_total_mb=8192, memory_used_mb=2048))

        assert node.cpu_used == 1000
        assert node.memory_used_mb == 2048
        assert node.last_heartbeat_at == clock.now
        assert node.status == NodeStatus.ONLINE

    def test_missing_values_keep_previous_report(self, registry):
        node_id, _ = registry.register(info(metrics=CapacityMetrics(cpu_total=4000, memory_total_mb=8192)))

        node = registry.heartbeat(node_id, CapacityMetrics(cpu_used=100))

        assert node.cpu_total == 4000
        assert node.memory_total_mb == 8192

    def test_high_usage_degrades_node(self, registry):
        node_id, _ = registry.register(info())

        node = registry.heartbeat(node_id, CapacityMetrics(memory_total_mb=1000, memory_used_mb=950))

        assert node.status == NodeStatus.DEGRADED
        assert capacity_alerts(node) == ["Memory usage at 95.0%"]

    def test_capacity_alert_cooldown(self, registry, clock):
        node_id, _ = registry.register(info())
        hot = CapacityMetrics(cpu_total=1000, cpu_used=990)

        first = registry.heartbeat(node_id, hot)
        clock.advance(minutes=5)
        second = registry.heartbeat(node_id, hot)
        clock.advance(minutes=15)
        third = registry.heartbeat(node_id, hot)

        assert first.last_alert_at == second.last_alert_at
        assert third.last_alert_at == clock.now

    def test_heartbeat_for_unknown_node(self, registry):
        with pytest.raises(NotFoundError):
            registry.heartbeat(uuid4(), CapacityMetrics())


class TestStaleness:

    def test_silent_nodes_marked_offline(self, registry, clock):
        quiet_id, _ = registry.register(info(name="quiet"))
        clock.advance(minutes=4)
        chatty_id, _ = registry.register(info(name="chatty"))
        clock.advance(minutes=2)

        stale = registry.mark_stale_nodes(stale_threshold_minutes=5)

        assert [n.node_id for n in stale] == [quiet_id]
        assert registry.get(quiet_id).status == NodeStatus.OFFLINE
        assert registry.get(chatty_id).status == NodeStatus.ONLINE

    def test_heartbeat_brings_node_back(self, registry, clock):
        node_id, _ = registry.register(info())
        clock.advance(minutes=10)
        registry.mark_stale_nodes()

        assert registry.heartbeat(node_id, CapacityMetrics()).status == NodeStatus.ONLINE


class TestDrain:

    def test_drain_survives_heartbeat(self, registry):
        node_id, _ = registry.register(info())
        registry.drain(node_id)

        assert registry.heartbeat(node_id, CapacityMetrics()).status == NodeStatus.DRAINING

    def test_undrain(self, registry):
        node_id, _ = registry.register(info())
        registry.drain(node_id)

        assert registry.undrain(node_id).status == NodeStatus.ONLINE

    def test_list_by_region(self, registry):
        registry.register(info(name="a", region="us-east"))
        registry.register(info(name="b", region="eu-west"))

        assert [n.name for n in registry.list_nodes("eu-west")] == ["b"]
        assert len(registry.list_nodes()) == 2
