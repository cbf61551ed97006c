"""Pytest configuration and fixtures for deployctl tests."""

import itertools
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

import pytest
from kubernetes import client

from deployctl import (
    Action,
    ObservedState,
    ReadinessGate,
    ReadinessResult,
    Reconciler,
    Resource,
    ResourceApplier,
    ResourceId,
    RetryPolicy,
    StateReader,
    load,
)


class FakeClock:
    """Monotonic clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeCluster(StateReader, ResourceApplier):
    """In-memory cluster that records every call with a logical timestamp."""

    def __init__(self):
        self.objects: dict[ResourceId, dict] = {}
        self.events: list[tuple[int, str, ResourceId]] = []
        self.ready_after: dict[ResourceId, int] = {}
        self.never_ready: set[ResourceId] = set()
        self._pending_polls: dict[ResourceId, int] = {}
        self._failures: dict[tuple[str, ResourceId], list[Exception]] = {}
        self._ticks = itertools.count()

    def record(self, event: str, rid: ResourceId) -> None:
        self.events.append((next(self._ticks), event, rid))

    def fail(self, operation: str, rid: ResourceId, *errors: Exception) -> None:
        """Queue errors raised by the next calls of ``operation`` for ``rid``."""
        self._failures.setdefault((operation, rid), []).extend(errors)

    def seed(self, resource: Resource, spec_hash: Optional[str] = None) -> None:
        """Put a resource in the cluster as if a previous pass applied it."""
        self.objects[resource.id] = {
            "spec_hash": spec_hash or resource.spec_hash,
            "generation": 1,
        }

    def _maybe_fail(self, operation: str, rid: ResourceId) -> None:
        queued = self._failures.get((operation, rid))
        if queued:
            raise queued.pop(0)

    def observe(self, resource: Resource) -> ObservedState:
        rid = resource.id
        self.record("observe", rid)
        self._maybe_fail("observe", rid)

        obj = self.objects.get(rid)
        if obj is None:
            return ObservedState.absent(rid)

        pending = self._pending_polls.get(rid, 0)
        if pending > 0:
            self._pending_polls[rid] = pending - 1
        ready = pending <= 0 and rid not in self.never_ready
        return ObservedState(
            resource_id=rid,
            exists=True,
            generation=str(obj["generation"]),
            ready=ready,
            spec_hash=obj["spec_hash"],
            message=None if ready else "starting",
        )

    def apply(self, resource: Resource, action: Action) -> None:
        rid = resource.id
        self.record(f"apply:{action.value}", rid)
        self._maybe_fail("apply", rid)

        generation = self.objects.get(rid, {}).get("generation", 0) + 1
        self.objects[rid] = {"spec_hash": resource.spec_hash, "generation": generation}
        self._pending_polls[rid] = self.ready_after.get(rid, 0)

    def delete(self, resource: Resource) -> bool:
        rid = resource.id
        self.record("delete", rid)
        self._maybe_fail("delete", rid)
        return self.objects.pop(rid, None) is not None

    def applied(self) -> list[ResourceId]:
        return [rid for _, event, rid in self.events if event.startswith("apply:")]

    def first(self, event: str, rid: ResourceId) -> int:
        for tick, name, event_rid in self.events:
            if name == event and event_rid == rid:
                return tick
        raise AssertionError(f"No {event} event for {rid}")


class RecordingGate(ReadinessGate):
    """Readiness gate that logs when it reports Ready."""

    def __init__(self, cluster: FakeCluster, clock: FakeClock):
        super().__init__(cluster, poll_interval=1.0, clock=clock, sleep=clock.sleep)
        self.cluster = cluster
        self.calls: list[ResourceId] = []

    def await_ready(self, resource, timeout, cancel=None):
        self.calls.append(resource.id)
        result = super().await_ready(resource, timeout, cancel)
        if result == ReadinessResult.READY:
            self.cluster.record("gate:ready", resource.id)
        return result


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_cluster():
    return FakeCluster()


@pytest.fixture
def recording_gate(fake_cluster, fake_clock):
    return RecordingGate(fake_cluster, fake_clock)


@pytest.fixture
def reconciler(fake_cluster, recording_gate, fake_clock):
    """Reconciler over the in-memory cluster with instant backoff."""
    return Reconciler(
        fake_cluster,
        fake_cluster,
        gate=recording_gate,
        retry_policy=RetryPolicy(
            max_attempts=3, initial_seconds=0, max_seconds=0, jitter_seconds=0
        ),
        readiness_timeout=30,
        sleep=fake_clock.sleep,
    )


@pytest.fixture
def eshop_documents():
    """The ordering scenario from the deployment guide."""
    return [
        {"kind": "Namespace", "name": "eshop"},
        {
            "kind": "ConfigMap",
            "name": "api-config",
            "namespace": "eshop",
            "dependsOn": ["Namespace/eshop"],
            "spec": {"data": {"Identity__Url": "http://keycloak:8080"}},
        },
        {
            "kind": "Deployment",
            "name": "postgres",
            "namespace": "eshop",
            "dependsOn": ["Namespace/eshop"],
            "readiness": {"timeoutSeconds": 60},
            "spec": {"replicas": 1, "template": {"spec": {"containers": [{"image": "postgres:16"}]}}},
        },
        {
            "kind": "Deployment",
            "name": "eshop-api",
            "namespace": "eshop",
            "dependsOn": ["ConfigMap/api-config", "Deployment/postgres"],
            "spec": {"replicas": 2, "template": {"spec": {"containers": [{"image": "${REGISTRY}/eshop-api:1.0"}]}}},
        },
    ]


@pytest.fixture
def eshop_manifest(eshop_documents):
    return load(eshop_documents, variables={"REGISTRY": "acr.example.io"}, name="eshop")


@pytest.fixture
def examples_dir():
    return Path(__file__).parent.parent / "examples"


@pytest.fixture
def example_variables():
    return {
        "REGISTRY": "myregistry.azurecr.io",
        "TAG": "1.0.0",
        "KEYCLOAK_ADMIN_PASSWORD": "secret",
    }


@pytest.fixture
def mock_cluster_connection():
    """Mock cluster connection for testing."""
    mock_conn = MagicMock()
    mock_conn.core_v1 = MagicMock(spec=client.CoreV1Api)
    mock_conn.apps_v1 = MagicMock(spec=client.AppsV1Api)
    mock_conn.request_timeout = 30.0
    mock_conn.field_manager = "deployctl"
    return mock_conn
