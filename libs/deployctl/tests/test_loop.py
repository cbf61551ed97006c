"""Tests for concurrent and periodic reconciliation."""

import asyncio

import pytest

from deployctl import (
    FatalApplyError,
    PassStatus,
    PermanentError,
    ReconcileLoop,
    ResourceId,
    ValidationError,
    load,
    reconcile_concurrently,
)
from deployctl.loop import ensure_unrelated


def _manifest(name):
    return load(
        [
            {"kind": "Namespace", "name": name},
            {"kind": "ConfigMap", "name": "settings", "namespace": name},
        ],
        name=name,
    )


async def _wait_for(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.01)


class TestReconcileConcurrently:
    """Test cases for reconcile_concurrently()."""

    @pytest.mark.asyncio
    async def test_unrelated_sets(self, reconciler, fake_cluster):
        """Every set is reconciled, each in its own dependency order."""
        shop, billing = _manifest("shop"), _manifest("billing")

        results = await reconcile_concurrently(reconciler, [shop, billing])

        assert [r.manifest for r in results] == ["shop", "billing"]
        assert all(r.status == PassStatus.SUCCEEDED for r in results)
        for name in ("shop", "billing"):
            applied = [rid for rid in fake_cluster.applied() if name in (rid.name, rid.namespace)]
            assert [rid.kind.value for rid in applied] == ["Namespace", "ConfigMap"]

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, reconciler, fake_cluster):
        """One set failing does not stop the other."""
        shop, billing = _manifest("shop"), _manifest("billing")
        fake_cluster.fail(
            "apply",
            ResourceId(kind="ConfigMap", name="settings", namespace="shop"),
            PermanentError("422", status=422),
        )

        results = await reconcile_concurrently(reconciler, [shop, billing])

        assert isinstance(results[0], FatalApplyError)
        assert results[1].status == PassStatus.SUCCEEDED

    @pytest.mark.asyncio
    async def test_overlapping_sets_rejected(self, reconciler, fake_cluster):
        with pytest.raises(ValidationError, match="must not share resources"):
            await reconcile_concurrently(
                reconciler, [_manifest("shop"), load([{"kind": "Namespace", "name": "shop"}], name="other")]
            )

        assert fake_cluster.events == []


class TestEnsureUnrelated:
    """Test cases for ensure_unrelated()."""

    def test_duplicate_names(self):
        with pytest.raises(ValidationError, match="given twice"):
            ensure_unrelated([_manifest("shop"), _manifest("shop")])

    def test_disjoint_sets(self):
        ensure_unrelated([_manifest("shop"), _manifest("billing")])

    def test_namespace_declared_by_another_set(self):
        """A set may not place resources in a Namespace another set owns."""
        owner = load([{"kind": "Namespace", "name": "shop"}], name="a")
        tenant = load([{"kind": "ConfigMap", "name": "c", "namespace": "shop"}], name="b")

        with pytest.raises(ValidationError, match="Namespace shop declared by a"):
            ensure_unrelated([owner, tenant])

        with pytest.raises(ValidationError, match="Namespace shop declared by a"):
            ensure_unrelated([tenant, owner])


class TestReconcileLoop:
    """Test cases for ReconcileLoop."""

    @pytest.mark.asyncio
    async def test_run_once(self, reconciler):
        loop = ReconcileLoop(reconciler, _manifest("shop"))

        result = await loop.run_once()

        assert result.status == PassStatus.SUCCEEDED
        assert loop.passes == 1
        assert loop.last_result is result
        assert loop.last_error is None

    @pytest.mark.asyncio
    async def test_run_once_records_failure(self, reconciler, fake_cluster):
        """A failed pass is logged and kept, not raised."""
        fake_cluster.fail(
            "apply", ResourceId(kind="Namespace", name="shop"), PermanentError("403", status=403)
        )
        loop = ReconcileLoop(reconciler, _manifest("shop"))

        assert await loop.run_once() is None
        assert isinstance(loop.last_error, FatalApplyError)
        assert loop.passes == 1

    @pytest.mark.asyncio
    async def test_repeats_until_stopped(self, reconciler, fake_cluster):
        """Later passes correct drift introduced between them."""
        loop = ReconcileLoop(reconciler, _manifest("shop"), interval=0.01)

        await loop.start()
        assert loop.running
        await _wait_for(lambda: loop.passes >= 1)
        fake_cluster.objects.clear()
        await _wait_for(lambda: len(fake_cluster.objects) == 2 and loop.passes >= 2)
        await loop.stop()

        assert not loop.running
        assert len(fake_cluster.applied()) >= 4

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self, reconciler):
        loop = ReconcileLoop(reconciler, _manifest("shop"))
        await loop.stop()
        assert not loop.running
