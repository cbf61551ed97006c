"""Periodic and concurrent reconciliation."""

import asyncio
import logging
import threading
from typing import Optional, Union

from .exceptions import FatalApplyError, ValidationError
from .models import ManifestSet, ReconcileResult, ResourceId, ResourceKind
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


def ensure_unrelated(manifest_sets: list[ManifestSet]) -> None:
    """
    Check that manifest sets can be reconciled independently.

    Raises:
        ValidationError: If two sets share a name, declare the same resource,
            or one set places resources in a Namespace another set declares
    """
    owners: dict[ResourceId, str] = {}
    names: set[str] = set()
    for manifest_set in manifest_sets:
        if manifest_set.name in names:
            raise ValidationError(f"Manifest set {manifest_set.name} given twice")
        names.add(manifest_set.name)

        for rid in manifest_set.ids():
            if rid in owners:
                raise ValidationError(
                    f"{rid} is declared by both {owners[rid]} and {manifest_set.name}; "
                    "manifest sets reconciled together must not share resources"
                )
            owners[rid] = manifest_set.name

    namespaces = {
        rid.name: owner
        for rid, owner in owners.items()
        if rid.kind == ResourceKind.NAMESPACE
    }
    for rid, owner in sorted(owners.items(), key=lambda item: item[0].sort_key()):
        declared_by = namespaces.get(rid.namespace)
        if rid.namespace and declared_by is not None and declared_by != owner:
            raise ValidationError(
                f"{rid} in {owner} lives in Namespace {rid.namespace} declared by "
                f"{declared_by}; manifest sets reconciled together must not depend "
                "on each other"
            )


async def reconcile_concurrently(
    reconciler: Reconciler,
    manifest_sets: list[ManifestSet],
    cancel: Optional[threading.Event] = None,
) -> list[Union[ReconcileResult, FatalApplyError]]:
    """
    Reconcile unrelated manifest sets in parallel, one worker thread each.

    Each set is still applied sequentially in its own dependency order. A
    fatal error in one set does not stop the others.

    Returns:
        One ReconcileResult or FatalApplyError per manifest set, in input order

    Raises:
        ValidationError: If the sets overlap
    """
    ensure_unrelated(manifest_sets)

    logger.info(f"Reconciling {len(manifest_sets)} manifest sets concurrently")
    results = await asyncio.gather(
        *(
            asyncio.to_thread(reconciler.reconcile, manifest_set, cancel)
            for manifest_set in manifest_sets
        ),
        return_exceptions=True,
    )

    for manifest_set, result in zip(manifest_sets, results):
        if isinstance(result, FatalApplyError):
            logger.error(f"Manifest set {manifest_set.name} failed: {result}")
        elif isinstance(result, BaseException):
            raise result
    return list(results)


class ReconcileLoop:
    """
    Re-runs reconciliation of a manifest set on an interval.

    Each pass computes its plan from scratch, so drift introduced between
    passes is corrected and a pass that failed part-way is simply resumed by
    the next one.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        manifest_set: ManifestSet,
        interval: float = 60.0,
    ):
        """
        Initialize reconcile loop.

        Args:
            reconciler: Reconciler used for every pass
            manifest_set: Desired state
            interval: Seconds between the end of one pass and the next
        """
        self.reconciler = reconciler
        self.manifest_set = manifest_set
        self.interval = interval
        self.passes = 0
        self.last_result: Optional[ReconcileResult] = None
        self.last_error: Optional[Exception] = None
        self._cancel = threading.Event()
        self._stopped: Optional[asyncio.Event] = None
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> Optional[ReconcileResult]:
        """Run a single pass. Failures are logged, not raised."""
        try:
            result = await asyncio.to_thread(
                self.reconciler.reconcile, self.manifest_set, self._cancel
            )
        except FatalApplyError as e:
            logger.error(f"Reconciliation pass for {self.manifest_set.name} failed: {e}")
            self.last_error = e
            return None
        except Exception as e:
            logger.error(
                f"Unexpected error reconciling {self.manifest_set.name}: {e}",
                exc_info=True,
            )
            self.last_error = e
            return None
        finally:
            self.passes += 1

        self.last_result = result
        self.last_error = None
        return result

    async def _run(self) -> None:
        while self._running:
            await self.run_once()
            if not self._running:
                break
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    async def start(self) -> None:
        """Start the loop in a background task."""
        if self._running:
            logger.warning("Reconcile loop already running")
            return

        logger.info(
            f"Starting reconcile loop for {self.manifest_set.name} "
            f"every {self.interval:.0f}s"
        )
        self._running = True
        self._cancel.clear()
        self._stopped = asyncio.Event()
        self._task = asyncio.create_task(self._run())

    async def wait(self) -> None:
        """Block until the loop stops."""
        if self._task is not None:
            await self._task

    async def stop(self) -> None:
        """
        Stop the loop.

        A pass in progress is cancelled at its next resource boundary; the
        resource being applied is finished first.
        """
        if not self._running:
            return

        logger.info(f"Stopping reconcile loop for {self.manifest_set.name}")
        self._running = False
        self._cancel.set()
        if self._stopped is not None:
            self._stopped.set()

        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
