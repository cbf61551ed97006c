"""Dependency ordering for manifest sets."""

import heapq
import logging

from .exceptions import CycleError, ValidationError
from .models import ManifestSet, Resource, ResourceId

logger = logging.getLogger(__name__)


def order(manifest_set: ManifestSet) -> list[Resource]:
    """
    Topologically order the resources of a manifest set.

    Every dependency precedes its dependents. Resources with no ordering
    constraint between them are emitted by (kind rank, name, namespace) so
    the apply order is identical across runs.

    Args:
        manifest_set: Manifest set to order

    Returns:
        Resources in apply order

    Raises:
        ValidationError: If a dependency does not resolve within the set
        CycleError: If the dependency graph is not acyclic
    """
    by_id: dict[ResourceId, Resource] = {}
    for resource in manifest_set.resources:
        if resource.id in by_id:
            raise ValidationError(
                f"Duplicate resource {resource.id} in manifest set {manifest_set.name}"
            )
        by_id[resource.id] = resource

    pending_deps: dict[ResourceId, set[ResourceId]] = {}
    dependents: dict[ResourceId, list[ResourceId]] = {rid: [] for rid in by_id}
    for rid, resource in by_id.items():
        for dep in resource.depends_on:
            if dep not in by_id:
                raise ValidationError(f"{rid} depends on unknown resource {dep}")
            dependents[dep].append(rid)
        pending_deps[rid] = set(resource.depends_on)

    ready = [(rid.sort_key(), rid) for rid, deps in pending_deps.items() if not deps]
    heapq.heapify(ready)

    ordered: list[Resource] = []
    while ready:
        _, rid = heapq.heappop(ready)
        ordered.append(by_id[rid])
        for dependent in dependents[rid]:
            deps = pending_deps[dependent]
            deps.discard(rid)
            if not deps:
                heapq.heappush(ready, (dependent.sort_key(), dependent))

    if len(ordered) != len(by_id):
        remaining = {rid: deps for rid, deps in pending_deps.items() if deps}
        raise CycleError(_find_cycle(remaining))

    logger.debug(
        f"Resolved order for {manifest_set.name}: "
        + ", ".join(str(r.id) for r in ordered)
    )
    return ordered


def reverse_order(manifest_set: ManifestSet) -> list[Resource]:
    """Teardown order: dependents before the resources they depend on."""
    return list(reversed(order(manifest_set)))


def _find_cycle(remaining: dict[ResourceId, set[ResourceId]]) -> list[ResourceId]:
    """
    Extract one cycle from the unresolved part of the graph.

    Every node left over after Kahn's algorithm still waits on at least one
    other left-over node, so walking unresolved dependencies must revisit a
    node. The walk is deterministic for stable error messages.
    """
    node = min(remaining, key=ResourceId.sort_key)
    path: list[ResourceId] = []
    seen: dict[ResourceId, int] = {}
    while node not in seen:
        seen[node] = len(path)
        path.append(node)
        node = min(remaining[node], key=ResourceId.sort_key)
    return path[seen[node]:]
