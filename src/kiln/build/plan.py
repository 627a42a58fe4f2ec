"""Dry-run build planning: analyze what would be built without executing."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field

from kiln.build.dag import DependencyGraph, build_graph
from kiln.build.fingerprint import DEFAULT_ALGORITHM, Fingerprint
from kiln.build.runner import compute_fingerprint, stale_reasons
from kiln.core.models import Plan
from kiln.storage.base import Storage


@dataclass
class TargetPlan:
    """Plan for a single target."""

    name: str
    status: str  # "new", "rebuild", "cached"
    reasons: list[str] = field(default_factory=list)
    upstream: list[str] = field(default_factory=list)
    group: str | None = None
    fingerprint: str = ""


@dataclass
class BuildPlan:
    """Complete build plan for a plan file."""

    plan_name: str
    targets: list[TargetPlan] = field(default_factory=list)
    total_cached: int = 0
    total_rebuild: int = 0
    total_new: int = 0

    @property
    def outdated(self) -> list[str]:
        return [t.name for t in self.targets if t.status != "cached"]

    def to_dict(self) -> dict:
        """Serialize to a plain dict suitable for JSON output."""
        return asdict(self)

    def to_json(self, indent: int = 2) -> str:
        """Serialize to a JSON string."""
        return json.dumps(self.to_dict(), indent=indent)


def plan_build(
    plan: Plan | DependencyGraph,
    storage: Storage,
    *,
    targets: list[str] | None = None,
    hash_algorithm: str = DEFAULT_ALGORITHM,
    force: bool = False,
) -> BuildPlan:
    """Walk the DAG and determine what would be built without executing.

    Uses the same staleness rules as the runner. A target whose upstream
    would be rebuilt is reported as "rebuild" even when its own fingerprint
    still matches, since the upstream value is about to change.

    Args:
        plan: The plan or an already-built graph.
        storage: Cache backend to compare against.
        targets: Restrict to these targets and their ancestors.
        hash_algorithm: Fingerprint hash function.
        force: Report every target as needing a rebuild.

    Returns:
        BuildPlan with per-target status and reasons, in build order.
    """
    graph = plan if isinstance(plan, DependencyGraph) else build_graph(plan, check_files=False)
    if targets:
        graph = graph.subgraph(list(targets))

    build_plan = BuildPlan(plan_name=graph.plan.name)
    fingerprints: dict[str, Fingerprint] = {}
    dirty: set[str] = set()

    for name in graph.order:
        node = graph.nodes[name]
        fingerprint = compute_fingerprint(node, fingerprints, hash_algorithm)
        fingerprints[name] = fingerprint

        if force:
            reasons = ["forced"]
        else:
            reasons = stale_reasons(node, fingerprint, storage, dirty, hash_algorithm)

        if not reasons:
            status = "cached"
            build_plan.total_cached += 1
        elif reasons == ["no cache entry"]:
            status = "new"
            build_plan.total_new += 1
        else:
            status = "rebuild"
            build_plan.total_rebuild += 1
        if status != "cached":
            dirty.add(name)

        build_plan.targets.append(TargetPlan(
            name=name,
            status=status,
            reasons=reasons,
            upstream=list(node.upstream),
            group=node.target.group,
            fingerprint=fingerprint.digest,
        ))

    return build_plan


def outdated(
    plan: Plan | DependencyGraph,
    storage: Storage,
    *,
    targets: list[str] | None = None,
    hash_algorithm: str = DEFAULT_ALGORITHM,
) -> list[str]:
    """Names of the targets the next run would build, in build order."""
    return plan_build(plan, storage, targets=targets, hash_algorithm=hash_algorithm).outdated
