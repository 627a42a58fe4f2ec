"""DAG resolution: infer dependencies, determine build order, detect cycles."""

from __future__ import annotations

import builtins
import heapq
import os
from dataclasses import dataclass, field

from kiln.core.errors import MissingDependencyError, PlanError
from kiln.core.models import Plan, Target
from kiln.plan.commands import (
    FILE_MARKERS,
    callable_parameters,
    scan_callable_files,
    scan_expression,
)
from kiln.plan.expand import expand_plan
from kiln.storage.formats import FORMATS

_BUILTINS = frozenset(dir(builtins))


@dataclass
class Node:
    """A target plus everything the graph builder inferred about it."""

    target: Target
    upstream: list[str] = field(default_factory=list)
    # upstream names whose values the command consumes directly
    arguments: list[str] = field(default_factory=list)
    file_in: list[str] = field(default_factory=list)
    file_out: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.target.name


@dataclass
class DependencyGraph:
    """Directed acyclic graph over target names, in build order."""

    plan: Plan
    nodes: dict[str, Node]
    order: list[str]
    children: dict[str, list[str]]

    def __contains__(self, name: str) -> bool:
        return name in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def upstream(self, name: str) -> list[str]:
        return list(self.nodes[name].upstream)

    def ancestors(self, name: str) -> set[str]:
        """All targets the named target transitively depends on."""
        seen: set[str] = set()
        stack = list(self.nodes[name].upstream)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.nodes[current].upstream)
        return seen

    def downstream(self, name: str) -> set[str]:
        """All targets that transitively depend on the named target."""
        seen: set[str] = set()
        stack = list(self.children.get(name, []))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.children.get(current, []))
        return seen

    def subgraph(self, names: list[str]) -> DependencyGraph:
        """Restrict the graph to the named targets and their ancestors."""
        keep: set[str] = set()
        for name in names:
            if name not in self.nodes:
                raise MissingDependencyError(
                    f"Unknown target '{name}'. Known targets: {sorted(self.nodes)}"
                )
            keep.add(name)
            keep |= self.ancestors(name)
        return DependencyGraph(
            plan=self.plan,
            nodes={n: node for n, node in self.nodes.items() if n in keep},
            order=[n for n in self.order if n in keep],
            children={
                n: [c for c in kids if c in keep]
                for n, kids in self.children.items() if n in keep
            },
        )

    def to_dict(self) -> dict:
        """Read-only export for external renderers."""
        return {
            "nodes": [
                {
                    "name": n,
                    "group": self.nodes[n].target.group,
                    "file_in": list(self.nodes[n].file_in),
                    "file_out": list(self.nodes[n].file_out),
                }
                for n in self.order
            ],
            "edges": [
                [parent, child]
                for parent in self.order
                for child in self.children.get(parent, [])
            ],
        }


def _dedupe(items: list[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _analyze(target: Target, names: set[str], env: dict) -> Node:
    """Infer a target's upstream names and declared files."""
    if target.format not in FORMATS:
        raise PlanError(
            f"Target '{target.name}' has unknown format '{target.format}'. "
            f"Available: {list(FORMATS)}"
        )
    upstream: list[str] = []
    arguments: list[str] = []
    files_in = list(target.file_in)
    files_out = list(target.file_out)

    if target.is_expression:
        refs, scanned_in, scanned_out = scan_expression(target.command, target.name)
        for ref in sorted(refs):
            if ref in names:
                upstream.append(ref)
                arguments.append(ref)
            elif ref not in env and ref not in _BUILTINS and ref not in FILE_MARKERS:
                raise MissingDependencyError(
                    f"Target '{target.name}' references '{ref}', which is neither a "
                    f"target nor defined in the plan environment"
                )
    else:
        if not callable(target.command):
            raise PlanError(
                f"Target '{target.name}' command must be callable or an expression string"
            )
        params, _ = callable_parameters(target.command)
        for param in params:
            if param in target.gather:
                continue
            if param not in names:
                raise MissingDependencyError(
                    f"Target '{target.name}' takes argument '{param}', which is not a target. "
                    f"Known targets: {sorted(names)}"
                )
            upstream.append(param)
            arguments.append(param)
        for members in target.gather.values():
            for member in members:
                if member not in names:
                    raise MissingDependencyError(
                        f"Target '{target.name}' combines unknown target '{member}'"
                    )
                upstream.append(member)
        scanned_in, scanned_out = scan_callable_files(target.command)

    for dep in target.depends_on:
        if dep not in names:
            raise MissingDependencyError(
                f"Target '{target.name}' depends on unknown target '{dep}'"
            )
        upstream.append(dep)

    files_in.extend(scanned_in)
    files_out.extend(scanned_out)
    return Node(
        target=target,
        upstream=_dedupe(upstream),
        arguments=arguments,
        file_in=_dedupe([os.path.normpath(p) for p in files_in]),
        file_out=_dedupe([os.path.normpath(p) for p in files_out]),
    )


def build_graph(plan: Plan, *, check_files: bool = True) -> DependencyGraph:
    """Analyze a plan into a DAG.

    Transform directives are expanded first. Raises PlanError for duplicate
    names, unknown formats, conflicting file outputs and cycles, and MissingDependencyError
    for references to undefined targets or input files that neither exist
    nor are produced by another target. Nothing is executed.
    """
    if any(t.transform is not None for t in plan.targets):
        plan = expand_plan(plan)

    names_list = plan.names()
    if len(set(names_list)) != len(names_list):
        dupes = sorted({n for n in names_list if names_list.count(n) > 1})
        raise PlanError(f"Duplicate target names found: {dupes}")
    names = set(names_list)
    position = {name: i for i, name in enumerate(names_list)}

    nodes = {t.name: _analyze(t, names, plan.env) for t in plan.targets}

    producers: dict[str, str] = {}
    for node in nodes.values():
        for path in node.file_out:
            if path in producers and producers[path] != node.name:
                raise PlanError(
                    f"File '{path}' is declared as output of both "
                    f"'{producers[path]}' and '{node.name}'"
                )
            producers[path] = node.name

    for node in nodes.values():
        for path in node.file_in:
            producer = producers.get(path)
            if producer is not None:
                if producer not in node.upstream:
                    node.upstream.append(producer)
            elif check_files and not os.path.exists(path):
                raise MissingDependencyError(
                    f"Target '{node.name}' declares input file '{path}', which does not "
                    f"exist and is not produced by any target"
                )

    in_degree: dict[str, int] = {name: 0 for name in nodes}
    children: dict[str, list[str]] = {name: [] for name in nodes}
    for node in nodes.values():
        for dep in node.upstream:
            children[dep].append(node.name)
            in_degree[node.name] += 1

    # ties are broken by declaration order so the build order is stable
    ready = [(position[n], n) for n, d in in_degree.items() if d == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        _, name = heapq.heappop(ready)
        order.append(name)
        for child in children[name]:
            in_degree[child] -= 1
            if in_degree[child] == 0:
                heapq.heappush(ready, (position[child], child))

    if len(order) != len(nodes):
        remaining = set(nodes) - set(order)
        raise PlanError(f"Plan has circular dependencies involving: {sorted(remaining)}")

    return DependencyGraph(plan=plan, nodes=nodes, order=order, children=children)
