"""Transform expansion: compile map/cross/combine directives into plain targets.

Expansion is a pure ``Plan -> Plan`` pass that runs before graph
construction. The result holds only concrete targets with ``transform=None``.
"""

from __future__ import annotations

import ast
import functools
import itertools
import logging
import re
from dataclasses import replace
from typing import Any

from kiln.core.errors import PlanError
from kiln.core.models import Combine, Cross, Map, Plan, Target
from kiln.plan.commands import accepted_keywords, literal_node, substitute

logger = logging.getLogger(__name__)


def expansion_suffix(value: Any) -> str:
    """Render a parameter value as an identifier-safe name fragment."""
    return re.sub(r"\W+", "_", str(value)).strip("_") or "x"


def combinations(transform: Map | Cross, target: str = "?") -> list[dict[str, Any]]:
    """Enumerate parameter bindings in a stable order.

    Map zips co-varying lists (lengths must agree); Cross takes the
    cartesian product in declaration order.
    """
    if not transform.params:
        raise PlanError(f"Target '{target}': transform has no parameters")
    keys = list(transform.params)
    values = [transform.params[k] for k in keys]

    if isinstance(transform, Map):
        lengths = {k: len(v) for k, v in transform.params.items()}
        if len(set(lengths.values())) != 1:
            raise PlanError(
                f"Target '{target}': map() parameters have mismatched lengths {lengths}"
            )
        rows = zip(*values)
    else:
        rows = itertools.product(*values)

    return [dict(zip(keys, row)) for row in rows]


def _bind(template: Target, name: str, params: dict[str, Any]) -> Target:
    """Produce one concrete target from a template and a parameter binding."""
    merged = {**template.params, **params}
    if template.is_expression:
        mapping = {k: literal_node(v, name) for k, v in params.items()}
        command = substitute(template.command, mapping, name)
    else:
        accepted = accepted_keywords(template.command)
        bound = {k: v for k, v in params.items() if accepted is None or k in accepted}
        command = functools.partial(template.command, **bound) if bound else template.command
    return replace(
        template,
        name=name,
        command=command,
        transform=None,
        params=merged,
        group=template.name,
        depends_on=list(template.depends_on),
        file_in=list(template.file_in),
        file_out=list(template.file_out),
        gather=dict(template.gather),
    )


def _expand_map(template: Target) -> list[Target]:
    rows = combinations(template.transform, template.name)
    expanded = []
    for row in rows:
        suffix = "_".join(expansion_suffix(v) for v in row.values())
        expanded.append(_bind(template, f"{template.name}_{suffix}", row))
    return expanded


def _expand_combine(template: Target, groups: dict[str, list[Target]]) -> list[Target]:
    directive: Combine = template.transform
    if not directive.templates:
        raise PlanError(f"Target '{template.name}': combine() needs at least one target")

    members: dict[str, list[Target]] = {}
    for source in directive.templates:
        if source not in groups:
            raise PlanError(
                f"Target '{template.name}' combines unknown target '{source}'. "
                f"Known: {sorted(groups)}"
            )
        members[source] = groups[source]

    if directive.by is None:
        buckets: list[tuple[dict[str, Any], dict[str, list[Target]]]] = [({}, members)]
    else:
        by = directive.by
        values: list[Any] = []
        for source, group in members.items():
            for member in group:
                if by not in member.params:
                    raise PlanError(
                        f"Target '{template.name}': '{member.name}' has no parameter '{by}'"
                    )
                if member.params[by] not in values:
                    values.append(member.params[by])
        buckets = [
            (
                {by: value},
                {s: [m for m in g if m.params[by] == value] for s, g in members.items()},
            )
            for value in values
        ]

    expanded = []
    for params, subset in buckets:
        name = template.name
        if params:
            name = f"{template.name}_{expansion_suffix(params[directive.by])}"
        if template.is_expression:
            mapping: dict[str, ast.expr] = {
                source: ast.List(elts=[ast.Name(id=m.name, ctx=ast.Load()) for m in group], ctx=ast.Load())
                for source, group in subset.items()
            }
            mapping.update({k: literal_node(v, name) for k, v in params.items()})
            command = substitute(template.command, mapping, name)
            gather = dict(template.gather)
        else:
            accepted = accepted_keywords(template.command)
            bound = {k: v for k, v in params.items() if accepted is None or k in accepted}
            command = functools.partial(template.command, **bound) if bound else template.command
            gather = {**template.gather, **{s: [m.name for m in g] for s, g in subset.items()}}
        expanded.append(
            replace(
                template,
                name=name,
                command=command,
                transform=None,
                params={**template.params, **params},
                group=template.name,
                depends_on=list(template.depends_on),
                file_in=list(template.file_in),
                file_out=list(template.file_out),
                gather=gather,
            )
        )
    return expanded


def expand_plan(plan: Plan) -> Plan:
    """Return a new plan with every transform directive expanded.

    Map/Cross templates are expanded first so combine() can refer to them
    regardless of declaration order; combine() templates are then expanded
    in plan order (a combine may aggregate an earlier combine's output).
    Expanded targets replace their template in place.
    """
    groups: dict[str, list[Target]] = {}
    slots: list[list[Target] | Target] = []

    for target in plan.targets:
        if isinstance(target.transform, (Map, Cross)):
            expanded = _expand_map(target)
            groups[target.name] = expanded
            slots.append(expanded)
        else:
            if target.transform is None:
                groups.setdefault(target.name, [target])
            slots.append(target)

    flat: list[Target] = []
    for slot in slots:
        if isinstance(slot, list):
            flat.extend(slot)
        elif isinstance(slot.transform, Combine):
            combined = _expand_combine(slot, groups)
            groups[slot.name] = combined
            flat.extend(combined)
        elif slot.transform is None:
            flat.append(slot)
        else:
            raise PlanError(f"Target '{slot.name}' has an unknown transform {slot.transform!r}")

    seen: set[str] = set()
    dupes: list[str] = []
    for target in flat:
        if target.name in seen:
            dupes.append(target.name)
        seen.add(target.name)
    if dupes:
        raise PlanError(f"Duplicate target names after expansion: {sorted(set(dupes))}")

    logger.debug("Expanded plan %s: %d -> %d targets", plan.name, len(plan.targets), len(flat))
    return Plan(name=plan.name, targets=flat, env=dict(plan.env))
