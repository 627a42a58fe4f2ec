"""Load plan files: Python modules defining a ``plan`` variable."""

from __future__ import annotations

import importlib.util
import sys
from pathlib import Path

from kiln.build.dag import DependencyGraph, build_graph
from kiln.core.errors import PlanError
from kiln.core.models import Plan


def load_plan(path: str | Path) -> Plan:
    """Import a Python plan module and extract the `plan` variable."""
    filepath = Path(path).resolve()
    if not filepath.exists():
        raise FileNotFoundError(f"Plan file not found: {path}")

    module_name = f"_kiln_plan_{filepath.stem}"
    spec = importlib.util.spec_from_file_location(module_name, filepath)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load plan module: {path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    spec.loader.exec_module(module)

    plan = getattr(module, "plan", None)
    if plan is None:
        raise PlanError(f"Plan module {path} must define a 'plan' variable")
    if not isinstance(plan, Plan):
        raise PlanError(f"'plan' variable must be a Plan instance, got {type(plan)}")

    validate_plan(plan)
    return plan


def validate_plan(plan: Plan) -> DependencyGraph:
    """Check a plan without running it.

    Raises PlanError or MissingDependencyError; input files produced by
    no target are not required to exist yet.
    """
    if not plan.targets:
        raise PlanError(f"Plan '{plan.name}' has no targets")
    return build_graph(plan, check_files=False)
