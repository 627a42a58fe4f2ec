"""Kiln - incremental builds for computational pipelines.

Usage:
    from kiln import Combine, Map, Plan, open_storage, run

    plan = Plan("models")
    plan.target("data", load_data)
    plan.target("rec", "prepare_recipe(data)")
    plan.target("model", "fit_model(rec, units=units)", transform=Map(units=[16, 32]))
    plan.target("combined", "compare(model)", transform=Combine("model"))
    plan.env.update(prepare_recipe=prepare_recipe, fit_model=fit_model, compare=compare)

    result = run(plan, open_storage("directory", ".kiln"), workers=2)
"""

from kiln.build.dag import DependencyGraph, build_graph
from kiln.build.fingerprint import Fingerprint
from kiln.build.plan import BuildPlan, outdated, plan_build
from kiln.build.runner import RunResult, TargetResult, build_times, clean, load_target, run
from kiln.core.errors import BuildError, KilnError, MissingDependencyError, PlanError, StorageError
from kiln.core.models import Combine, Cross, Map, Plan, Target, TargetState, file_in, file_out
from kiln.plan.expand import expand_plan
from kiln.storage import CacheEntry, Storage, open_storage

__version__ = "0.1.0"

__all__ = [
    "BuildError",
    "BuildPlan",
    "CacheEntry",
    "Combine",
    "Cross",
    "DependencyGraph",
    "Fingerprint",
    "KilnError",
    "Map",
    "MissingDependencyError",
    "Plan",
    "PlanError",
    "RunResult",
    "Storage",
    "StorageError",
    "Target",
    "TargetResult",
    "TargetState",
    "build_graph",
    "build_times",
    "clean",
    "expand_plan",
    "file_in",
    "file_out",
    "load_target",
    "open_storage",
    "outdated",
    "plan_build",
    "run",
]
