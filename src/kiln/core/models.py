"""Core data models for Kiln."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, Union

Command = Union[Callable[..., Any], str]


def file_in(*paths: str) -> str | tuple[str, ...]:
    """Declare input files inside a command. Returns the path(s) unchanged."""
    return paths[0] if len(paths) == 1 else paths


def file_out(*paths: str) -> str | tuple[str, ...]:
    """Declare output files inside a command. Returns the path(s) unchanged."""
    return paths[0] if len(paths) == 1 else paths


class TargetState(str, Enum):
    """Lifecycle of a target within one run."""

    PENDING = "pending"
    UP_TO_DATE = "up_to_date"
    STALE = "stale"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    BLOCKED = "blocked"


@dataclass
class Map:
    """Expand a template into one target per index of co-varying lists."""

    params: dict[str, list[Any]]

    def __init__(self, **params: Any):
        self.params = {k: list(v) for k, v in params.items()}


@dataclass
class Cross:
    """Expand a template into one target per combination of parameter values."""

    params: dict[str, list[Any]]

    def __init__(self, **params: Any):
        self.params = {k: list(v) for k, v in params.items()}


@dataclass
class Combine:
    """Aggregate every expansion of the named templates into one target.

    With ``by``, one combined target is produced per distinct value of that
    parameter.
    """

    templates: tuple[str, ...]
    by: str | None = None

    def __init__(self, *templates: str, by: str | None = None):
        self.templates = tuple(templates)
        self.by = by


Transform = Union[Map, Cross, Combine]


@dataclass
class Target:
    """A named, cacheable unit of computation."""

    name: str
    command: Command
    depends_on: list[str] = field(default_factory=list)
    file_in: list[str] = field(default_factory=list)
    file_out: list[str] = field(default_factory=list)
    format: str = "pickle"  # "pickle", "json"
    transform: Transform | None = None
    params: dict[str, Any] = field(default_factory=dict)
    group: str | None = None  # template name for expanded targets
    # callable parameter -> upstream targets whose values arrive as one list
    gather: dict[str, list[str]] = field(default_factory=dict)

    @property
    def is_expression(self) -> bool:
        return isinstance(self.command, str)


@dataclass
class Plan:
    """The full declarative set of targets.

    Usage:
        plan = Plan("keras")
        plan.target("data", load_data)
        plan.target("rec", "prepare_recipe(data)")
        plan.target("model", "fit_model(rec, units=units)", transform=Map(units=[16, 32]))
        plan.target("combined", "compare(model)", transform=Combine("model"))

    ``env`` is the namespace expression commands are evaluated in, in
    addition to the values of their upstream targets.
    """

    name: str = "plan"
    targets: list[Target] = field(default_factory=list)
    env: dict[str, Any] = field(default_factory=dict)

    def add_target(self, target: Target) -> Target:
        self.targets.append(target)
        return target

    def target(self, name: str, command: Command, **kwargs: Any) -> Target:
        """Declare a target and append it to the plan."""
        return self.add_target(Target(name=name, command=command, **kwargs))

    def get(self, name: str) -> Target:
        for target in self.targets:
            if target.name == name:
                return target
        raise KeyError(name)

    def names(self) -> list[str]:
        return [t.name for t in self.targets]

    def __iter__(self) -> Iterator[Target]:
        return iter(self.targets)

    def __len__(self) -> int:
        return len(self.targets)
