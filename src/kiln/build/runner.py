"""Plan runner: walk the DAG, decide staleness, build stale targets, cache results."""

from __future__ import annotations

import logging
import time
from collections import deque
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from kiln.build.dag import DependencyGraph, Node, build_graph
from kiln.build.executor import Job, JobResult, create_executor
from kiln.build.fingerprint import (
    DEFAULT_ALGORITHM,
    Fingerprint,
    compute_target_fingerprint,
    hash_files,
)
from kiln.core.errors import BuildError, StorageError
from kiln.core.logging import KilnLogger, Verbosity
from kiln.core.models import Plan, TargetState
from kiln.plan.commands import command_text
from kiln.storage.base import Storage

logger = logging.getLogger(__name__)


@dataclass
class TargetResult:
    """Outcome of one target within a run."""

    name: str
    state: TargetState = TargetState.PENDING
    seconds: float = 0.0
    reasons: list[str] = field(default_factory=list)
    error: str | None = None
    fingerprint: str | None = None
    # BuildError chained to the command exception, for failed targets
    exception: BaseException | None = field(default=None, repr=False)


@dataclass
class RunResult:
    """Summary of a run: per-target states, timings and errors."""

    plan_name: str
    targets: dict[str, TargetResult] = field(default_factory=dict)
    total_time: float = 0.0
    run_log: dict = field(default_factory=dict)

    def _with_state(self, state: TargetState) -> list[str]:
        return [name for name, t in self.targets.items() if t.state == state]

    @property
    def built(self) -> list[str]:
        return self._with_state(TargetState.DONE)

    @property
    def skipped(self) -> list[str]:
        return self._with_state(TargetState.UP_TO_DATE)

    @property
    def failed(self) -> list[str]:
        return self._with_state(TargetState.FAILED)

    @property
    def blocked(self) -> list[str]:
        return self._with_state(TargetState.BLOCKED)

    @property
    def success(self) -> bool:
        return not self.failed and not self.blocked

    @property
    def states(self) -> dict[str, TargetState]:
        return {name: t.state for name, t in self.targets.items()}

    @property
    def build_times(self) -> dict[str, float]:
        return {name: t.seconds for name, t in self.targets.items() if t.state == TargetState.DONE}


def compute_fingerprint(
    node: Node,
    upstream: dict[str, Fingerprint],
    algorithm: str = DEFAULT_ALGORITHM,
) -> Fingerprint:
    """Fingerprint a node from its command, upstream fingerprints and input files."""
    target = node.target
    return compute_target_fingerprint(
        command_text(target.command, target.params),
        {dep: upstream[dep].digest for dep in node.upstream},
        hash_files(node.file_in, algorithm),
        format=target.format,
        algorithm=algorithm,
    )


def stale_reasons(
    node: Node,
    fingerprint: Fingerprint,
    storage: Storage,
    rebuilt: set[str],
    algorithm: str = DEFAULT_ALGORITHM,
) -> list[str]:
    """Why a target must be rebuilt. An empty list means it is up to date."""
    try:
        entry = storage.stat(node.name)
    except StorageError as e:
        return [f"cache entry unreadable ({e})"]
    if entry is None:
        return ["no cache entry"]

    reasons = [f"upstream {dep} changed" for dep in node.upstream if dep in rebuilt]
    stored = entry.parsed_fingerprint
    if not fingerprint.matches(stored):
        reasons.extend(fingerprint.explain_diff(stored))

    if node.file_out:
        recorded = entry.metadata.get("files_out", {})
        current = hash_files(node.file_out, algorithm)
        for path, digest in current.items():
            if recorded.get(path) != digest:
                reasons.append(f"output file {path} changed")
    return reasons


class _Scheduler:
    """Coordinator state for one run.

    Owns every state transition; workers only execute jobs and return
    results. Cache writes happen here unless the backend accepts
    concurrent writers reachable from the workers.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        storage: Storage,
        workers: int,
        executor: str,
        algorithm: str,
        force: bool,
        run_logger: KilnLogger,
    ):
        self.graph = graph
        self.storage = storage
        self.workers = max(1, workers)
        self.executor_kind = executor
        self.algorithm = algorithm
        self.force = force
        self.log = run_logger

        self.results = {name: TargetResult(name=name) for name in graph.order}
        self.fingerprints: dict[str, Fingerprint] = {}
        self.rebuilt: set[str] = set()
        self.waiting = {name: len(graph.nodes[name].upstream) for name in graph.order}
        self.ready: deque[str] = deque(n for n in graph.order if self.waiting[n] == 0)
        self.in_flight: dict[Future, str] = {}

    def _set(self, name: str, state: TargetState) -> None:
        self.results[name].state = state

    def _release(self, name: str) -> None:
        """Mark downstream targets ready once all their upstream are satisfied."""
        for child in self.graph.children.get(name, []):
            self.waiting[child] -= 1
            if self.waiting[child] == 0 and self.results[child].state == TargetState.PENDING:
                self.ready.append(child)

    def _value(self, name: str) -> Any:
        # a fresh copy per consumer; commands may mutate their arguments
        return self.storage.get(name)

    def _arguments(self, node: Node) -> dict[str, Any]:
        arguments = {dep: self._value(dep) for dep in node.arguments}
        for param, members in node.target.gather.items():
            arguments[param] = [self._value(m) for m in members]
        return arguments

    def _fail(self, name: str, message: str, seconds: float = 0.0) -> None:
        result = self.results[name]
        result.state = TargetState.FAILED
        result.error = message
        result.seconds = seconds
        self.log.target_failed(name, message, seconds)
        downstream = self.graph.downstream(name)
        for descendant in self.graph.order:
            if descendant in downstream and self.results[descendant].state == TargetState.PENDING:
                self.results[descendant].state = TargetState.BLOCKED
                self.results[descendant].reasons = [f"upstream {name} failed"]
                self.log.target_blocked(descendant, name)

    def _check(self, name: str, pool) -> None:
        """PENDING -> UP_TO_DATE, or STALE -> RUNNING (dispatched)."""
        node = self.graph.nodes[name]
        fingerprint = compute_fingerprint(node, self.fingerprints, self.algorithm)
        self.fingerprints[name] = fingerprint
        self.results[name].fingerprint = fingerprint.digest

        if self.force:
            reasons = ["forced"]
        else:
            reasons = stale_reasons(node, fingerprint, self.storage, self.rebuilt, self.algorithm)

        if not reasons:
            self._set(name, TargetState.UP_TO_DATE)
            self.log.target_skipped(name)
            self._release(name)
            return

        self._set(name, TargetState.STALE)
        self.results[name].reasons = reasons
        try:
            arguments = self._arguments(node)
        except (KeyError, StorageError) as e:
            self._fail(name, f"cannot load upstream value: {e}")
            return

        direct = self.storage.concurrent_writers and (pool.shares_memory or self.storage.durable)
        job = Job(
            name=name,
            command=node.target.command,
            arguments=arguments,
            env=self.graph.plan.env,
            fingerprint=fingerprint.to_dict(),
            format=node.target.format,
            file_out=node.file_out,
            algorithm=self.algorithm,
            store=self.storage if direct else None,
        )
        self._set(name, TargetState.RUNNING)
        self.log.target_start(name, reasons)
        self.in_flight[pool.submit(job)] = name

    def _complete(self, name: str, future: Future) -> None:
        """RUNNING -> DONE or FAILED."""
        try:
            outcome: JobResult = future.result()
        except Exception as e:
            # the pool itself failed (e.g. an unpicklable command or value)
            self._fail(name, f"{type(e).__name__}: {e}")
            return

        if not outcome.success:
            error = BuildError(name, f"{type(outcome.error).__name__}: {outcome.error}")
            error.__cause__ = outcome.error
            self.results[name].exception = error
            logger.debug("Target %s failed:\n%s", name, outcome.traceback)
            self._fail(name, str(error), outcome.seconds)
            return

        if not outcome.stored:
            try:
                self.storage.put(
                    name,
                    outcome.value,
                    self.fingerprints[name],
                    format=self.graph.nodes[name].target.format,
                    seconds=outcome.seconds,
                    metadata={"files_out": outcome.files_out},
                )
            except StorageError as e:
                self._fail(name, str(e), outcome.seconds)
                return

        self.rebuilt.add(name)
        result = self.results[name]
        result.state = TargetState.DONE
        result.seconds = outcome.seconds
        self.log.target_built(name, outcome.seconds)
        self._release(name)

    def run(self) -> None:
        pool = create_executor(self.workers, self.executor_kind)
        interrupted = False
        try:
            while self.ready or self.in_flight:
                while self.ready and len(self.in_flight) < self.workers:
                    self._check(self.ready.popleft(), pool)
                if not self.in_flight:
                    continue
                done, _ = wait(list(self.in_flight), return_when=FIRST_COMPLETED)
                for future in done:
                    self._complete(self.in_flight.pop(future), future)
        except KeyboardInterrupt:
            logger.warning("Run interrupted; waiting for %d running targets", len(self.in_flight))
            for future in self.in_flight:
                future.cancel()
            interrupted = True
            raise
        finally:
            pool.shutdown(wait=True, cancel_futures=interrupted)


def run(
    plan: Plan | DependencyGraph,
    storage: Storage,
    workers: int = 1,
    *,
    targets: list[str] | None = None,
    executor: str = "thread",
    hash_algorithm: str = DEFAULT_ALGORITHM,
    force: bool = False,
    verbosity: int = 0,
    log_dir: str | Path | None = None,
    run_logger: KilnLogger | None = None,
) -> RunResult:
    """Bring every target in the plan up to date.

    Args:
        plan: The plan (transforms are expanded) or an already-built graph.
        storage: Cache backend holding values and fingerprints.
        workers: Maximum number of targets built at once (1 = sequential).
        targets: Build only these targets and their upstream dependencies.
        executor: "thread" or "process" worker pool when workers > 1.
        hash_algorithm: Fingerprint hash function.
        force: Rebuild every requested target regardless of the cache.
        verbosity: Console verbosity (0=quiet, 1=per target, 2=debug).
        log_dir: Directory for the JSONL event log.
        run_logger: Pre-configured logger (overrides verbosity/log_dir).

    Returns:
        RunResult with per-target states and timings. Failed targets do not
        raise; PlanError and MissingDependencyError do, before anything runs.
    """
    start_time = time.time()
    graph = plan if isinstance(plan, DependencyGraph) else build_graph(plan)
    if targets:
        graph = graph.subgraph(list(targets))

    run_logger = run_logger or KilnLogger(
        verbosity=Verbosity(min(verbosity, Verbosity.DEBUG)),
        log_dir=Path(log_dir) if log_dir is not None else None,
    )
    run_logger.run_start(graph.plan.name, len(graph), workers)
    logger.debug("Running %s against %s", graph.plan.name, storage.describe())

    scheduler = _Scheduler(
        graph, storage, workers, executor, hash_algorithm, force, run_logger,
    )
    try:
        scheduler.run()
    finally:
        total_time = time.time() - start_time
        run_logger.run_finish(total_time)

    return RunResult(
        plan_name=graph.plan.name,
        targets=scheduler.results,
        total_time=total_time,
        run_log=run_logger.run_log.to_dict(),
    )


def load_target(storage: Storage, name: str) -> Any:
    """Read a target's cached value. Raises KeyError if it was never built."""
    return storage.get(name)


def clean(storage: Storage, *names: str) -> list[str]:
    """Delete cache entries; every entry when no names are given.

    Returns the names actually removed.
    """
    keys = list(names) if names else storage.list_keys()
    removed = [key for key in keys if storage.delete(key)]
    logger.debug("Removed %d cache entries from %s", len(removed), storage.describe())
    return removed


def build_times(storage: Storage) -> dict[str, float]:
    """Seconds each cached target took on its last build."""
    times: dict[str, float] = {}
    for key in storage.list_keys():
        entry = storage.stat(key)
        if entry is not None:
            times[key] = entry.seconds
    return times
