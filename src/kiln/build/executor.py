"""Target execution: sequential, threaded and multi-process worker pools."""

from __future__ import annotations

import time
import traceback
from abc import ABC, abstractmethod
from concurrent.futures import Future, ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any

from kiln.build.fingerprint import DEFAULT_ALGORITHM, hash_files
from kiln.core.errors import StorageError
from kiln.core.models import Command, file_in, file_out
from kiln.storage.base import Storage


@dataclass
class Job:
    """Everything a worker needs to build one target.

    Upstream values are resolved by the coordinator before dispatch; the
    worker never reads the cache.
    """

    name: str
    command: Command
    arguments: dict[str, Any] = field(default_factory=dict)
    env: dict[str, Any] = field(default_factory=dict)
    fingerprint: dict = field(default_factory=dict)
    format: str = "pickle"
    file_out: list[str] = field(default_factory=list)
    algorithm: str = DEFAULT_ALGORITHM
    # set when the worker may write its own entry directly
    store: Storage | None = None


@dataclass
class JobResult:
    """Outcome of a job, returned from the worker to the coordinator."""

    name: str
    value: Any = None
    error: BaseException | None = None
    traceback: str | None = None
    seconds: float = 0.0
    files_out: dict[str, str] = field(default_factory=dict)
    stored: bool = False

    @property
    def success(self) -> bool:
        return self.error is None


def invoke(job: Job) -> Any:
    """Run the target's command with its resolved inputs.

    Expression commands are evaluated with ``eval`` over the plan's
    environment and upstream values. They carry the same trust as the plan
    file that declares them: never build a plan from an untrusted source.
    """
    if isinstance(job.command, str):
        namespace = {**job.env, "file_in": file_in, "file_out": file_out, **job.arguments}
        return eval(compile(job.command, f"<target {job.name}>", "eval"), namespace)
    return job.command(**job.arguments)


def execute_job(job: Job) -> JobResult:
    """Build one target. Never raises: failures come back in the result."""
    start = time.perf_counter()
    try:
        value = invoke(job)
    except Exception as exc:
        return JobResult(
            name=job.name,
            error=exc,
            traceback=traceback.format_exc(),
            seconds=time.perf_counter() - start,
        )
    seconds = time.perf_counter() - start
    result = JobResult(
        name=job.name,
        value=value,
        seconds=seconds,
        files_out=hash_files(job.file_out, job.algorithm),
    )
    if job.store is not None:
        try:
            job.store.put(
                job.name,
                value,
                job.fingerprint,
                format=job.format,
                seconds=seconds,
                metadata={"files_out": result.files_out},
            )
        except StorageError as exc:
            result.error = exc
            result.traceback = traceback.format_exc()
        else:
            result.stored = True
    return result


class JobExecutor(ABC):
    """Abstract base for worker pools.

    ``shares_memory`` is True when workers run inside the coordinating
    process (and can therefore write to in-memory stores).
    """

    shares_memory: bool = True

    def __init__(self, workers: int = 1) -> None:
        self.workers = max(1, workers)

    @abstractmethod
    def submit(self, job: Job) -> Future:
        """Schedule a job and return a future resolving to its JobResult."""
        ...

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        pass

    def __enter__(self) -> JobExecutor:
        return self

    def __exit__(self, *exc: object) -> None:
        self.shutdown(wait=True)


class SequentialExecutor(JobExecutor):
    """Run each job inline, one at a time."""

    def __init__(self) -> None:
        super().__init__(1)

    def submit(self, job: Job) -> Future:
        future: Future = Future()
        future.set_result(execute_job(job))
        return future


class ThreadExecutor(JobExecutor):
    """Run jobs on a thread pool."""

    def __init__(self, workers: int) -> None:
        super().__init__(workers)
        self._pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="kiln")

    def submit(self, job: Job) -> Future:
        return self._pool.submit(execute_job, job)

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=cancel_futures)


class ProcessExecutor(JobExecutor):
    """Run jobs in worker processes. Commands and values must be picklable."""

    shares_memory = False

    def __init__(self, workers: int) -> None:
        super().__init__(workers)
        self._pool = ProcessPoolExecutor(max_workers=self.workers)

    def submit(self, job: Job) -> Future:
        return self._pool.submit(execute_job, job)

    def shutdown(self, wait: bool = True, cancel_futures: bool = False) -> None:
        self._pool.shutdown(wait=wait, cancel_futures=cancel_futures)


EXECUTORS = ("thread", "process")


def create_executor(workers: int = 1, kind: str = "thread") -> JobExecutor:
    """Factory to create the appropriate executor.

    Returns SequentialExecutor if workers <= 1, otherwise a thread or
    process pool of that size.
    """
    if kind not in EXECUTORS:
        raise ValueError(f"Unknown executor: {kind}. Available: {list(EXECUTORS)}")
    if workers <= 1:
        return SequentialExecutor()
    if kind == "process":
        return ProcessExecutor(workers)
    return ThreadExecutor(workers)
