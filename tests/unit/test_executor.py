"""Tests for job execution: sequential, threaded and process pools."""

from __future__ import annotations

import threading

import pytest

from kiln.build.executor import (
    Job,
    ProcessExecutor,
    SequentialExecutor,
    ThreadExecutor,
    create_executor,
    execute_job,
    invoke,
)
from kiln.storage import MemoryStorage

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def double(value):
    return value * 2


def explode():
    raise RuntimeError("boom")


class TestInvoke:
    def test_callable(self):
        assert invoke(Job(name="d", command=double, arguments={"value": 4})) == 8

    def test_expression_sees_arguments_and_env(self):
        job = Job(name="e", command="scale * sum(rec)", arguments={"rec": [1, 2]}, env={"scale": 10})
        assert invoke(job) == 30

    def test_expression_file_markers(self, tmp_path):
        path = str(tmp_path / "out.txt")
        job = Job(name="f", command=f"file_out({path!r})")
        assert invoke(job) == path


class TestExecuteJob:
    def test_success(self):
        result = execute_job(Job(name="d", command=double, arguments={"value": 3}))
        assert result.success
        assert result.value == 6
        assert result.seconds >= 0
        assert result.stored is False

    def test_failure_captured(self):
        """Command exceptions come back in the result, never raised."""
        result = execute_job(Job(name="x", command=explode))
        assert not result.success
        assert isinstance(result.error, RuntimeError)
        assert "boom" in result.traceback

    def test_writes_to_store(self):
        store = MemoryStorage()
        fingerprint = {"scheme": "kiln:test:v1", "digest": "abc", "components": {}}
        result = execute_job(Job(name="d", command=double, arguments={"value": 1}, fingerprint=fingerprint, store=store))
        assert result.stored is True
        assert store.get("d") == 2
        assert store.get_entry("d").fingerprint == fingerprint

    def test_failure_not_stored(self):
        store = MemoryStorage()
        execute_job(Job(name="x", command=explode, store=store))
        assert not store.exists("x")

    def test_hashes_output_files(self, tmp_path):
        path = tmp_path / "out.txt"
        path.write_text("data")
        result = execute_job(Job(name="f", command="1", file_out=[str(path)]))
        assert list(result.files_out) == [str(path)]
        assert result.files_out[str(path)] != "missing"


class TestCreateExecutor:
    def test_sequential_for_one_worker(self):
        assert isinstance(create_executor(1), SequentialExecutor)
        assert isinstance(create_executor(0, "process"), SequentialExecutor)

    def test_thread_pool(self):
        executor = create_executor(4)
        try:
            assert isinstance(executor, ThreadExecutor)
            assert executor.workers == 4
            assert executor.shares_memory
        finally:
            executor.shutdown()

    def test_process_pool(self):
        executor = create_executor(2, "process")
        try:
            assert isinstance(executor, ProcessExecutor)
            assert executor.shares_memory is False
        finally:
            executor.shutdown()

    def test_unknown_kind(self):
        with pytest.raises(ValueError, match="Unknown executor"):
            create_executor(2, "gpu")


class TestThreadExecutor:
    def test_runs_concurrently(self):
        """Independent jobs overlap on the thread pool."""
        barrier = threading.Barrier(3, timeout=5)

        def wait_for_others():
            barrier.wait()
            return threading.current_thread().name

        with create_executor(3) as executor:
            futures = [executor.submit(Job(name=f"j{i}", command=wait_for_others)) for i in range(3)]
            results = [f.result(timeout=10) for f in futures]

        assert all(r.success for r in results)
        assert all(r.value.startswith("kiln") for r in results)

    def test_sequential_runs_inline(self):
        future = SequentialExecutor().submit(Job(name="d", command=double, arguments={"value": 2}))
        assert future.done()
        assert future.result().value == 4


class TestProcessExecutor:
    def test_expression_job(self):
        with create_executor(2, "process") as executor:
            result = executor.submit(Job(name="s", command="sum(values)", arguments={"values": [1, 2, 3]})).result(
                timeout=60
            )
        assert result.success
        assert result.value == 6
