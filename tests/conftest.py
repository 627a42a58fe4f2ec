"""Shared test fixtures for Kiln."""

from __future__ import annotations

import os
import threading
from collections import Counter

import pytest

from kiln import Combine, Map, Plan
from kiln.config import reset_settings
from kiln.storage import DirectoryStorage, MemoryStorage, SQLiteStorage


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """Strip KILN_* variables and reset the settings cache around each test."""
    for key in list(os.environ):
        if key.startswith("KILN_"):
            monkeypatch.delenv(key)
    reset_settings()
    yield
    reset_settings()


@pytest.fixture
def cache_dir(tmp_path):
    """Cache directory for each test (not created up front)."""
    return tmp_path / "cache"


@pytest.fixture
def store(cache_dir):
    """Directory-backed store, the default backend."""
    return DirectoryStorage(cache_dir)


@pytest.fixture(params=["directory", "sqlite", "memory"])
def any_store(request, tmp_path):
    """Each backend in turn."""
    if request.param == "directory":
        storage = DirectoryStorage(tmp_path / "cache")
    elif request.param == "sqlite":
        storage = SQLiteStorage(tmp_path / "cache.db")
    else:
        storage = MemoryStorage()
    yield storage
    storage.close()


class CallLog:
    """Thread-safe record of which commands ran."""

    def __init__(self):
        self._lock = threading.Lock()
        self.counts: Counter = Counter()

    def record(self, name: str) -> None:
        with self._lock:
            self.counts[name] += 1

    def names(self) -> set[str]:
        return set(self.counts)

    def reset(self) -> None:
        with self._lock:
            self.counts.clear()


@pytest.fixture
def calls():
    return CallLog()


@pytest.fixture
def model_plan(calls):
    """data -> rec -> model_16 / model_32 -> combined."""

    def load_data():
        calls.record("data")
        return [1.0, 2.0, 3.0, 4.0]

    def prepare_recipe(data):
        calls.record("rec")
        return [x / max(data) for x in data]

    def fit_model(rec, units):
        calls.record(f"model_{units}")
        return {"units": units, "score": sum(rec) * units}

    def compare(models):
        calls.record("combined")
        return sorted(m["score"] for m in models)

    plan = Plan("models")
    plan.env.update(
        load_data=load_data,
        prepare_recipe=prepare_recipe,
        fit_model=fit_model,
        compare=compare,
    )
    plan.target("data", "load_data()")
    plan.target("rec", "prepare_recipe(data)")
    plan.target("model", "fit_model(rec, units=units)", transform=Map(units=[16, 32]))
    plan.target("combined", "compare(model)", transform=Combine("model"))
    return plan
