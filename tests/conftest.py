"""Shared fixtures for relay tests.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import pytest

from relay.artifacts import LocalArtifactStore
from relay.contracts import parse_unit


@pytest.fixture
def make_unit():
    """Factory for in-memory unit contracts made of shell steps."""

    def _make(name, *commands, steps=None, **fields):
        all_steps = [
            {"step_id": f"step{i}", "op": "shell", "params": {"run": command}}
            for i, command in enumerate(commands, 1)
        ]
        all_steps.extend(steps or [])
        data = {"unit": name, "steps": all_steps}
        data.update(fields)
        return parse_unit(data)

    return _make


@pytest.fixture
def make_workflow():
    """Factory for workflow definitions triggered by push and manual."""

    def _make(jobs, **fields):
        data = {
            "workflow": "test-flow",
            "triggers": {"push": {}, "manual": {}},
            "jobs": jobs,
        }
        data.update(fields)
        return data

    return _make


@pytest.fixture
def store(tmp_path):
    return LocalArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir()
    return path
