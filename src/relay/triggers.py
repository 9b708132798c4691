# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Trigger resolution.

A workflow declares which events start it:

    triggers:
      push:
        branches: [main, "release/*"]
      pull_request:
        branches: [main]
        jobs: [test, scan]
      manual: {}

Each event kind maps to a fixed list of top-level jobs (all jobs when
`jobs` is omitted). Branch filters are glob patterns.
"""

from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Dict, Optional, Tuple

from relay.errors import CompileError


EVENT_KINDS = ("push", "pull_request", "manual")


@dataclass(frozen=True)
class Trigger:
    """A resolved trigger declaration."""
    event: str
    branches: Tuple[str, ...] = ()
    jobs: Tuple[str, ...] = ()

    def matches(self, branch: Optional[str]) -> bool:
        """True if branch passes the filter; no filter or no branch always passes."""
        if not self.branches or branch is None:
            return True
        return any(fnmatchcase(branch, pattern) for pattern in self.branches)


def parse_triggers(raw: Any, workflow_id: str) -> Dict[str, Trigger]:
    """Parse a workflow's `triggers:` mapping.

    Raises:
        CompileError: On unknown event kinds or malformed filters
    """
    if not raw:
        raise CompileError(f"Workflow '{workflow_id}' declares no triggers")
    if not isinstance(raw, dict):
        raise CompileError(f"Workflow '{workflow_id}': triggers must be a mapping")

    triggers = {}
    for event, data in raw.items():
        if event not in EVENT_KINDS:
            raise CompileError(
                f"Workflow '{workflow_id}': unknown trigger '{event}' "
                f"(expected one of: {', '.join(EVENT_KINDS)})"
            )
        data = data or {}
        if not isinstance(data, dict):
            raise CompileError(f"Workflow '{workflow_id}': trigger '{event}' must be a mapping")

        branches = data.get("branches") or []
        jobs = data.get("jobs") or []
        for field_name, values in (("branches", branches), ("jobs", jobs)):
            if not isinstance(values, list) or not all(isinstance(v, str) for v in values):
                raise CompileError(
                    f"Workflow '{workflow_id}': trigger '{event}' {field_name} must be a list of strings"
                )
        triggers[event] = Trigger(event=event, branches=tuple(branches), jobs=tuple(jobs))
    return triggers


def select_trigger(triggers: Dict[str, Trigger], event: str, workflow_id: str) -> Trigger:
    """Return the trigger for an event kind.

    Raises:
        CompileError: If the event is unknown or the workflow does not declare it
    """
    if event not in EVENT_KINDS:
        raise CompileError(f"Unknown event kind: {event}")
    if event not in triggers:
        declared = ", ".join(sorted(triggers)) or "none"
        raise CompileError(
            f"Workflow '{workflow_id}' is not triggered by '{event}' (declared: {declared})"
        )
    return triggers[event]
