# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Exception hierarchy for relay.

Composition-time errors (CompileError and subclasses) are raised before
any node executes. Run-time problems are recorded on outcomes and only
raised on request via RunRecord.raise_for_status().
"""

from typing import Optional


class RelayError(Exception):
    """Base class for all relay errors."""
    pass


class CompileError(RelayError):
    """Raised when a unit or workflow definition cannot be compiled."""
    pass


class ContractViolation(CompileError):
    """Raised when a caller breaks a unit or workflow contract.

    Undeclared inputs or secrets, unresolved required inputs, type
    mismatches and undeclared artifacts all end up here.
    """
    pass


class CycleDetected(CompileError):
    """Raised when the `needs` edges of a workflow form a cycle."""

    def __init__(self, cycle):
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {' -> '.join(self.cycle)}")


class ArtifactNotFound(RelayError):
    """Raised when an artifact is absent or past its retention window."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Artifact not found: {name}")


class ArtifactConflict(RelayError):
    """Raised when a node publishes a name owned by another node of the run."""
    pass


class NodeFailure(RelayError):
    """A job node did not succeed."""

    def __init__(self, node_id: str, status: str, error: Optional[str] = None):
        self.node_id = node_id
        self.status = status
        self.error = error
        message = f"Node '{node_id}' {status}"
        if error:
            message = f"{message}: {error}"
        super().__init__(message)
