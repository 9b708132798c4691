# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Job node, plan and run record schemas.

Follows the compile/execute split:
- Unit + workflow YAML -> compile -> WorkflowPlan (JobNodes) -> execute -> RunRecord
- @inputs.*, @matrix.* resolved at compile time
- @secrets.* and @run.* resolved at execute time
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from relay.errors import NodeFailure


@dataclass
class StepInstance:
    """A compiled step ready for execution.

    Only @secrets.* and @run.* refs may remain in params.
    """
    step_id: str
    op: str  # e.g., "shell", "artifact.upload"
    params: Dict[str, Any] = field(default_factory=dict)
    timeout_s: Optional[int] = None
    continue_on_error: bool = False
    always: bool = False  # run even after an earlier step failed


@dataclass
class JobNode:
    """One schedulable invocation of a unit within a workflow run."""
    node_id: str
    job_id: str
    unit: str
    steps: Tuple[StepInstance, ...] = ()
    inputs: Dict[str, Any] = field(default_factory=dict)
    secrets: Dict[str, str] = field(default_factory=dict)  # unit secret -> workflow secret
    matrix: Dict[str, Any] = field(default_factory=dict)
    needs: Tuple[str, ...] = ()
    always: bool = False
    optional: bool = False
    continue_on_error: bool = False
    timeout_s: Optional[int] = None


@dataclass
class WorkflowPlan:
    """A compiled, validated job graph for one trigger."""
    workflow_id: str
    workflow_version: str
    trigger: str
    compiled_at: datetime
    nodes: Dict[str, JobNode]
    order: Tuple[str, ...]  # deterministic topological order
    secrets: Tuple[str, ...] = ()

    def node(self, node_id: str) -> JobNode:
        return self.nodes[node_id]

    def dependents(self, node_id: str) -> List[str]:
        """Node ids that list node_id in their needs, in plan order."""
        return [n for n in self.order if node_id in self.nodes[n].needs]


@dataclass
class ArtifactHandle:
    """Opaque reference returned by an artifact store on publish."""
    name: str
    producer: str
    location: str
    retention_days: int
    created_at: datetime


@dataclass
class StepOutcome:
    """Result of executing a single step."""
    step_id: str
    status: str  # "completed", "failed", "skipped"
    output: Any = None
    error: Optional[str] = None


@dataclass
class NodeOutcome:
    """Result of a single job node."""
    node_id: str
    status: str  # "succeeded", "failed", "skipped", "cancelled"
    steps: List[StepOutcome] = field(default_factory=list)
    error: Optional[str] = None
    permitted: bool = False  # optional node, or failed with continue_on_error
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass
class RunRecord:
    """Result of executing a workflow plan."""
    run_id: str
    workflow_id: str
    trigger: str
    success: bool
    started_at: datetime
    completed_at: Optional[datetime] = None
    outcomes: List[NodeOutcome] = field(default_factory=list)
    execution_order: List[str] = field(default_factory=list)

    def outcome(self, node_id: str) -> NodeOutcome:
        for outcome in self.outcomes:
            if outcome.node_id == node_id:
                return outcome
        raise KeyError(f"No outcome for node: {node_id}")

    def raise_for_status(self) -> None:
        """Raise NodeFailure for the first blocking node that did not succeed."""
        if self.success:
            return
        for outcome in self.outcomes:
            if outcome.status != "succeeded" and not outcome.permitted:
                raise NodeFailure(outcome.node_id, outcome.status, outcome.error)
        raise NodeFailure(self.workflow_id, "failed")
