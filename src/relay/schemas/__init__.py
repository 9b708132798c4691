# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Relay schemas."""

from relay.schemas.contract import (
    INPUT_TYPES,
    InputSpec,
    UnitContract,
)
from relay.schemas.job_def import (
    ArtifactHandle,
    JobNode,
    NodeOutcome,
    RunRecord,
    StepInstance,
    StepOutcome,
    WorkflowPlan,
)

__all__ = [
    "INPUT_TYPES",
    "InputSpec",
    "UnitContract",
    "ArtifactHandle",
    "JobNode",
    "NodeOutcome",
    "RunRecord",
    "StepInstance",
    "StepOutcome",
    "WorkflowPlan",
]
