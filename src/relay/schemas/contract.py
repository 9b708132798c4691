# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Unit contract schemas.

A unit is a reusable job template: a typed input contract, the secrets it
needs its caller to pass, the artifacts it produces and consumes, and a
fixed sequence of steps.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Tuple

from relay.schemas.job_def import StepInstance


# Input type name -> accepted Python types
INPUT_TYPES = {
    "string": (str,),
    "number": (int, float),
    "boolean": (bool,),
}


@dataclass(frozen=True)
class InputSpec:
    """A single declared input of a unit or workflow."""
    name: str
    type: str = "string"
    required: bool = False
    default: Any = None
    description: Optional[str] = None

    def accepts(self, value: Any) -> bool:
        """Return True if value matches the declared type."""
        if self.type == "number" and isinstance(value, bool):
            # bool is an int subclass
            return False
        return isinstance(value, INPUT_TYPES[self.type])


@dataclass(frozen=True)
class UnitContract:
    """A validated unit definition.

    artifacts and consumes hold name templates; `{inputs.x}` placeholders
    are substituted per job node.
    """
    name: str
    description: str = ""
    inputs: Dict[str, InputSpec] = field(default_factory=dict)
    secrets: FrozenSet[str] = frozenset()
    artifacts: FrozenSet[str] = frozenset()
    consumes: FrozenSet[str] = frozenset()
    steps: Tuple[StepInstance, ...] = ()
    version: str = "1.0"

    @property
    def required_inputs(self) -> Tuple[str, ...]:
        """Names of inputs that must be supplied by the caller."""
        return tuple(
            name for name, spec in self.inputs.items()
            if spec.required and spec.default is None
        )
