# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""Unit definition loading and contract validation.

A unit definition is a YAML file <units_dir>/<name>.yaml. Every reference a
unit makes to its own inputs, secrets and artifacts is checked here, so a
unit that loads is internally consistent.
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterator, List, Tuple

import yaml

from relay.errors import CompileError, ContractViolation
from relay.runner import find_placeholders
from relay.schemas import INPUT_TYPES, InputSpec, StepInstance, UnitContract


logger = logging.getLogger(__name__)

# Unit and job names: lowercase alphanumeric with hyphens only
NAME_PATTERN = re.compile(r"^[a-z0-9-]+$")

# Secret and input names: identifier style
IDENT_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

KNOWN_OPS = ("shell", "artifact.upload", "artifact.download")

_REQUIRED_PARAMS = {
    "shell": ("run",),
    "artifact.upload": ("name", "path"),
    "artifact.download": ("name", "path"),
}


def validate_name(name: str, kind: str = "unit") -> None:
    """Validate a unit or job name.

    Raises:
        CompileError: If name is not [a-z0-9-]+
    """
    if not name or not isinstance(name, str):
        raise CompileError(f"{kind} name cannot be empty")
    if not NAME_PATTERN.match(name):
        raise CompileError(
            f"{kind} name must be lowercase alphanumeric with hyphens only "
            f"([a-z0-9-]+), got: {name}"
        )


def parse_inputs(raw: Any, owner: str) -> Dict[str, InputSpec]:
    """Parse an `inputs:` mapping into InputSpecs.

    Used for both unit inputs and workflow (manual trigger) inputs.
    """
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise CompileError(f"{owner}: inputs must be a mapping")

    specs = {}
    for name, data in raw.items():
        if not IDENT_PATTERN.match(str(name)):
            raise CompileError(f"{owner}: invalid input name '{name}'")
        data = data or {}
        if not isinstance(data, dict):
            raise CompileError(f"{owner}: input '{name}' must be a mapping")

        input_type = data.get("type", "string")
        if input_type not in INPUT_TYPES:
            raise CompileError(
                f"{owner}: input '{name}' has unknown type '{input_type}' "
                f"(expected one of: {', '.join(INPUT_TYPES)})"
            )
        spec = InputSpec(
            name=name,
            type=input_type,
            required=bool(data.get("required", False)),
            default=data.get("default"),
            description=data.get("description"),
        )
        if spec.default is not None and not spec.accepts(spec.default):
            raise ContractViolation(
                f"{owner}: default for input '{name}' is not a {input_type}: {spec.default!r}"
            )
        specs[name] = spec
    return specs


def _name_set(raw: Any, owner: str, field_name: str, pattern=None) -> frozenset:
    if raw is None:
        return frozenset()
    if not isinstance(raw, list) or not all(isinstance(v, str) for v in raw):
        raise CompileError(f"{owner}: {field_name} must be a list of strings")
    if pattern is not None:
        for value in raw:
            if not pattern.match(value):
                raise CompileError(f"{owner}: invalid name in {field_name}: '{value}'")
    return frozenset(raw)


def iter_strings(value: Any) -> Iterator[str]:
    """Yield every string nested in a params structure."""
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from iter_strings(v)
    elif isinstance(value, list):
        for v in value:
            yield from iter_strings(v)


def is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def _parse_steps(raw: Any, owner: str) -> Tuple[StepInstance, ...]:
    if not isinstance(raw, list) or not raw:
        raise CompileError(f"{owner}: steps must be a non-empty list")

    steps = []
    seen = set()
    for index, data in enumerate(raw, 1):
        if not isinstance(data, dict):
            raise CompileError(f"{owner}: step {index} must be a mapping")
        step_id = data.get("step_id")
        if not step_id:
            raise CompileError(f"{owner}: step {index} has no step_id")
        if step_id in seen:
            raise CompileError(f"{owner}: duplicate step_id '{step_id}'")
        seen.add(step_id)

        op = data.get("op", "shell")
        if op not in KNOWN_OPS:
            raise CompileError(f"{owner}: step '{step_id}' has unknown op '{op}'")
        params = data.get("params") or {}
        if not isinstance(params, dict):
            raise CompileError(f"{owner}: step '{step_id}' params must be a mapping")
        missing = [p for p in _REQUIRED_PARAMS[op] if p not in params]
        if missing:
            raise CompileError(
                f"{owner}: step '{step_id}' ({op}) missing params: {', '.join(missing)}"
            )

        timeout_s = data.get("timeout_s")
        if timeout_s is not None and not is_positive_int(timeout_s):
            raise CompileError(
                f"{owner}: step '{step_id}' timeout_s must be a positive integer, got {timeout_s!r}"
            )
        retention = params.get("retention_days")
        if op == "artifact.upload" and retention is not None and not (
            is_positive_int(retention)
            or (isinstance(retention, str) and retention.startswith("@inputs."))
        ):
            raise CompileError(
                f"{owner}: step '{step_id}' retention_days must be a positive integer, got {retention!r}"
            )

        steps.append(StepInstance(
            step_id=step_id,
            op=op,
            params=params,
            timeout_s=timeout_s,
            continue_on_error=bool(data.get("continue_on_error", False)),
            always=bool(data.get("always", False)),
        ))
    return tuple(steps)


def check_references(contract: UnitContract) -> None:
    """Check every reference inside a unit's steps against its contract.

    - @inputs.x and {inputs.x} must name a declared input
    - @secrets.x must name a declared secret
    - @run.step must name an earlier step
    - uploaded artifact names must be declared in `artifacts`
    - downloaded artifact names must be declared in `consumes`

    Raises:
        ContractViolation: On the first undeclared reference
    """
    owner = f"unit '{contract.name}'"
    earlier: List[str] = []

    for step in contract.steps:
        where = f"{owner} step '{step.step_id}'"
        for text in iter_strings(step.params):
            if text.startswith("@inputs."):
                name = text[len("@inputs."):]
                if name not in contract.inputs:
                    raise ContractViolation(f"{where} references undeclared input '{name}'")
            elif text.startswith("@secrets."):
                name = text[len("@secrets."):]
                if name not in contract.secrets:
                    raise ContractViolation(f"{where} references undeclared secret '{name}'")
            elif text.startswith("@run."):
                ref_step = text[len("@run."):].split(".")[0]
                if ref_step not in earlier:
                    raise ContractViolation(f"{where} references unknown or later step '{ref_step}'")
            for placeholder in find_placeholders(text):
                namespace, _, name = placeholder.partition(".")
                if namespace != "inputs":
                    raise ContractViolation(f"{where} cannot use {{{placeholder}}} inside a unit")
                if name not in contract.inputs:
                    raise ContractViolation(f"{where} references undeclared input '{name}'")

        if step.op == "artifact.upload" and step.params["name"] not in contract.artifacts:
            raise ContractViolation(
                f"{where} uploads undeclared artifact '{step.params['name']}'"
            )
        if step.op == "artifact.download" and step.params["name"] not in contract.consumes:
            raise ContractViolation(
                f"{where} downloads undeclared artifact '{step.params['name']}'"
            )
        earlier.append(step.step_id)


def parse_unit(data: Dict[str, Any], source: str = "<memory>") -> UnitContract:
    """
    Build a validated UnitContract from a unit YAML mapping.

    Args:
        data: Parsed YAML
        source: Where the data came from, for error messages

    Returns:
        UnitContract

    Raises:
        CompileError: If the definition is malformed
        ContractViolation: If a step references something undeclared
    """
    if not isinstance(data, dict):
        raise CompileError(f"Unit definition {source} must contain a YAML mapping")

    name = data.get("unit")
    validate_name(name, "unit")
    owner = f"unit '{name}'"

    contract = UnitContract(
        name=name,
        description=data.get("description", ""),
        version=str(data.get("version", "1.0")),
        inputs=parse_inputs(data.get("inputs"), owner),
        secrets=_name_set(data.get("secrets"), owner, "secrets", IDENT_PATTERN),
        artifacts=_name_set(data.get("artifacts"), owner, "artifacts"),
        consumes=_name_set(data.get("consumes"), owner, "consumes"),
        steps=_parse_steps(data.get("steps"), owner),
    )
    check_references(contract)
    return contract


def load_unit(name: str, units_dir: Path) -> UnitContract:
    """Load a unit definition by name.

    Raises:
        CompileError: If the unit is missing or invalid
    """
    validate_name(name, "unit")
    path = Path(units_dir).expanduser() / f"{name}.yaml"
    if not path.exists():
        raise CompileError(f"Unit not found: {name} (searched {units_dir})")

    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise CompileError(f"Invalid YAML in {path}: {e}")

    contract = parse_unit(data, str(path))
    if contract.name != name:
        raise CompileError(f"Unit name '{contract.name}' does not match filename '{name}'")
    logger.debug(f"Loaded unit {name} from {path}")
    return contract


def list_units(units_dir: Path) -> List[str]:
    """Names of all unit definitions in a directory."""
    units_dir = Path(units_dir).expanduser()
    if not units_dir.exists():
        return []
    return sorted(p.stem for p in units_dir.glob("*.yaml"))


def load_units(units_dir: Path) -> Dict[str, UnitContract]:
    """Load and validate every unit in a directory."""
    return {name: load_unit(name, units_dir) for name in list_units(units_dir)}
