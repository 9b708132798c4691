# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Compiler - Transform workflow YAML + unit contracts into a WorkflowPlan.

Order of work:
1. Validate job declarations and the job-level `needs` graph (cycles)
2. Select the trigger and the jobs it schedules
3. Expand matrices, so every instance inherits its template's edges
4. Check each instance against its unit contract (inputs, secrets)
5. Resolve compile-time references in unit steps

Resolves compile-time references:
- @inputs.* and {inputs.*} from the node's resolved inputs (in unit steps)
- @inputs.* and {inputs.*} from workflow inputs (in job `with:`)
- @matrix.* and {matrix.*} from the instance's matrix values

Preserves @secrets.* and @run.* for runtime resolution by the executor.
"""

import itertools
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import yaml

from relay.contracts import IDENT_PATTERN, is_positive_int, iter_strings, parse_inputs, validate_name
from relay.errors import CompileError, ContractViolation
from relay.graph import JobGraph
from relay.runner import find_placeholders, substitute
from relay.schemas import InputSpec, JobNode, StepInstance, UnitContract, WorkflowPlan
from relay.triggers import Trigger, parse_triggers, select_trigger


logger = logging.getLogger(__name__)

_JOB_KEYS = {
    "uses", "needs", "with", "secrets", "matrix", "always",
    "optional", "continue_on_error", "timeout_minutes", "description",
}


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def load_workflow_yaml(workflow: str, workflows_dir: Path) -> Dict[str, Any]:
    """Load a workflow definition by ID or by path to a YAML file."""
    candidate = Path(workflow).expanduser()
    if candidate.suffix in (".yaml", ".yml") and candidate.exists():
        path = candidate
    else:
        path = Path(workflows_dir).expanduser() / f"{workflow}.yaml"
    if not path.exists():
        raise CompileError(f"Workflow not found: {workflow}")
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as e:
        raise CompileError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise CompileError(f"Workflow definition {path} must contain a YAML mapping")
    return data


def list_workflows(workflows_dir: Path) -> List[str]:
    """Names of all workflow definitions in a directory."""
    workflows_dir = Path(workflows_dir).expanduser()
    if not workflows_dir.exists():
        return []
    return sorted(p.stem for p in workflows_dir.glob("*.yaml"))


# =============================================================================
# Reference resolution
# =============================================================================

def _resolve_value(value: Any, scopes: Dict[str, Dict[str, Any]], where: str) -> Any:
    """
    Recursively resolve compile-time references in a value.

    A string that is exactly "@ns.key" is replaced by the typed value.
    Placeholders "{ns.key}" inside longer strings are substituted as text.
    @secrets.* and @run.* are preserved for runtime.
    """
    if isinstance(value, str):
        if value.startswith("@secrets.") or value.startswith("@run."):
            return value
        if value.startswith("@"):
            return _resolve_reference(value, scopes, where)
        variables = {
            f"{ns}.{key}": "" if v is None else v
            for ns, scope in scopes.items()
            for key, v in scope.items()
        }
        unresolved = [p for p in find_placeholders(value) if p not in variables]
        if unresolved:
            raise ContractViolation(
                f"{where}: unresolved reference {{{unresolved[0]}}}"
            )
        return substitute(value, variables)
    elif isinstance(value, dict):
        return {k: _resolve_value(v, scopes, where) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_value(v, scopes, where) for v in value]
    else:
        return value


def _resolve_reference(ref: str, scopes: Dict[str, Dict[str, Any]], where: str) -> Any:
    """
    Resolve a full-value reference.

    Examples:
        @matrix.service -> scopes["matrix"]["service"]
        @inputs.push -> scopes["inputs"]["push"] (keeps its boolean type)
    """
    namespace, _, key = ref[1:].partition(".")
    if namespace not in scopes:
        raise ContractViolation(f"{where}: unknown namespace in reference {ref}")
    scope = scopes[namespace]
    if key not in scope:
        raise ContractViolation(f"{where}: unresolved reference {ref}")
    return scope[key]


# =============================================================================
# Input and secret contracts
# =============================================================================

def bind_inputs(
    specs: Mapping[str, InputSpec],
    given: Mapping[str, Any],
    owner: str,
) -> Dict[str, Any]:
    """
    Check supplied values against an input contract and apply defaults.

    Raises:
        ContractViolation: Undeclared input, wrong type, or a required
            input with neither a value nor a default
    """
    undeclared = sorted(set(given) - set(specs))
    if undeclared:
        raise ContractViolation(f"{owner}: undeclared input '{undeclared[0]}'")

    bound: Dict[str, Any] = {}
    for name, spec in specs.items():
        value = given.get(name, spec.default)
        if value is None:
            if spec.required:
                raise ContractViolation(f"{owner}: required input '{name}' has no value and no default")
            bound[name] = None
            continue
        if not spec.accepts(value):
            raise ContractViolation(
                f"{owner}: input '{name}' expects {spec.type}, got {type(value).__name__} {value!r}"
            )
        bound[name] = value
    return bound


def _bind_secrets(
    job_id: str,
    raw: Any,
    contract: UnitContract,
    workflow_secrets: Iterable[str],
) -> Dict[str, str]:
    """Map each unit secret to the workflow secret its caller passes."""
    owner = f"job '{job_id}'"
    if raw == "inherit":
        raise ContractViolation(
            f"{owner}: secrets must be passed explicitly, 'inherit' is not supported"
        )
    raw = raw or {}
    if not isinstance(raw, dict):
        raise CompileError(f"{owner}: secrets must be a mapping")

    bound = {}
    for unit_secret, ref in raw.items():
        if unit_secret not in contract.secrets:
            raise ContractViolation(
                f"{owner}: unit '{contract.name}' does not declare secret '{unit_secret}'"
            )
        if not isinstance(ref, str):
            raise CompileError(f"{owner}: secret '{unit_secret}' must reference a workflow secret")
        name = ref[len("@secrets."):] if ref.startswith("@secrets.") else ref
        if name not in workflow_secrets:
            raise ContractViolation(
                f"{owner}: passes secret '{name}' which the workflow does not declare"
            )
        bound[unit_secret] = name

    missing = sorted(contract.secrets - set(bound))
    if missing:
        raise ContractViolation(
            f"{owner}: unit '{contract.name}' requires secret '{missing[0]}' which is not passed"
        )
    return bound


# =============================================================================
# Matrix expansion
# =============================================================================

def expand_matrix(job_id: str, matrix: Any) -> List[Dict[str, Any]]:
    """
    Expand a matrix declaration into one value dict per instance.

    `{service: [a, b]}` gives two instances; several keys give their
    cartesian product in declaration order. No matrix gives one instance.
    """
    if not matrix:
        return [{}]
    if not isinstance(matrix, dict):
        raise CompileError(f"job '{job_id}': matrix must be a mapping of key -> list")

    keys = list(matrix)
    for key in keys:
        values = matrix[key]
        if not IDENT_PATTERN.match(str(key)):
            raise CompileError(f"job '{job_id}': invalid matrix key '{key}'")
        if not isinstance(values, list) or not values:
            raise CompileError(f"job '{job_id}': matrix '{key}' must be a non-empty list")
        if len(set(map(str, values))) != len(values):
            raise CompileError(f"job '{job_id}': matrix '{key}' has duplicate values")
        for v in values:
            if isinstance(v, (dict, list)) or v is None:
                raise CompileError(f"job '{job_id}': matrix '{key}' values must be scalars")

    return [dict(zip(keys, combo)) for combo in itertools.product(*(matrix[k] for k in keys))]


def node_id_for(job_id: str, values: Dict[str, Any]) -> str:
    """`build` for a plain job, `build[api]` or `build[api,linux]` for matrix instances."""
    if not values:
        return job_id
    return f"{job_id}[{','.join(str(v) for v in values.values())}]"


def _agrees(a: Dict[str, Any], b: Dict[str, Any]) -> bool:
    """True if two matrix instances agree on every shared key."""
    return all(a[k] == b[k] for k in set(a) & set(b))


# =============================================================================
# Compilation
# =============================================================================

def _job_defs(workflow_def: Dict[str, Any], workflow_id: str) -> Dict[str, Dict[str, Any]]:
    jobs = workflow_def.get("jobs")
    if not isinstance(jobs, dict) or not jobs:
        raise CompileError(f"Workflow '{workflow_id}' must declare at least one job")
    parsed = {}
    for job_id, job in jobs.items():
        validate_name(job_id, "job")
        if not isinstance(job, dict):
            raise CompileError(f"job '{job_id}' must be a mapping")
        job = dict(job)
        unknown = sorted(set(job) - _JOB_KEYS)
        if unknown:
            raise CompileError(f"job '{job_id}': unknown key '{unknown[0]}'")
        if not job.get("uses"):
            raise CompileError(f"job '{job_id}' must name a unit in 'uses'")
        needs = job.get("needs") or []
        if isinstance(needs, str):
            needs = [needs]
        if not isinstance(needs, list):
            raise CompileError(f"job '{job_id}': needs must be a list of job ids")
        job["needs"] = needs
        parsed[job_id] = job
    return parsed


def _compile_steps(contract: UnitContract, inputs: Dict[str, Any], node_id: str) -> Tuple[StepInstance, ...]:
    scopes = {"inputs": inputs}
    steps = []
    for step in contract.steps:
        where = f"node '{node_id}' step '{step.step_id}'"
        params = _resolve_value(step.params, scopes, where)
        retention = params.get("retention_days")
        if step.op == "artifact.upload" and retention is not None and not is_positive_int(retention):
            raise ContractViolation(f"{where}: retention_days must be a positive integer, got {retention!r}")
        steps.append(StepInstance(
            step_id=step.step_id,
            op=step.op,
            params=params,
            timeout_s=step.timeout_s,
            continue_on_error=step.continue_on_error,
            always=step.always,
        ))
    return tuple(steps)


def compile_workflow(
    workflow_def: Dict[str, Any],
    units: Mapping[str, UnitContract],
    event: str = "push",
    branch: Optional[str] = None,
    inputs: Optional[Dict[str, Any]] = None,
    available_secrets: Optional[Iterable[str]] = None,
    default_timeout_minutes: Optional[int] = None,
) -> WorkflowPlan:
    """
    Compile workflow YAML -> WorkflowPlan.

    Every job is validated against its unit contract, whether or not the
    trigger schedules it, so a definition that compiles for one event is
    well-formed for all of them.

    Args:
        workflow_def: Parsed workflow YAML
        units: Unit contracts by name
        event: Triggering event kind (push, pull_request, manual)
        branch: Branch the event happened on, for branch filters
        inputs: Workflow inputs (manual trigger only)
        available_secrets: Secret names the caller can provide; None skips
            the availability check (lint)
        default_timeout_minutes: Node timeout when a job sets none

    Returns:
        WorkflowPlan; it has no nodes when the branch filter does not match

    Raises:
        CompileError, ContractViolation, CycleDetected
    """
    workflow_id = workflow_def.get("workflow")
    validate_name(workflow_id, "workflow")
    jobs = _job_defs(workflow_def, workflow_id)

    workflow_secrets = workflow_def.get("secrets") or []
    if not isinstance(workflow_secrets, list) or not all(
        isinstance(s, str) and IDENT_PATTERN.match(s) for s in workflow_secrets
    ):
        raise CompileError(f"Workflow '{workflow_id}': secrets must be a list of names")

    trigger: Trigger = select_trigger(
        parse_triggers(workflow_def.get("triggers"), workflow_id), event, workflow_id
    )

    # Job-level graph first: unknown needs and cycles are definition errors
    job_graph = JobGraph.from_needs({job_id: job["needs"] for job_id, job in jobs.items()})
    job_graph.validate()

    # Workflow inputs
    input_specs = parse_inputs(workflow_def.get("inputs"), f"workflow '{workflow_id}'")
    if inputs and event != "manual":
        raise ContractViolation(f"Workflow '{workflow_id}': inputs are only accepted by manual triggers")
    workflow_inputs = bind_inputs(input_specs, inputs or {}, f"workflow '{workflow_id}'")

    # Expand and check every job
    instances: Dict[str, List[Tuple[str, Dict[str, Any]]]] = {}
    nodes: Dict[str, JobNode] = {}
    for job_id in job_graph.nodes:
        job = jobs[job_id]
        unit_name = job["uses"]
        if unit_name not in units:
            raise CompileError(f"job '{job_id}' uses unknown unit '{unit_name}'")
        contract = units[unit_name]
        secrets = _bind_secrets(job_id, job.get("secrets"), contract, workflow_secrets)

        with_values = job.get("with") or {}
        if not isinstance(with_values, dict):
            raise CompileError(f"job '{job_id}': with must be a mapping")
        for text in iter_strings(with_values):
            if text.startswith("@secrets.") or text.startswith("@run."):
                raise ContractViolation(
                    f"job '{job_id}': '{text}' cannot be passed as an input"
                )

        timeout_minutes = job.get("timeout_minutes", default_timeout_minutes)
        if timeout_minutes is not None and (
            isinstance(timeout_minutes, bool) or not isinstance(timeout_minutes, (int, float)) or timeout_minutes <= 0
        ):
            raise CompileError(f"job '{job_id}': timeout_minutes must be a positive number")

        instances[job_id] = []
        for values in expand_matrix(job_id, job.get("matrix")):
            node_id = node_id_for(job_id, values)
            if node_id in nodes:
                raise CompileError(f"job '{job_id}': matrix produces duplicate node '{node_id}'")
            where = f"job '{job_id}'" if not values else f"node '{node_id}'"
            given = _resolve_value(
                with_values, {"matrix": values, "inputs": workflow_inputs}, where
            )
            bound = bind_inputs(contract.inputs, given, where)
            nodes[node_id] = JobNode(
                node_id=node_id,
                job_id=job_id,
                unit=unit_name,
                steps=_compile_steps(contract, bound, node_id),
                inputs=bound,
                secrets=secrets,
                matrix=values,
                always=bool(job.get("always", False)),
                optional=bool(job.get("optional", False)),
                continue_on_error=bool(job.get("continue_on_error", False)),
                timeout_s=max(1, int(timeout_minutes * 60)) if timeout_minutes else None,
            )
            instances[job_id].append((node_id, values))

    # Edges are resolved after expansion: build[a] needs test[a], not test[b]
    for job_id, job in jobs.items():
        for node_id, values in instances[job_id]:
            needs = []
            for pred_job in job["needs"]:
                needs.extend(
                    pred_id for pred_id, pred_values in instances[pred_job]
                    if _agrees(values, pred_values)
                )
            if job["needs"] and not needs:
                raise ContractViolation(
                    f"node '{node_id}' matches no instance of {', '.join(job['needs'])}; "
                    f"its matrix values must agree with a needed instance"
                )
            nodes[node_id].needs = tuple(sorted(set(needs)))

    # Trigger selection
    if not trigger.matches(branch):
        logger.info(f"Branch '{branch}' does not match {event} filter {list(trigger.branches)}")
        selected_jobs = set()
    else:
        selected_jobs = job_graph.closure(trigger.jobs or job_graph.nodes)

    selected = {nid: node for nid, node in nodes.items() if node.job_id in selected_jobs}

    if available_secrets is not None:
        available = set(available_secrets)
        for node in selected.values():
            for secret in node.secrets.values():
                if secret not in available:
                    raise ContractViolation(
                        f"node '{node.node_id}' needs secret '{secret}' which was not provided"
                    )

    node_graph = JobGraph.from_needs({nid: node.needs for nid, node in selected.items()})
    order = node_graph.topological_order()

    logger.debug(f"Compiled {workflow_id} for {event}: {len(order)} nodes")
    return WorkflowPlan(
        workflow_id=workflow_id,
        workflow_version=str(workflow_def.get("version", "1.0")),
        trigger=event,
        compiled_at=_utcnow(),
        nodes=selected,
        order=tuple(order),
        secrets=tuple(sorted({s for n in selected.values() for s in n.secrets.values()})),
    )


def lint_workflow(
    workflow_def: Dict[str, Any],
    units: Mapping[str, UnitContract],
) -> Dict[str, WorkflowPlan]:
    """
    Compile a workflow for every trigger it declares, using input defaults.

    Manual triggers with required inputs are compiled with placeholder
    values of the declared type so the rest of the contract is checked.

    Returns:
        Plan per event kind

    Raises:
        CompileError, ContractViolation, CycleDetected
    """
    workflow_id = workflow_def.get("workflow")
    validate_name(workflow_id, "workflow")
    triggers = parse_triggers(workflow_def.get("triggers"), workflow_id)
    specs = parse_inputs(workflow_def.get("inputs"), f"workflow '{workflow_id}'")
    placeholders = {"string": "lint", "number": 0, "boolean": False}
    sample_inputs = {
        name: placeholders[spec.type]
        for name, spec in specs.items()
        if spec.required and spec.default is None
    }

    plans = {}
    for event in triggers:
        plans[event] = compile_workflow(
            workflow_def,
            units,
            event=event,
            inputs=sample_inputs if event == "manual" else None,
        )
    return plans


def referenced_secrets(workflow_def: Dict[str, Any]) -> List[str]:
    """Secret names a workflow declares, for the CLI to collect."""
    return list(workflow_def.get("secrets") or [])

