# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Executor - Run a compiled WorkflowPlan.

Schedules job nodes whose predecessors are all terminal on a thread pool.
Within a node, resolves @secrets.* and @run.* references at runtime and
dispatches each step's op. Produces a RunRecord with node outcomes.

Skip policy: a node whose predecessor failed, was skipped or was cancelled
is skipped, unless the node is marked `always`. A predecessor marked
`continue_on_error` that failed does not block its dependents.
"""

import csv
import json
import logging
import re
import shutil
import subprocess
import sys
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from relay.artifacts import ArtifactStore
from relay.errors import ArtifactConflict, ArtifactNotFound
from relay.event_client import EventClient
from relay.runner import MASK, CommandCancelled, CommandRunner, expand_path
from relay.schemas import JobNode, NodeOutcome, RunRecord, StepInstance, StepOutcome, WorkflowPlan


logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 7


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# @run.* and @secrets.* Resolution
# =============================================================================

# Pattern for @run.* references: @run.step_id.path.to.value
# Supports array indexing: @run.step_id.items[0].field
RUN_REF_PATTERN = re.compile(r"@run\.([a-zA-Z_][a-zA-Z0-9_.\-\[\]]*)")


def _resolve_run_refs(value: Any, step_outputs: Dict[str, Any]) -> Any:
    """
    Resolve @run.* references using previous step outputs.

    @run.step_id.path -> step_outputs["step_id"]["path"]
    @run.step_id.items[0].field -> step_outputs["step_id"]["items"][0]["field"]
    """
    if isinstance(value, str):
        if value.startswith("@run."):
            match = RUN_REF_PATTERN.match(value)
            if match:
                path = match.group(1)
                parts = path.split(".")
                step_id = parts[0]

                if step_id not in step_outputs:
                    raise ValueError(f"@run reference to unknown step: {step_id}")

                result = step_outputs[step_id]
                for part in parts[1:]:
                    # Handle array indexing: items[0]
                    array_match = re.match(r"(\w+)\[(\d+)\]", part)
                    if array_match:
                        key, idx = array_match.groups()
                        if isinstance(result, dict) and key in result:
                            result = result[key]
                        else:
                            raise ValueError(f"@run path not found: {value} (missing '{key}')")
                        if isinstance(result, list) and int(idx) < len(result):
                            result = result[int(idx)]
                        else:
                            raise ValueError(f"@run index out of bounds: {value}")
                    elif isinstance(result, dict) and part in result:
                        result = result[part]
                    else:
                        raise ValueError(f"@run path not found: {value} (missing '{part}')")
                return result
        return value
    elif isinstance(value, dict):
        return {k: _resolve_run_refs(v, step_outputs) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_run_refs(v, step_outputs) for v in value]
    else:
        return value


def _resolve_secret_refs(value: Any, secrets: Dict[str, str]) -> Any:
    """Replace @secrets.name with the secret value passed to this node."""
    if isinstance(value, str):
        if value.startswith("@secrets."):
            name = value[len("@secrets."):]
            if name not in secrets:
                # Name only; the value is never part of an error
                raise ValueError(f"secret '{name}' was not provided")
            return secrets[name]
        return value
    elif isinstance(value, dict):
        return {k: _resolve_secret_refs(v, secrets) for k, v in value.items()}
    elif isinstance(value, list):
        return [_resolve_secret_refs(v, secrets) for v in value]
    else:
        return value


# =============================================================================
# Op Dispatch
# =============================================================================

@dataclass
class NodeContext:
    """Everything a node's steps may touch."""
    node: JobNode
    run_id: str
    workspace: Path
    node_dir: Path
    store: ArtifactStore
    runner: CommandRunner
    cancel_event: threading.Event
    deadline: Optional[float] = None
    retention_days: int = DEFAULT_RETENTION_DAYS
    dry_run: bool = False

    def remaining(self) -> Optional[float]:
        if self.deadline is None:
            return None
        return self.deadline - time.monotonic()


def _dispatch_op(step: StepInstance, params: Dict[str, Any], ctx: NodeContext) -> StepOutcome:
    """Dispatch a step's op to the appropriate handler."""
    if step.op == "shell":
        return _handle_shell(step, params, ctx)
    elif step.op == "artifact.upload":
        return _handle_artifact_upload(step.step_id, params, ctx)
    elif step.op == "artifact.download":
        return _handle_artifact_download(step.step_id, params, ctx)
    else:
        return StepOutcome(
            step_id=step.step_id,
            status="failed",
            error=f"Unknown op: {step.op}",
        )


def _step_timeout(step: StepInstance, ctx: NodeContext) -> Optional[float]:
    limits = [t for t in (step.timeout_s, ctx.remaining()) if t is not None]
    return min(limits) if limits else None


def _handle_shell(step: StepInstance, params: Dict[str, Any], ctx: NodeContext) -> StepOutcome:
    """Handle the shell op - run a command in the node's working directory."""
    env = {
        "RELAY_RUN_ID": ctx.run_id,
        "RELAY_NODE_ID": ctx.node.node_id,
        "RELAY_NODE_DIR": str(ctx.node_dir),
        "RELAY_WORKSPACE": str(ctx.workspace),
    }
    env.update({k: str(v) for k, v in (params.get("env") or {}).items()})
    cwd = expand_path(str(params.get("cwd") or "."), ctx.workspace)

    try:
        result = ctx.runner.run(
            str(params["run"]),
            env=env,
            cwd=cwd if not ctx.dry_run else None,
            timeout=_step_timeout(step, ctx),
            cancel_event=ctx.cancel_event,
            check=False,
        )
    except CommandCancelled as e:
        return StepOutcome(step_id=step.step_id, status="cancelled", error=str(e))
    except subprocess.TimeoutExpired as e:
        return StepOutcome(
            step_id=step.step_id,
            status="failed",
            error=f"timed out after {e.timeout:.0f}s",
        )
    except OSError as e:
        return StepOutcome(step_id=step.step_id, status="failed", error=str(e))

    if result is None:
        return StepOutcome(step_id=step.step_id, status="completed", output={"dry_run": True})

    output = {"stdout": result.stdout.strip(), "returncode": result.returncode}
    if result.returncode != 0:
        stderr_lines = result.stderr.strip().split("\n") if result.stderr else []
        error = f"exit code {result.returncode}"
        if stderr_lines and stderr_lines[-1]:
            error = f"{error}: {stderr_lines[-1]}"
        return StepOutcome(step_id=step.step_id, status="failed", output=output, error=error)
    return StepOutcome(step_id=step.step_id, status="completed", output=output)


def _handle_artifact_upload(step_id: str, params: Dict[str, Any], ctx: NodeContext) -> StepOutcome:
    """Handle the artifact.upload op - publish a file or directory by name."""
    name = params["name"]
    retention_days = params.get("retention_days", ctx.retention_days)
    if ctx.dry_run:
        logger.info(f"[DRY RUN] Would publish artifact {name}")
        return StepOutcome(step_id=step_id, status="completed", output={"dry_run": True, "name": name})

    path = expand_path(str(params["path"]), ctx.workspace)
    if not path.exists() and params.get("if_missing") == "ignore":
        logger.warning(f"Nothing to publish for {name}: {path} does not exist")
        return StepOutcome(step_id=step_id, status="completed", output={"name": name, "published": False})
    try:
        handle = ctx.store.publish(
            name,
            path,
            retention_days=retention_days,
            producer=ctx.node.node_id,
            run_id=ctx.run_id,
        )
    except (FileNotFoundError, ArtifactConflict, ValueError) as e:
        return StepOutcome(step_id=step_id, status="failed", error=str(e))
    return StepOutcome(
        step_id=step_id,
        status="completed",
        output={"name": handle.name, "location": handle.location, "published": True},
    )


def _handle_artifact_download(step_id: str, params: Dict[str, Any], ctx: NodeContext) -> StepOutcome:
    """
    Handle the artifact.download op - copy a published payload into place.

    Only payloads published during this run are visible unless the step
    sets `any_run: true`. A declared `default` is written to the destination
    when the artifact is absent; without one the step fails with
    ArtifactNotFound.
    """
    name = params["name"]
    if ctx.dry_run:
        logger.info(f"[DRY RUN] Would fetch artifact {name}")
        return StepOutcome(step_id=step_id, status="completed", output={"dry_run": True, "name": name})

    dest = expand_path(str(params["path"]), ctx.workspace)
    try:
        source = ctx.store.fetch(name, run_id=None if params.get("any_run") else ctx.run_id)
    except ArtifactNotFound as e:
        if "default" not in params:
            return StepOutcome(step_id=step_id, status="failed", error=str(e))
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(str(params["default"]))
        logger.info(f"Artifact {name} not found, wrote default to {dest}")
        return StepOutcome(
            step_id=step_id,
            status="completed",
            output={"name": name, "path": str(dest), "default": True},
        )

    try:
        if source.is_dir():
            shutil.copytree(source, dest, dirs_exist_ok=True)
        else:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
    except OSError as e:
        return StepOutcome(step_id=step_id, status="failed", error=str(e))
    return StepOutcome(
        step_id=step_id,
        status="completed",
        output={"name": name, "path": str(dest), "default": False},
    )


# =============================================================================
# Node Execution
# =============================================================================

def run_node(ctx: NodeContext, secrets: Dict[str, str]) -> NodeOutcome:
    """
    Run a node's steps in order.

    Any failing step fails the node; later steps are skipped unless
    flagged `always`. A step with continue_on_error records its failure
    without failing the node.
    """
    node = ctx.node
    started_at = _utcnow()
    step_outputs: Dict[str, Any] = {}
    outcomes: List[StepOutcome] = []
    failed = False
    cancelled = False
    error: Optional[str] = None

    for step in node.steps:
        if cancelled or ctx.cancel_event.is_set():
            cancelled = True
            outcomes.append(StepOutcome(step_id=step.step_id, status="skipped"))
            continue
        if failed and not step.always:
            outcomes.append(StepOutcome(step_id=step.step_id, status="skipped"))
            continue
        remaining = ctx.remaining()
        if remaining is not None and remaining <= 0:
            outcomes.append(StepOutcome(step_id=step.step_id, status="skipped"))
            if not failed:
                failed = True
                error = f"timed out after {node.timeout_s}s"
            continue

        try:
            params = _resolve_run_refs(step.params, step_outputs)
            params = _resolve_secret_refs(params, secrets)
        except ValueError as e:
            outcome = StepOutcome(step_id=step.step_id, status="failed", error=str(e))
        else:
            outcome = _dispatch_op(step, params, ctx)
        outcomes.append(outcome)

        if outcome.output is not None:
            step_outputs[step.step_id] = outcome.output

        if outcome.status == "cancelled":
            cancelled = True
        elif outcome.status == "failed":
            if step.continue_on_error:
                logger.warning(f"{node.node_id}: step '{step.step_id}' failed (continuing): {outcome.error}")
            elif not failed:
                failed = True
                error = f"step '{step.step_id}': {outcome.error}"

    if cancelled:
        status = "cancelled"
        error = error or "run cancelled"
    elif failed:
        status = "failed"
    else:
        status = "succeeded"

    return NodeOutcome(
        node_id=node.node_id,
        status=status,
        steps=outcomes,
        error=error,
        started_at=started_at,
        completed_at=_utcnow(),
    )


class Orchestrator:
    """Runs a WorkflowPlan, fanning independent nodes out to a thread pool."""

    def __init__(
        self,
        plan: WorkflowPlan,
        store: ArtifactStore,
        secrets: Optional[Dict[str, str]] = None,
        workspace: Optional[Path] = None,
        max_workers: int = 4,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        dry_run: bool = False,
        verbose: bool = False,
        event_client: Optional[EventClient] = None,
    ):
        """
        Args:
            plan: Compiled workflow plan
            store: Artifact store shared by all nodes
            secrets: Workflow secret name -> value, supplied by the trigger
            workspace: Directory relative step paths resolve against
            max_workers: Upper bound on concurrently running nodes
            retention_days: Default retention for published artifacts
            dry_run: Log commands and artifact operations instead of running them
            verbose: Log command stdout at debug level
            event_client: Optional JSONL event log
        """
        self.plan = plan
        self.store = store
        self.secrets = dict(secrets or {})
        self.workspace = Path(workspace or Path.cwd()).resolve()
        self.max_workers = max_workers
        self.retention_days = retention_days
        self.dry_run = dry_run
        self.verbose = verbose
        self.event_client = event_client
        self.run_id = str(uuid.uuid4())
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Cancel the run: pending nodes are cancelled, running ones stopped."""
        logger.warning(f"Cancelling run {self.run_id}")
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _emit(self, event_type: str, status: str, payload=None, error_message=None) -> None:
        if self.event_client is None:
            return
        self.event_client.log_event(
            event_type=event_type,
            correlation_id=self.run_id,
            status=status,
            payload=payload,
            error_message=error_message,
        )

    def _node_secrets(self, node: JobNode) -> Dict[str, str]:
        secrets = {}
        for unit_secret, name in node.secrets.items():
            if name in self.secrets:
                secrets[unit_secret] = self.secrets[name]
            elif self.dry_run:
                # Nothing executes, so an absent secret only ever shows masked
                secrets[unit_secret] = MASK
        return secrets

    def _run_node(self, node: JobNode) -> NodeOutcome:
        secrets = self._node_secrets(node)
        node_dir = self.workspace / ".relay" / "work" / self.run_id / node.node_id
        if not self.dry_run:
            node_dir.mkdir(parents=True, exist_ok=True)
        ctx = NodeContext(
            node=node,
            run_id=self.run_id,
            workspace=self.workspace,
            node_dir=node_dir,
            store=self.store,
            runner=CommandRunner(
                dry_run=self.dry_run,
                verbose=self.verbose,
                secrets=self.secrets.values(),
            ),
            cancel_event=self._cancel,
            deadline=time.monotonic() + node.timeout_s if node.timeout_s else None,
            retention_days=self.retention_days,
            dry_run=self.dry_run,
        )
        return run_node(ctx, secrets)

    def _permits(self, outcome: NodeOutcome) -> bool:
        """True if a finished predecessor lets its dependents run."""
        if outcome.status == "succeeded":
            return True
        node = self.plan.nodes[outcome.node_id]
        return outcome.status == "failed" and node.continue_on_error

    def _finish(self, node: JobNode, outcome: NodeOutcome) -> NodeOutcome:
        outcome.permitted = node.optional or (
            outcome.status == "failed" and node.continue_on_error
        )
        event_type = {
            "succeeded": "node.completed",
            "failed": "node.failed",
            "skipped": "node.skipped",
            "cancelled": "node.cancelled",
        }[outcome.status]
        self._emit(
            event_type,
            outcome.status,
            payload={"node_id": node.node_id, "unit": node.unit},
            error_message=outcome.error,
        )
        log = logger.info if outcome.status == "succeeded" or outcome.permitted else logger.error
        log(f"Node {node.node_id} {outcome.status}" + (f": {outcome.error}" if outcome.error else ""))
        return outcome

    def run(self) -> RunRecord:
        """
        Execute the plan.

        Returns:
            RunRecord; success iff every non-optional node succeeded or
            failed with continue_on_error
        """
        plan = self.plan
        started_at = _utcnow()
        outcomes: Dict[str, NodeOutcome] = {}
        execution_order: List[str] = []
        pending = list(plan.order)

        self._emit(
            "run.started",
            "running",
            payload={
                "workflow_id": plan.workflow_id,
                "trigger": plan.trigger,
                "nodes": list(plan.order),
                "secrets": list(plan.secrets),
            },
        )
        logger.info(f"Run {self.run_id}: {plan.workflow_id} ({plan.trigger}), {len(pending)} nodes")

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            in_flight: Dict[Future, str] = {}

            while pending or in_flight:
                if self._cancel.is_set():
                    for node_id in pending:
                        node = plan.nodes[node_id]
                        outcomes[node_id] = self._finish(
                            node, NodeOutcome(node_id=node_id, status="cancelled", error="run cancelled")
                        )
                    pending = []

                # Pending is in topological order, so a skip is seen by
                # later dependents in the same pass
                for node_id in list(pending):
                    node = plan.nodes[node_id]
                    if not all(pred in outcomes for pred in node.needs):
                        continue
                    pending.remove(node_id)

                    blocked = [p for p in node.needs if not self._permits(outcomes[p])]
                    if blocked and not node.always:
                        outcomes[node_id] = self._finish(
                            node,
                            NodeOutcome(
                                node_id=node_id,
                                status="skipped",
                                error=f"needs {', '.join(blocked)}",
                            ),
                        )
                        continue

                    execution_order.append(node_id)
                    self._emit(
                        "node.started",
                        "running",
                        payload={
                            "node_id": node_id,
                            "unit": node.unit,
                            "matrix": node.matrix,
                            "needs": list(node.needs),
                            "secrets": sorted(node.secrets),
                        },
                    )
                    in_flight[pool.submit(self._run_node, node)] = node_id

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), timeout=0.2, return_when=FIRST_COMPLETED)
                for future in done:
                    node_id = in_flight.pop(future)
                    node = plan.nodes[node_id]
                    try:
                        outcome = future.result()
                    except Exception as e:
                        logger.exception(f"Node {node_id} crashed")
                        outcome = NodeOutcome(node_id=node_id, status="failed", error=str(e))
                    outcomes[node_id] = self._finish(node, outcome)

        ordered = [outcomes[node_id] for node_id in plan.order if node_id in outcomes]
        success = all(o.status == "succeeded" or o.permitted for o in ordered)

        record = RunRecord(
            run_id=self.run_id,
            workflow_id=plan.workflow_id,
            trigger=plan.trigger,
            success=success,
            started_at=started_at,
            completed_at=_utcnow(),
            outcomes=ordered,
            execution_order=execution_order,
        )
        self._emit(
            "run.completed",
            "succeeded" if success else "failed",
            payload={"workflow_id": plan.workflow_id, "nodes": len(ordered)},
        )
        return record


def execute(plan: WorkflowPlan, store: ArtifactStore, **kwargs) -> RunRecord:
    """Execute a compiled WorkflowPlan with a fresh Orchestrator."""
    return Orchestrator(plan, store, **kwargs).run()


# =============================================================================
# Output Rendering
# =============================================================================

def render_plan(plan: WorkflowPlan, format_type: str = "table") -> None:
    """Render a compiled plan to stdout."""
    rows = [
        {
            "node": node_id,
            "unit": plan.nodes[node_id].unit,
            "needs": ", ".join(plan.nodes[node_id].needs) or "-",
        }
        for node_id in plan.order
    ]
    if format_type == "json":
        print(json.dumps(rows, indent=2))
    elif format_type == "csv":
        _render_csv(rows)
    else:
        _render_table(rows)


def render_run_record(record: RunRecord, format_type: str = "table") -> None:
    """Render a RunRecord to stdout, failures to stderr."""
    if format_type == "json":
        print(json.dumps(asdict(record), indent=2, default=str))
    else:
        rows = [
            {"node": o.node_id, "status": o.status, "detail": o.error or ""}
            for o in record.outcomes
        ]
        if format_type == "csv":
            _render_csv(rows)
        else:
            _render_table(rows)
            print()
            _render_status(record)

    if not record.success:
        print(f"Workflow {record.workflow_id} FAILED", file=sys.stderr)
        for outcome in record.outcomes:
            if outcome.status == "failed" and not outcome.permitted:
                print(f"  Node '{outcome.node_id}': {outcome.error}", file=sys.stderr)


def _render_csv(rows: List[Dict]) -> None:
    if rows:
        writer = csv.DictWriter(sys.stdout, fieldnames=rows[0].keys())
        writer.writeheader()
        writer.writerows(rows)


def _render_table(rows: List[Dict]) -> None:
    """Render rows as a simple table."""
    if not rows:
        print("(no nodes)")
        return
    keys = list(rows[0].keys())
    widths = {k: max(len(str(k)), max(len(str(r.get(k, ""))) for r in rows)) for k in keys}
    header = " | ".join(str(k).ljust(widths[k]) for k in keys)
    print(header)
    print("-" * len(header))
    for row in rows:
        print(" | ".join(str(row.get(k, "")).ljust(widths[k]) for k in keys))


def _render_status(record: RunRecord) -> None:
    """Render run record as status."""
    print(f"Workflow: {record.workflow_id} ({record.trigger})")
    print(f"Run ID: {record.run_id}")
    print(f"Status: {'ok' if record.success else 'FAILED'}")
    print(f"Nodes: {len(record.outcomes)}")
