"""Tests for plan execution: scheduling, skip policy, artifacts, secrets.

Copyright 2025 Ben Mensi
Licensed under the Apache License, Version 2.0
"""

import json
import logging
import threading
import time

from unittest.mock import patch

import pytest

from relay.compiler import compile_workflow
from relay.errors import NodeFailure
from relay.event_client import EventClient
from relay.executor import (
    Orchestrator,
    _resolve_run_refs,
    execute,
    render_plan,
    render_run_record,
)


# Waits for the other node's start marker, so it only finishes when both run at once
BARRIER = """
touch started-{inputs.me}
i=0
while [ ! -f started-{inputs.other} ]; do
  i=$((i + 1))
  if [ "$i" -gt 200 ]; then exit 1; fi
  sleep 0.05
done
touch done-{inputs.me}
"""


@pytest.fixture
def units(make_unit):
    return {
        "ok": make_unit("ok", "echo ok"),
        "fail": make_unit("fail", "echo broken >&2; exit 1"),
        "slow": make_unit("slow", "sleep 5"),
        "barrier": make_unit(
            "barrier",
            BARRIER,
            inputs={"me": {"required": True}, "other": {"required": True}},
        ),
        "flaky-build": make_unit(
            "flaky-build",
            "echo partial > report.txt && exit 1",
            artifacts=["report"],
            steps=[{
                "step_id": "publish",
                "op": "artifact.upload",
                "always": True,
                "params": {"name": "report", "path": "report.txt"},
            }],
        ),
        "read-report": make_unit(
            "read-report",
            consumes=["report"],
            steps=[
                {"step_id": "fetch", "op": "artifact.download", "params": {"name": "report", "path": "fetched.txt"}},
                {"step_id": "check", "op": "shell", "params": {"run": "grep -q partial fetched.txt"}},
            ],
        ),
        "secret-echo": make_unit(
            "secret-echo",
            secrets=["token"],
            steps=[{
                "step_id": "show",
                "op": "shell",
                "params": {
                    "run": 'echo "token=$TOKEN"; echo "bad token $TOKEN" >&2; exit 1',
                    "env": {"TOKEN": "@secrets.token"},
                },
            }],
        ),
    }


@pytest.fixture
def plan_for(units, make_workflow):
    """Compile a workflow of jobs against the test units."""

    def _plan(jobs, **fields):
        return compile_workflow(make_workflow(jobs, **fields), units)

    return _plan


@pytest.fixture
def run(store, workspace):
    """Execute a plan in the test workspace."""

    def _run(plan, **kwargs):
        kwargs.setdefault("max_workers", 4)
        return execute(plan, store, workspace=workspace, **kwargs)

    return _run


# =============================================================================
# Scheduling and skip policy
# =============================================================================


class TestScheduling:
    """Tests for ordering and concurrency."""

    def test_execution_order_is_topological(self, plan_for, run):
        plan = plan_for({
            "deploy": {"uses": "ok", "needs": ["build"]},
            "build": {"uses": "ok", "needs": ["test"]},
            "test": {"uses": "ok"},
        })

        record = run(plan, max_workers=1)

        assert record.success is True
        assert record.execution_order == ["test", "build", "deploy"]
        assert [o.status for o in record.outcomes] == ["succeeded"] * 3

    def test_independent_nodes_run_concurrently(self, plan_for, run, workspace):
        plan = plan_for({
            "build": {"uses": "ok"},
            "test": {"uses": "barrier", "needs": ["build"], "with": {"me": "test", "other": "scan"}},
            "scan": {"uses": "barrier", "needs": ["build"], "with": {"me": "scan", "other": "test"}},
        })

        record = run(plan, max_workers=2)

        assert record.success is True, [o.error for o in record.outcomes]
        assert (workspace / "done-test").exists()
        assert (workspace / "done-scan").exists()
        assert record.execution_order[0] == "build"

    def test_failure_skips_transitive_dependents(self, plan_for, run):
        plan = plan_for({
            "test": {"uses": "fail"},
            "build": {"uses": "ok", "needs": ["test"]},
            "deploy": {"uses": "ok", "needs": ["build"]},
        })

        record = run(plan)

        assert record.success is False
        assert record.execution_order == ["test"]
        assert record.outcome("test").status == "failed"
        assert "broken" in record.outcome("test").error
        assert record.outcome("build").status == "skipped"
        assert record.outcome("deploy").status == "skipped"
        with pytest.raises(NodeFailure) as exc_info:
            record.raise_for_status()
        assert exc_info.value.node_id == "test"

    def test_unrelated_branch_still_runs(self, plan_for, run):
        plan = plan_for({
            "test": {"uses": "fail"},
            "build": {"uses": "ok", "needs": ["test"]},
            "docs": {"uses": "ok"},
        })

        record = run(plan)

        assert record.outcome("docs").status == "succeeded"
        assert record.outcome("build").status == "skipped"

    def test_matrix_failure_skips_only_matching_instance(self, make_unit, make_workflow, run):
        units = {
            "maybe-fail": make_unit(
                "maybe-fail",
                '[ "{inputs.service}" != "b" ]',
                inputs={"service": {"required": True}},
            ),
            "ok": make_unit("ok", "echo ok"),
        }
        plan = compile_workflow(make_workflow({
            "test": {"uses": "maybe-fail", "matrix": {"service": ["a", "b"]}, "with": {"service": "@matrix.service"}},
            "build": {"uses": "ok", "needs": ["test"], "matrix": {"service": ["a", "b"]}},
        }), units)

        record = run(plan)

        assert record.outcome("build[a]").status == "succeeded"
        assert record.outcome("build[b]").status == "skipped"

    def test_optional_failure_does_not_fail_run(self, plan_for, run):
        plan = plan_for({
            "lint": {"uses": "fail", "optional": True},
            "test": {"uses": "ok"},
        })

        record = run(plan)

        assert record.success is True
        assert record.outcome("lint").status == "failed"
        assert record.outcome("lint").permitted is True
        record.raise_for_status()

    def test_continue_on_error_lets_dependents_run(self, plan_for, run):
        plan = plan_for({
            "flaky": {"uses": "fail", "continue_on_error": True},
            "after": {"uses": "ok", "needs": ["flaky"]},
        })

        record = run(plan)

        assert record.success is True
        assert record.outcome("after").status == "succeeded"

    def test_always_node_runs_after_failure(self, plan_for, run):
        plan = plan_for({
            "test": {"uses": "fail"},
            "report": {"uses": "ok", "needs": ["test"], "always": True},
        })

        record = run(plan)

        assert record.outcome("report").status == "succeeded"
        assert record.execution_order == ["test", "report"]
        assert record.success is False

    def test_always_fan_in_waits_for_every_predecessor(self, units, make_unit, make_workflow, run):
        units = dict(units, nap=make_unit("nap", "sleep 1"))
        plan = compile_workflow(make_workflow({
            "build": {"uses": "ok"},
            "test": {"uses": "fail", "needs": ["build"]},
            "scan": {"uses": "nap", "needs": ["build"]},
            "report": {"uses": "ok", "needs": ["test", "scan"], "always": True},
        }), units)

        record = run(plan)

        test, scan, report = (record.outcome(n) for n in ("test", "scan", "report"))
        assert test.status == "failed"
        assert scan.status == "succeeded"
        assert report.status == "succeeded"
        assert record.execution_order[0] == "build"
        assert set(record.execution_order[1:3]) == {"test", "scan"}
        assert record.execution_order[-1] == "report"
        assert report.started_at >= test.completed_at
        assert report.started_at >= scan.completed_at

    def test_crashed_node_is_recorded_as_failure(self, plan_for, run, caplog):
        plan = plan_for({"test": {"uses": "ok"}, "build": {"uses": "ok", "needs": ["test"]}})

        with patch.object(Orchestrator, "_run_node", side_effect=RuntimeError("worker died")):
            record = run(plan)

        assert record.outcome("test").status == "failed"
        assert record.outcome("test").error == "worker died"
        assert record.outcome("build").status == "skipped"
        assert "Node test crashed" in caplog.text

    def test_empty_plan_succeeds(self, units, make_workflow, run):
        workflow = make_workflow({"test": {"uses": "ok"}}, triggers={"push": {"branches": ["main"]}})
        plan = compile_workflow(workflow, units, event="push", branch="feature/x")

        record = run(plan)

        assert record.success is True
        assert record.outcomes == []


class TestSteps:
    """Tests for step sequencing inside a node."""

    def test_failed_step_skips_rest_except_always(self, make_unit, make_workflow, run, workspace):
        units = {
            "cleanup": make_unit(
                "cleanup",
                "exit 3",
                "echo never",
                steps=[{"step_id": "tidy", "op": "shell", "always": True, "params": {"run": "touch cleaned"}}],
            ),
        }
        plan = compile_workflow(make_workflow({"job": {"uses": "cleanup"}}), units)

        outcome = run(plan).outcome("job")

        assert outcome.status == "failed"
        assert [s.status for s in outcome.steps] == ["failed", "skipped", "completed"]
        assert outcome.error == "step 'step1': exit code 3"
        assert (workspace / "cleaned").exists()

    def test_step_continue_on_error(self, make_unit, make_workflow, run):
        units = {
            "lenient": make_unit(
                "lenient",
                steps=[
                    {"step_id": "check", "op": "shell", "continue_on_error": True, "params": {"run": "exit 1"}},
                    {"step_id": "build", "op": "shell", "params": {"run": "echo built"}},
                ],
            ),
        }
        plan = compile_workflow(make_workflow({"job": {"uses": "lenient"}}), units)

        outcome = run(plan).outcome("job")

        assert outcome.status == "succeeded"
        assert outcome.steps[0].status == "failed"

    def test_run_reference_to_earlier_output(self, make_unit, make_workflow, run):
        units = {
            "chain": make_unit(
                "chain",
                "echo hello",
                steps=[{
                    "step_id": "verify",
                    "op": "shell",
                    "params": {"run": 'test "$GREETING" = hello', "env": {"GREETING": "@run.step1.stdout"}},
                }],
            ),
        }
        plan = compile_workflow(make_workflow({"job": {"uses": "chain"}}), units)

        assert run(plan).outcome("job").status == "succeeded"

    def test_resolve_run_refs_paths(self):
        outputs = {"list": {"items": [{"id": "a"}, {"id": "b"}]}}
        assert _resolve_run_refs("@run.list.items[1].id", outputs) == "b"
        with pytest.raises(ValueError, match="unknown step"):
            _resolve_run_refs("@run.missing.value", outputs)

    def test_node_environment(self, make_unit, make_workflow, run, workspace):
        units = {
            "env-check": make_unit(
                "env-check",
                'test "$RELAY_NODE_ID" = "job"',
                'test -d "$RELAY_NODE_DIR"',
                'test "$(pwd -P)" = "$RELAY_WORKSPACE"',
                'echo "$RELAY_RUN_ID" > run-id.txt',
            ),
        }
        plan = compile_workflow(make_workflow({"job": {"uses": "env-check"}}), units)

        record = run(plan)

        assert record.success is True, record.outcome("job").error
        assert (workspace / "run-id.txt").read_text().strip() == record.run_id


# =============================================================================
# Artifacts
# =============================================================================


class TestArtifacts:
    """Tests for artifact passing between nodes."""

    def test_always_published_artifact_survives_failure(self, plan_for, run, store, workspace):
        plan = plan_for({
            "build": {"uses": "flaky-build"},
            "read": {"uses": "read-report", "needs": ["build"], "always": True},
        })

        record = run(plan)

        assert record.outcome("build").status == "failed"
        assert [s.status for s in record.outcome("build").steps] == ["failed", "completed"]
        assert store.fetch("report").read_text().strip() == "partial"
        assert record.outcome("read").status == "succeeded"
        assert (workspace / "fetched.txt").read_text().strip() == "partial"

    def test_missing_artifact_fails_consumer(self, plan_for, run):
        record = run(plan_for({"read": {"uses": "read-report"}}))

        outcome = record.outcome("read")
        assert outcome.status == "failed"
        assert outcome.error == "step 'fetch': Artifact not found: report"

    def test_payload_from_earlier_run_is_not_visible(self, make_unit, make_workflow, run, store, tmp_path):
        earlier = tmp_path / "earlier.txt"
        earlier.write_text("partial from an earlier run")
        store.publish("report", earlier, retention_days=7, producer="build", run_id="earlier-run")
        units = {
            "broken-build": make_unit(
                "broken-build",
                "exit 1",
                artifacts=["report"],
                steps=[{"step_id": "publish", "op": "artifact.upload", "params": {"name": "report", "path": "report.txt"}}],
            ),
            "read-report": make_unit(
                "read-report",
                consumes=["report"],
                steps=[{"step_id": "fetch", "op": "artifact.download", "params": {"name": "report", "path": "fetched.txt"}}],
            ),
        }
        plan = compile_workflow(make_workflow({
            "build": {"uses": "broken-build"},
            "read": {"uses": "read-report", "needs": ["build"], "always": True},
        }), units)

        record = run(plan)

        assert record.outcome("build").status == "failed"
        outcome = record.outcome("read")
        assert outcome.status == "failed"
        assert outcome.error == "step 'fetch': Artifact not found: report"

    def test_any_run_download_reads_earlier_payload(self, make_unit, make_workflow, run, store, tmp_path, workspace):
        earlier = tmp_path / "earlier.txt"
        earlier.write_text("baseline")
        store.publish("baseline", earlier, retention_days=7, producer="bench", run_id="earlier-run")
        units = {
            "compare": make_unit(
                "compare",
                consumes=["baseline"],
                steps=[{
                    "step_id": "fetch",
                    "op": "artifact.download",
                    "params": {"name": "baseline", "path": "baseline.txt", "any_run": True},
                }],
            ),
        }
        plan = compile_workflow(make_workflow({"job": {"uses": "compare"}}), units)

        outcome = run(plan).outcome("job")

        assert outcome.status == "succeeded"
        assert (workspace / "baseline.txt").read_text() == "baseline"

    def test_missing_artifact_default(self, make_unit, make_workflow, run, workspace):
        units = {
            "baseline": make_unit(
                "baseline",
                consumes=["baseline"],
                steps=[{
                    "step_id": "fetch",
                    "op": "artifact.download",
                    "params": {"name": "baseline", "path": "baseline.txt", "default": "none"},
                }],
            ),
        }
        plan = compile_workflow(make_workflow({"job": {"uses": "baseline"}}), units)

        outcome = run(plan).outcome("job")

        assert outcome.status == "succeeded"
        assert outcome.steps[0].output["default"] is True
        assert (workspace / "baseline.txt").read_text() == "none"

    def test_upload_missing_path_can_be_ignored(self, make_unit, make_workflow, run, store):
        units = {
            "coverage": make_unit(
                "coverage",
                artifacts=["coverage"],
                steps=[{
                    "step_id": "upload",
                    "op": "artifact.upload",
                    "params": {"name": "coverage", "path": "nowhere", "if_missing": "ignore"},
                }],
            ),
        }
        plan = compile_workflow(make_workflow({"job": {"uses": "coverage"}}), units)

        outcome = run(plan).outcome("job")

        assert outcome.status == "succeeded"
        assert outcome.steps[0].output["published"] is False
        assert store.list() == []


# =============================================================================
# Secrets
# =============================================================================


class TestSecrets:
    """Tests for runtime secret delivery and masking."""

    SECRET = "hunter2-value"

    @pytest.fixture
    def plan(self, plan_for):
        return plan_for(
            {"show": {"uses": "secret-echo", "secrets": {"token": "@secrets.API_TOKEN"}}},
            secrets=["API_TOKEN"],
        )

    def test_secret_masked_in_logs_and_outcome(self, plan, run, caplog):
        with caplog.at_level(logging.INFO):
            record = run(plan, secrets={"API_TOKEN": self.SECRET})

        outcome = record.outcome("show")
        assert outcome.steps[0].output["stdout"] == "token=***"
        assert outcome.error == "step 'show': exit code 1: bad token ***"
        assert self.SECRET not in caplog.text
        assert "***" in caplog.text

    def test_secret_masked_in_events(self, plan, run, tmp_path):
        events_path = tmp_path / "events.jsonl"

        run(plan, secrets={"API_TOKEN": self.SECRET}, event_client=EventClient(events_path))

        text = events_path.read_text()
        assert self.SECRET not in text
        started = [json.loads(line) for line in text.splitlines()][0]
        assert started["payload"]["secrets"] == ["API_TOKEN"]

    def test_secret_not_supplied_at_runtime(self, plan, run):
        outcome = run(plan, secrets={}).outcome("show")
        assert outcome.status == "failed"
        assert "secret 'token' was not provided" in outcome.error


# =============================================================================
# Timeouts, cancellation, dry run
# =============================================================================


class TestLimits:
    """Tests for node timeouts and run cancellation."""

    def test_node_timeout(self, plan_for, run):
        plan = plan_for({"slow": {"uses": "slow"}, "after": {"uses": "ok", "needs": ["slow"]}})
        plan.nodes["slow"].timeout_s = 1

        start = time.monotonic()
        record = run(plan)

        assert time.monotonic() - start < 4
        assert record.outcome("slow").status == "failed"
        assert "timed out after 1s" in record.outcome("slow").error
        assert record.outcome("after").status == "skipped"

    def test_cancel_stops_running_and_pending_nodes(self, plan_for, store, workspace):
        plan = plan_for({"slow": {"uses": "slow"}, "after": {"uses": "ok", "needs": ["slow"]}})
        orchestrator = Orchestrator(plan, store, workspace=workspace)
        timer = threading.Timer(0.3, orchestrator.cancel)

        start = time.monotonic()
        timer.start()
        record = orchestrator.run()

        assert time.monotonic() - start < 4
        assert orchestrator.cancelled is True
        assert record.success is False
        assert record.outcome("slow").status == "cancelled"
        assert record.outcome("after").status == "cancelled"


class TestDryRun:
    """Tests for dry-run execution."""

    def test_dry_run_executes_nothing(self, plan_for, run, workspace, caplog):
        plan = plan_for({"test": {"uses": "fail"}, "build": {"uses": "flaky-build", "needs": ["test"]}})

        with caplog.at_level(logging.INFO):
            record = run(plan, dry_run=True)

        assert record.success is True
        assert "[DRY RUN] Would execute:" in caplog.text
        assert "[DRY RUN] Would publish artifact report" in caplog.text
        assert not (workspace / ".relay").exists()
        assert not (workspace / "report.txt").exists()


# =============================================================================
# Events and rendering
# =============================================================================


class TestEvents:
    """Tests for the run event log."""

    def test_event_sequence(self, plan_for, run, tmp_path):
        events_path = tmp_path / "events.jsonl"
        plan = plan_for({"test": {"uses": "fail"}, "build": {"uses": "ok", "needs": ["test"]}})

        record = run(plan, event_client=EventClient(events_path))

        events = [json.loads(line) for line in events_path.read_text().splitlines()]
        assert [e["event_type"] for e in events] == [
            "run.started", "node.started", "node.failed", "node.skipped", "run.completed",
        ]
        assert {e["correlation_id"] for e in events} == {record.run_id}
        assert events[-1]["status"] == "failed"


class TestRendering:
    """Tests for plan and run record output."""

    def test_render_plan_table(self, plan_for, capsys):
        plan = plan_for({"test": {"uses": "ok"}, "build": {"uses": "ok", "needs": ["test"]}})

        render_plan(plan)

        out = capsys.readouterr().out
        assert "node" in out.splitlines()[0]
        assert "build | ok   | test" in out

    def test_render_plan_json(self, plan_for, capsys):
        render_plan(plan_for({"test": {"uses": "ok"}}), format_type="json")
        assert json.loads(capsys.readouterr().out) == [{"node": "test", "unit": "ok", "needs": "-"}]

    def test_render_failed_record(self, plan_for, run, capsys):
        record = run(plan_for({"test": {"uses": "fail"}}))

        render_run_record(record, format_type="csv")

        captured = capsys.readouterr()
        assert captured.out.splitlines()[0] == "node,status,detail"
        assert "Workflow test-flow FAILED" in captured.err
        assert "Node 'test'" in captured.err
