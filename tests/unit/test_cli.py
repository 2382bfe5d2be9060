import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

import trellis.persistence as persistence
from trellis.cli import app

FIXTURES = Path(__file__).resolve().parent.parent / "fixtures"

runner = CliRunner()


@pytest.fixture(autouse=True)
def sqlite_env(tmp_path, monkeypatch):
    monkeypatch.setenv("TRELLIS_CONFIG", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("TRELLIS_DATABASE_URL", f"sqlite://{tmp_path / 'wf.db'}")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("TRELLIS_QUEUE", raising=False)
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


def _invoke(*args, expect=0):
    result = runner.invoke(app, list(args))
    assert (
        result.exit_code == expect
    ), f"Command {args} exited with {result.exit_code}. Output: {result.stdout}"
    return result.stdout


def _tasks(instance_id):
    rows = [
        line.split("\t")
        for line in _invoke("task", "list", "--instance", instance_id).splitlines()
    ]
    return {row[2]: row for row in rows}


def test_validate_definition_file():
    output = _invoke("definition", "validate", str(FIXTURES / "expense.yaml"))
    assert "Definition is valid" in output, f"Unexpected output: {output}"

    output = _invoke("definition", "validate", str(FIXTURES / "broken.json"), expect=1)
    assert "error: Definition has no END node" in output, f"Unexpected output: {output}"
    assert "error: TASK node 'work' has no function_code" in output

    output = _invoke("definition", "validate", str(FIXTURES / "missing.yaml"), expect=1)
    assert "Cannot read definition" in output


def test_publish_and_list_definitions():
    assert "No definitions found" in _invoke("definition", "list")

    output = _invoke("definition", "publish", str(FIXTURES / "expense.yaml"))
    assert output.startswith("Published expense v1:"), f"Unexpected output: {output}"
    output = _invoke("definition", "publish", str(FIXTURES / "expense.yaml"))
    assert output.startswith("Published expense v2:")

    listing = _invoke("definition", "list")
    assert "\texpense\tv1\tExpense approval" in listing
    assert "\texpense\tv2\tExpense approval" in listing

    output = _invoke("definition", "publish", str(FIXTURES / "broken.json"), expect=1)
    assert "Error [DEFINITION_INVALID]" in output


def test_expense_workflow_end_to_end():
    _invoke("definition", "publish", str(FIXTURES / "expense.yaml"))
    output = _invoke("instance", "start", "expense", "--context", '{"employee": "alice"}')
    assert output.startswith("Started instance "), f"Unexpected output: {output}"
    instance_id = output.split()[2].rstrip(":")

    submit = _tasks(instance_id)["submit"]
    assert submit[3] == "USER_TASK"
    assert submit[4] == "PENDING"
    assert submit[5] == "alice"

    output = _invoke(
        "task", "complete", submit[0], "--output", '{"amount": 250}', "--actor", "bob", expect=1
    )
    assert "Error [TASK_NOT_ASSIGNED_TO_ACTOR]" in output

    output = _invoke(
        "task", "complete", submit[0], "--output", '{"amount": 250}', "--actor", "alice"
    )
    assert json.loads(output) == {
        "task_id": submit[0],
        "instance_id": instance_id,
        "context_version": 2,
    }

    _invoke("worker", "run", "--lifespan", "0.2", "--worker-id", "cli-worker")
    approve = _tasks(instance_id)["approve"]
    assert approve[5] == "manager"

    shown = _invoke("instance", "show", instance_id)
    assert f"Instance {instance_id}: RUNNING" in shown
    assert "Frontier: approve" in shown
    assert '"submit": {"amount": 250}' in shown
    assert "GATEWAY_EVALUATED node=decide" in shown

    _invoke("task", "complete", approve[0], "--actor", "manager")
    _invoke("worker", "run", "--lifespan", "0.2")

    assert instance_id in _invoke("instance", "list", "--status", "COMPLETED")
    shown = _invoke("instance", "show", instance_id, "--no-history")
    assert f"Instance {instance_id}: COMPLETED" in shown
    assert "INSTANCE_STARTED" not in shown

    queue = _invoke("queue", "list", "--status", "SUCCEEDED")
    assert "ADVANCE_INSTANCE\tSUCCEEDED" in queue
    pruned = _invoke("queue", "prune", "--retention-hours", "0")
    assert pruned.startswith("Pruned 2 queue item(s)"), f"Unexpected output: {pruned}"
    assert "No queue items found" in _invoke("queue", "list")


def test_suspend_resume_and_fail():
    _invoke("definition", "publish", str(FIXTURES / "expense.yaml"))
    output = _invoke("instance", "start", "expense", "--context", '{"employee": "alice"}')
    instance_id = output.split()[2].rstrip(":")

    assert "SUSPENDED" in _invoke("instance", "suspend", instance_id, "--reason", "audit")
    output = _invoke("instance", "suspend", instance_id, expect=1)
    assert "Error [INVALID_STATE_TRANSITION]" in output
    assert "RUNNING" in _invoke("instance", "resume", instance_id)

    output = _invoke("instance", "advance", instance_id)
    assert output.startswith("Queued ADVANCE_INSTANCE item")

    submit = _tasks(instance_id)["submit"]
    assert "SKIPPED" in _invoke("task", "skip", submit[0], "--reason", "duplicate")

    assert "FAILED" in _invoke("instance", "fail", instance_id, "--reason", "withdrawn")
    shown = _invoke("instance", "show", instance_id)
    assert "Failure: withdrawn" in shown


def test_missing_records_exit_with_error():
    output = _invoke("instance", "show", "missing-id", expect=1)
    assert "Error [INSTANCE_NOT_FOUND]" in output, f"Unexpected output: {output}"

    output = _invoke("instance", "start", "nope", expect=1)
    assert "Error [DEFINITION_NOT_FOUND]" in output

    output = _invoke("task", "complete", "missing-task", expect=1)
    assert "Error [TASK_NOT_FOUND]" in output

    output = _invoke("instance", "start", "expense", "--context", "[1, 2]", expect=1)
    assert "Invalid JSON payload" in output


def test_instance_stats_reports_counts_and_node_times():
    _invoke("definition", "publish", str(FIXTURES / "expense.yaml"))
    output = _invoke("instance", "start", "expense", "--context", '{"employee": "alice"}')
    instance_id = output.split()[2].rstrip(":")
    submit = _tasks(instance_id)["submit"]
    _invoke("task", "complete", submit[0], "--output", '{"amount": 50}', "--actor", "alice")

    text = _invoke("instance", "stats", "--definition", "expense")
    assert "Instances: 1 (RUNNING 1, COMPLETED 0, FAILED 0, SUSPENDED 0)" in text
    assert "Pending tasks: 0" in text
    assert "expense\tsubmit\tcompleted=1\tfailed=0\twaiting=0" in text

    data = json.loads(_invoke("instance", "stats", "--json"))
    assert data["instances"]["by_status"]["RUNNING"] == 1
    (node,) = data["nodes"]
    assert node["node_id"] == "submit"
    assert node["function_code"] == "expense.submit"
    assert node["durations"]["count"] == 1
    assert node["failure_rate"] == 0.0

    empty = _invoke("instance", "stats", "--definition", "other")
    assert "Instances: 0" in empty
