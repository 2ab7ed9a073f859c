import pytest
from click.testing import CliRunner

from cli import cli


@pytest.fixture
def run(tmp_path):
    runner = CliRunner()
    db = str(tmp_path / "cli.db")

    def invoke(*args):
        return runner.invoke(cli, ["--db", db, *args])

    return invoke


def test_add_list_and_status(run):
    assert run("machine", "add", "--id", "M1", "--location", "L1").exit_code == 0
    assert run("machine", "add", "--id", "M2", "--location", "L1",
               "--status", "RUNNING", "--job", "job-1").exit_code == 0

    result = run("machine", "list", "--location", "L1")
    assert "M1 | location=L1 | status=AVAILABLE" in result.output
    assert "M2 | location=L1 | status=RUNNING | job=job-1" in result.output

    result = run("status")
    assert "AVAILABLE: 1" in result.output
    assert "RUNNING: 1" in result.output


def test_duplicate_and_inconsistent_add(run):
    run("machine", "add", "--id", "M1", "--location", "L1")
    result = run("machine", "add", "--id", "M1", "--location", "L1")
    assert result.exit_code == 1
    assert "already exists" in result.output

    result = run("machine", "add", "--id", "M2", "--location", "L1", "--status", "RUNNING")
    assert result.exit_code == 1
    assert "requires a job id" in result.output


def test_reserve_start_show(run):
    run("machine", "add", "--id", "M1", "--location", "L1")

    result = run("reserve", "--location", "L1", "--job", "job-7")
    assert result.exit_code == 0
    assert "status=AWAITING_DROPOFF | job=job-7" in result.output

    result = run("start", "M1")
    assert result.exit_code == 0
    assert "status=RUNNING" in result.output

    result = run("machine", "show", "M1")
    assert "status=RUNNING" in result.output


def test_failures_exit_non_zero(run):
    run("machine", "add", "--id", "M1", "--location", "L1")
    result = run("reserve", "--location", "L9", "--job", "job-7")
    assert result.exit_code == 1
    assert "NOT_FOUND" in result.output

    result = run("start", "M1")
    assert result.exit_code == 1
    assert "INVALID_STATE" in result.output


def test_hardware_command_failure(run):
    run("machine", "add", "--id", "M1", "--location", "L1")
    run("config", "set", "hardware_command", "exit 1")
    run("reserve", "--location", "L1", "--job", "job-7")

    result = run("start", "M1")
    assert result.exit_code == 1
    assert "HARDWARE_ERROR" in result.output
    assert "status=ERROR | job=job-7" in result.output


def test_release_and_sweep(run):
    run("machine", "add", "--id", "M1", "--location", "L1")
    run("machine", "add", "--id", "M2", "--location", "L1")
    run("reserve", "--location", "L1", "--job", "job-7")
    assert run("release", "M1", "--job", "job-7").exit_code == 0

    assert "No expired holds found." in run("sweep").output


def test_config_commands(run):
    assert "hold_seconds not set" in run("config", "get", "hold_seconds").output
    assert "hold_seconds=900 (default)" in run("config", "get", "hold_seconds", "--default", "900").output
    run("config", "set", "hold_seconds", "60")
    assert "hold_seconds=60" in run("config", "get", "hold_seconds").output
    assert "hold_seconds=60" in run("config", "list").output
