"""Tests for CLI commands.

These tests verify that all CLI commands are properly registered and that
the main flows work end to end against a temporary SQLite store.
"""

import json
import re

import pytest
import yaml

from auditron_core.runner.main import create_cli, main


def subcommands(parser) -> dict:
    for action in parser._actions:
        if action.dest == "command":
            return action.choices
    return {}


@pytest.fixture
def config_file(tmp_path):
    """Config pointing at a temporary job store, with instant retries."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "state_db_path": str(tmp_path / "jobs.db"),
                "retry": {"max_attempts": 2, "base_delay_seconds": 0, "max_delay_seconds": 0},
                "log_level": "WARNING",
            }
        )
    )
    return path


@pytest.fixture
def run(config_file, capsys):
    """Run the CLI with the temp config; returns (exit code, stdout)."""

    def _run(*argv: str) -> tuple[int, str]:
        code = main(["-c", str(config_file), *argv])
        return code, capsys.readouterr().out

    return _run


def submitted_id(output: str) -> str:
    found = re.search(r"Submitted job (\S+)", output)
    assert found, output
    return found.group(1)


class TestCLICommandRegistry:
    """Tests for CLI command registration."""

    def test_all_commands_registered(self):
        """Verify all expected commands are registered."""
        commands = set(subcommands(create_cli()))

        assert commands == {
            "init-config",
            "worker",
            "submit",
            "status",
            "list",
            "cancel",
            "resubmit",
            "stats",
            "reconcile",
        }

    def test_submit_rejects_unknown_type(self):
        with pytest.raises(SystemExit):
            create_cli().parse_args(["submit", "TRANSLATION", "--org", "org-1"])

    def test_submit_defaults(self):
        args = create_cli().parse_args(["submit", "OCR", "--org", "org-1"])

        assert args.input == "{}"
        assert args.priority is None
        assert args.delay == 0

    def test_reconcile_options_documented(self):
        help_text = subcommands(create_cli())["reconcile"].format_help()

        for option in ("--name", "--start", "--end", "--data", "--wait", "--show", "--matches"):
            assert option in help_text

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 1
        assert "auditron" in capsys.readouterr().out


class TestInitConfig:
    """Tests for init-config."""

    def test_writes_default_config(self, tmp_path, capsys):
        path = tmp_path / "new" / "config.yaml"

        assert main(["-c", str(path), "init-config"]) == 0

        data = yaml.safe_load(path.read_text())
        assert data["queue"]["visibility_timeout_seconds"] == 30
        assert data["retry"]["max_attempts"] == 3

    def test_refuses_to_overwrite(self, config_file, capsys):
        assert main(["-c", str(config_file), "init-config"]) == 1
        assert "already exists" in capsys.readouterr().out
        assert main(["-c", str(config_file), "init-config", "--force"]) == 0

    def test_invalid_config_is_reported(self, tmp_path, capsys):
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump({"workers": {"count": 0}}))

        assert main(["-c", str(path), "stats"]) == 1
        assert "workers.count" in capsys.readouterr().out


class TestJobCommands:
    """Submit, inspect and work jobs."""

    def test_submit_and_status(self, run):
        code, out = run("submit", "OCR", "--org", "org-1", "--input", '{"documentId": "doc-1"}')
        assert code == 0
        job_id = submitted_id(out)

        code, out = run("status", job_id, "--org", "org-1")

        assert code == 0
        assert "QUEUED" in out
        assert "Job submitted (OCR)" in out

    def test_status_other_org(self, run):
        job_id = submitted_id(run("submit", "OCR", "--org", "org-1")[1])

        code, out = run("status", job_id, "--org", "org-2")

        assert code == 1
        assert "not found" in out

    def test_bad_input_json(self, run):
        code, out = run("submit", "OCR", "--org", "org-1", "--input", "{nope")

        assert code == 1
        assert "not valid JSON" in out

    def test_worker_once_fails_unhandled_type(self, run):
        job_id = submitted_id(run("submit", "COMPLIANCE", "--org", "org-1")[1])

        code, out = run("worker", "--once")
        assert code == 0
        assert "Processed 1 job(s)" in out

        _, out = run("status", job_id, "--org", "org-1")
        assert "FAILED" in out
        assert "No handler registered" in out

    def test_list_cancel_resubmit_stats(self, run):
        job_id = submitted_id(run("submit", "REPORTING", "--org", "org-1")[1])

        code, out = run("cancel", job_id, "--org", "org-1")
        assert code == 0
        assert "FAILED" in out

        code, out = run("resubmit", job_id, "--org", "org-1")
        assert code == 0
        assert f"Resubmitted {job_id}" in out

        code, out = run("list", "--org", "org-1")
        assert code == 0
        assert "2 job(s)" in out

        code, out = run("stats", "--org", "org-1")
        assert code == 0
        assert "Queue Status" in out
        assert "Queued:        1" in out
        assert "Failed:        1" in out


class TestReconcileCommand:
    """Start and show reconciliations from the command line."""

    @pytest.fixture
    def data_file(self, tmp_path):
        path = tmp_path / "march.json"
        path.write_text(
            json.dumps(
                {
                    "transactions": [
                        {"id": "t1", "amount": "100.00", "date": "2024-03-05", "description": "Acme"},
                        {"id": "t2", "amount": "-20.00", "date": "2024-03-09", "description": "Fee"},
                    ],
                    "ledgerEntries": [
                        {"id": "l1", "amount": "100.00", "date": "2024-03-06", "description": "Acme"},
                    ],
                }
            )
        )
        return path

    def test_reconcile_wait_and_show(self, run, data_file):
        code, out = run(
            "reconcile", "--org", "org-1", "--name", "March",
            "--start", "2024-03-01", "--end", "2024-03-31",
            "--data", str(data_file), "--wait",
        )

        assert code == 0
        assert "Reconciliation Results" in out
        assert "Matched:            1" in out
        assert "Unmatched:          1" in out
        rec_id = re.search(r"Reconciliation (\S+) queued", out).group(1)

        code, out = run("reconcile", "--org", "org-1", "--show", rec_id, "--matches")

        assert code == 0
        results = json.loads(out)
        assert results["status"] == "COMPLETED"
        assert [m["matchType"] for m in results["matches"]] == ["EXACT", "UNMATCHED"]

    def test_reconcile_requires_period(self, run, data_file):
        code, out = run("reconcile", "--org", "org-1", "--name", "March", "--data", str(data_file))

        assert code == 1
        assert "--start" in out

    def test_reconcile_backwards_period(self, run, data_file):
        code, out = run(
            "reconcile", "--org", "org-1", "--name", "March",
            "--start", "2024-03-31", "--end", "2024-03-01", "--data", str(data_file),
        )

        assert code == 1
        assert "is after" in out

    def test_show_unknown(self, run):
        code, out = run("reconcile", "--org", "org-1", "--show", "missing")

        assert code == 1
        assert "not found" in out

    def test_wait_leaves_other_jobs_queued(self, run, data_file):
        other = submitted_id(run("submit", "OCR", "--org", "org-2")[1])

        code, out = run(
            "reconcile", "--org", "org-1", "--name", "March",
            "--start", "2024-03-01", "--end", "2024-03-31",
            "--data", str(data_file), "--wait",
        )

        assert code == 0
        assert "Status:             COMPLETED" in out
        _, out = run("status", other, "--org", "org-2")
        assert "Status:      QUEUED" in out

    def test_bad_data_json(self, run, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{nope")

        code, out = run(
            "reconcile", "--org", "org-1", "--name", "March",
            "--start", "2024-03-01", "--end", "2024-03-31", "--data", str(path),
        )

        assert code == 1
        assert "not valid JSON" in out

    def test_missing_data_file(self, run, tmp_path):
        code, out = run(
            "reconcile", "--org", "org-1", "--name", "March",
            "--start", "2024-03-01", "--end", "2024-03-31",
            "--data", str(tmp_path / "absent.json"),
        )

        assert code == 1
        assert "Cannot read --data" in out
