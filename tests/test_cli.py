import json
import sys
import textwrap

import pytest
from click.testing import CliRunner

from ciflow import trigger as trigger_mod
from ciflow.cli import cli

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="steps use a POSIX shell")

PASSING = """
name: demo
jobs:
  build:
    steps:
      - run: echo built > built.txt
  test:
    needs: build
    matrix:
      py: ["3.11", "3.12"]
    steps:
      - run: test -f built.txt
"""

FAILING = """
jobs:
  lint:
    steps:
      - run: exit 3
  deploy:
    needs: lint
    steps:
      - run: touch deployed.txt
"""


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for var in ("GITHUB_EVENT_NAME", "GITHUB_HEAD_REF", "GITHUB_REF_NAME", "GITHUB_SHA", "CIFLOW_REPORT_PATH", "CIFLOW_REDIS_URL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setattr(trigger_mod, "current_branch", lambda cwd=None: "main")
    monkeypatch.setattr(trigger_mod, "head_sha", lambda cwd=None: "abc")
    return tmp_path


def write(path, text):
    path.write_text(textwrap.dedent(text))
    return path


def invoke(*args):
    return CliRunner().invoke(cli, list(args))


class TestRun:
    def test_success_exits_zero(self, workdir):
        write(workdir / "ciflow.yml", PASSING)
        result = invoke("run", "--cache-dir", str(workdir / "cache"))
        assert result.exit_code == 0, result.output
        assert "Pipeline 'demo': SUCCESS" in result.output
        assert "test (py=3.12)" in result.output

    def test_failure_exits_one_and_skips_dependents(self, workdir):
        write(workdir / "pipeline.yml", FAILING)
        result = invoke("run", "pipeline.yml", "--no-fail-fast")
        assert result.exit_code == 1
        assert "lint: failure [critical]" in result.output
        assert "deploy: skipped" in result.output
        assert not (workdir / "deployed.txt").exists()

    def test_report_written(self, workdir):
        write(workdir / "ciflow.yml", FAILING)
        result = invoke("run", "--report", "report.json", "--event", "pull_request", "--meta", "pr=12")
        assert result.exit_code == 1
        report = json.loads((workdir / "report.json").read_text())
        assert report["verdict"] == "failure"
        assert report["trigger"]["event"] == "pull_request"
        assert report["trigger"]["isPullRequest"] is True
        assert report["trigger"]["metadata"]["pr"] == "12"

    def test_critical_override(self, workdir):
        write(workdir / "ciflow.yml", FAILING)
        result = invoke("run", "--critical", "deploy")
        assert result.exit_code == 0

    def test_dry_run_runs_nothing(self, workdir):
        write(workdir / "ciflow.yml", PASSING)
        result = invoke("run", "--dry-run")
        assert result.exit_code == 0
        assert not (workdir / "built.txt").exists()
        assert "2 instance(s)" in result.output

    def test_definition_error_exits_two(self, workdir):
        write(workdir / "ciflow.yml", "jobs:\n  a:\n    needs: b\n  b:\n    needs: a\n")
        result = invoke("run")
        assert result.exit_code == 2
        assert "cycle" in result.output.lower()

    def test_unknown_critical_job_exits_two(self, workdir):
        write(workdir / "ciflow.yml", PASSING)
        result = invoke("run", "--critical", "nope")
        assert result.exit_code == 2

    def test_bad_meta_is_a_usage_error(self, workdir):
        write(workdir / "ciflow.yml", PASSING)
        result = invoke("run", "--meta", "novalue")
        assert result.exit_code == 2

    def test_missing_pipeline(self, workdir):
        result = invoke("run")
        assert result.exit_code == 2
        assert "No pipeline file found" in result.output


class TestValidateAndKeys:
    def test_validate_prints_levels(self, workdir):
        write(workdir / "ciflow.yml", PASSING)
        result = invoke("validate")
        assert result.exit_code == 0
        assert "Level 0:" in result.output
        assert "build" in result.output

    def test_validate_reports_unknown_dependency(self, workdir):
        write(workdir / "ciflow.yml", "jobs:\n  a:\n    needs: ghost\n")
        result = invoke("validate")
        assert result.exit_code == 2
        assert "ghost" in result.output

    def test_keys_prints_resolved_chain(self, workdir):
        write(workdir / "requirements.txt", "click\n")
        write(workdir / "ciflow.yml", """
            jobs:
              test:
                matrix:
                  py: ["3.12"]
                cache:
                  key: pip-${{ matrix.py }}-${{ hashFiles('requirements.txt') }}
                  restoreKeys: ["pip-${{ matrix.py }}-"]
        """)
        result = invoke("keys")
        assert result.exit_code == 0, result.output
        assert "test (py=3.12)" in result.output
        assert "restore: pip-3.12-" in result.output
        key_line = next(line for line in result.output.splitlines() if "key:" in line)
        assert len(key_line.split("pip-3.12-", 1)[1]) == 64
