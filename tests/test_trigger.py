import pytest

from ciflow import trigger as trigger_mod
from ciflow.settings import Settings
from ciflow.stores import DEFAULT_CACHE_DIR
from ciflow.trigger import build_trigger, parse_meta


@pytest.fixture
def no_git(monkeypatch):
    def fail(_cwd=None):
        raise FileNotFoundError("git")

    monkeypatch.setattr(trigger_mod, "current_branch", fail)
    monkeypatch.setattr(trigger_mod, "head_sha", fail)


class TestBuildTrigger:
    def test_hosted_runner_variables(self, no_git):
        t = build_trigger(environ={
            "GITHUB_EVENT_NAME": "pull_request",
            "GITHUB_HEAD_REF": "feature/x",
            "GITHUB_REF_NAME": "12/merge",
            "GITHUB_SHA": "abc",
            "GITHUB_REPOSITORY": "org/repo",
        })
        assert t.event == "pull_request"
        assert t.is_pull_request
        assert t.branch == "feature/x"
        assert dict(t.metadata) == {"sha": "abc", "head_ref": "feature/x", "repository": "org/repo"}

    def test_explicit_arguments_win(self, no_git):
        t = build_trigger(
            event="push",
            branch="main",
            is_pull_request=False,
            metadata={"sha": "override"},
            environ={"GITHUB_EVENT_NAME": "pull_request", "GITHUB_SHA": "abc"},
        )
        assert (t.event, t.branch, t.is_pull_request) == ("push", "main", False)
        assert t.metadata["sha"] == "override"

    def test_defaults_without_git(self, no_git):
        t = build_trigger(environ={})
        assert t.event == "push"
        assert t.branch == ""
        assert not t.is_pull_request
        assert dict(t.metadata) == {}

    def test_git_fallback(self, monkeypatch):
        monkeypatch.setattr(trigger_mod, "current_branch", lambda cwd=None: "develop")
        monkeypatch.setattr(trigger_mod, "head_sha", lambda cwd=None: "f00")
        t = build_trigger(environ={})
        assert t.branch == "develop"
        assert t.metadata["sha"] == "f00"


def test_parse_meta():
    assert parse_meta(["a=1", "b=x=y"]) == {"a": "1", "b": "x=y"}
    with pytest.raises(ValueError):
        parse_meta(["novalue"])


class TestSettings:
    def test_defaults(self):
        s = Settings.from_env({})
        assert s.max_workers >= 1
        assert s.cache_dir == DEFAULT_CACHE_DIR
        assert s.redis_url is None
        assert s.fail_fast is True
        assert s.report_path is None

    def test_environment_overrides(self):
        s = Settings.from_env({
            "CIFLOW_MAX_WORKERS": "3",
            "CIFLOW_CACHE_DIR": "/tmp/c",
            "CIFLOW_REDIS_URL": "redis://cache:6379/1",
            "CIFLOW_FAIL_FAST": "no",
            "CIFLOW_REPORT_PATH": "report.json",
        })
        assert (s.max_workers, s.cache_dir, s.redis_url, s.fail_fast, s.report_path) == (
            3, "/tmp/c", "redis://cache:6379/1", False, "report.json",
        )

    def test_bad_flag(self):
        with pytest.raises(ValueError):
            Settings.from_env({"CIFLOW_FAIL_FAST": "sometimes"})
