from ciflow.actions import PostActionRunner
from ciflow.model import PostAction, TriggerContext
from ciflow.runner import run_pipeline

PR = TriggerContext(event="pull_request", branch="feature", is_pull_request=True)
PUSH = TriggerContext(event="push", branch="main")

AUTO_FIX = PostAction(id="auto-fix", condition="always() && github.event_name == 'pull_request'")


def test_pull_request_action_runs_even_after_failure(job, pipeline, scripted):
    pipe = pipeline(job("lint"), trigger=PR, actions=(AUTO_FIX,))
    runner = scripted({"lint": False})
    report = run_pipeline(pipe, runner=runner, hashes={})

    assert [a.outcome for a in report.actions] == ["success"]
    assert runner.calls[-1] == "action:auto-fix"
    assert report.verdict == "failure"


def test_pull_request_action_skipped_on_push(job, pipeline, scripted):
    pipe = pipeline(job("lint"), trigger=PUSH, actions=(AUTO_FIX,))
    report = run_pipeline(pipe, runner=scripted(), hashes={})
    assert report.actions[0].outcome == "skipped"
    assert report.actions[0].reason


def test_default_condition_needs_every_job_to_succeed(job, pipeline, scripted):
    publish = PostAction(id="publish")
    pipe = pipeline(job("a"), job("b"), actions=(publish,))
    report = run_pipeline(pipe, runner=scripted({"b": False}), hashes={})
    assert report.actions[0].outcome == "skipped"


def test_action_failure_does_not_change_verdict(job, pipeline, scripted):
    pipe = pipeline(job("a"), actions=(PostAction(id="notify", condition="always()"),))
    report = run_pipeline(pipe, runner=scripted({"notify": RuntimeError("no network")}), hashes={})
    assert report.actions[0].outcome == "failure"
    assert "no network" in report.actions[0].reason
    assert report.verdict == "success"
    assert report.exit_code == 0


def test_each_action_runs_at_most_once(job, pipeline, scripted):
    pipe = pipeline(job("a"), trigger=PR, actions=(AUTO_FIX,))
    runner = scripted()
    run_pipeline(pipe, runner=runner, hashes={})

    actions = PostActionRunner(runner, PR)
    assert len(actions.run(pipe)) == 1
    assert actions.run(pipe) == []
    assert runner.calls.count("action:auto-fix") == 2


def test_action_sees_pipeline_env(job, pipeline, scripted):
    action = PostAction(id="deploy", condition="env.TARGET == 'prod'")
    pipe = pipeline(job("a"), actions=(action,), env={"TARGET": "prod"})
    runner = scripted()
    report = run_pipeline(pipe, runner=runner, hashes={})
    assert report.actions[0].outcome == "success"
    assert runner.contexts[-1].env["TARGET"] == "prod"
