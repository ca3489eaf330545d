import json

import pytest

from deploy_console import runner


@pytest.fixture
def runner_env(app_root, monkeypatch):
    monkeypatch.chdir(app_root)
    monkeypatch.setenv("APP_ROOT", str(app_root))
    monkeypatch.setenv("DEMO_STEP_DELAY_SECONDS", "0")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    return app_root


def _status(app_root):
    return json.loads((app_root / "tmp" / "deployment_status.json").read_text())


def test_parser_rejects_step_and_steps_together():
    with pytest.raises(SystemExit):
        runner.build_parser().parse_args(["--step", "a", "--steps", "b"])


def test_demo_run(runner_env):
    assert runner.main(["--test", "--deployment-id", "deploy-cli"]) == 0

    status = _status(runner_env)
    assert status["status"] == "completed"
    assert status["deployment_id"] == "deploy-cli"
    assert set(status["step_timings"]) == {"create-site", "get-cred", "trigger-deploy", "github-actions"}


def test_single_step(runner_env):
    assert runner.main(["--test", "--step", "get-cred"]) == 0
    assert list(_status(runner_env)["step_timings"]) == ["get-cred"]


def test_invalid_step_exits_non_zero(runner_env):
    assert runner.main(["--steps", "create-site,bogus"]) == 1
    assert _status(runner_env)["status"] == "failed"
