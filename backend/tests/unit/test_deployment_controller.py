import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from deploy_console.exceptions import ConfigurationError, DeploymentInProgressError
from deploy_console.schemas.deployment import (
    DeploymentHistoryEntry,
    DeploymentState,
    StepState,
)
from deploy_console.services.deployment_controller import PIPELINE, DeploymentController

CONTROLLER = "deploy_console.services.deployment_controller"

PIPELINE_SCRIPTS = {
    "scripts/site.sh": 'echo "site requested"',
    "scripts/creds.sh": 'echo "credentials ready"',
    "scripts/deploy.sh": 'echo "pushing"\nexit 1',
    "scripts/github-actions-monitor.sh": 'echo "never runs"',
}


@pytest.fixture
def controller(settings):
    return DeploymentController.from_settings(settings)


@pytest.fixture
def token_settings(make_settings):
    return make_settings(GITHUB_TOKEN="ghp_test", GITHUB_ORG="acme", GITHUB_REPO="site")


@pytest.fixture
def launch():
    with patch(f"{CONTROLLER}.resolve_interpreter", return_value="/usr/bin/python3") as interpreter, \
            patch(f"{CONTROLLER}.launch_detached", return_value=4321) as launcher:
        yield launcher, interpreter


def _messages(controller):
    return [(r.level, r.message) for r in controller.log_sink.all()]


class TestSteps:
    def test_available_steps_in_pipeline_order(self, controller):
        steps = controller.available_steps()
        assert list(steps) == ["create-site", "get-cred", "trigger-deploy", "github-actions"]
        assert steps["get-cred"].name == "Get Credentials"

    def test_select_steps_keeps_pipeline_order(self, controller):
        selected = controller.select_steps("github-actions,create-site")
        assert [s.key for s in selected] == ["create-site", "github-actions"]
        assert [s.key for s in controller.select_steps(None)] == list(PIPELINE)

    def test_select_unknown_step(self, controller):
        with pytest.raises(ConfigurationError, match="Invalid deployment step: nope"):
            controller.select_steps(["create-site", "nope"])


class TestRunPipeline:
    @pytest.mark.asyncio
    async def test_demo_mode_runs_every_step(self, controller):
        state = await controller.run_pipeline(test_mode=True, deployment_id="deploy-demo")

        assert state == DeploymentState.COMPLETED
        status = controller.status()
        assert status.status == DeploymentState.COMPLETED
        assert status.deployment_id == "deploy-demo"
        assert all(status.step_timings[key].status == StepState.COMPLETED for key in PIPELINE)
        assert status.total_duration >= 0

        messages = _messages(controller)
        for info in PIPELINE.values():
            assert ("INFO", f"DEMO MODE: Simulating {info['name']}") in messages
            assert ("SUCCESS", f"DEMO MODE: {info['name']} completed successfully") in messages
        assert ("INFO", "Starting background deployment process (deploy-demo)...") in messages
        assert messages[-1] == ("SUCCESS", "Deployment completed successfully!")

    @pytest.mark.asyncio
    async def test_no_token_falls_back_to_demo(self, controller):
        state = await controller.run_pipeline(["create-site"], deployment_id="deploy-x")

        assert state == DeploymentState.COMPLETED
        messages = _messages(controller)
        assert ("WARNING", "No GitHub token found - running in demo mode") in messages
        assert ("INFO", "Running selected steps: create-site") in messages

    @pytest.mark.asyncio
    async def test_failure_stops_the_pipeline(self, token_settings, make_script):
        for path, body in PIPELINE_SCRIPTS.items():
            make_script(path, body)
        controller = DeploymentController.from_settings(token_settings)

        state = await controller.run_pipeline(deployment_id="deploy-fail")

        assert state == DeploymentState.FAILED
        status = controller.status()
        assert status.status == DeploymentState.FAILED
        assert status.step_timings["create-site"].status == StepState.COMPLETED
        assert status.step_timings["get-cred"].status == StepState.COMPLETED
        assert status.step_timings["trigger-deploy"].status == StepState.FAILED
        assert "github-actions" not in status.step_timings

        messages = _messages(controller)
        assert ("ERROR", "Deployment failed at step: Trigger Deployment (exit code: 1)") in messages
        assert ("INFO", "never runs") not in messages
        assert ("SUCCESS", "Deployment completed successfully!") not in messages

    @pytest.mark.asyncio
    async def test_invalid_step_fails_without_running(self, controller):
        state = await controller.run_pipeline("bogus")
        assert state == DeploymentState.FAILED
        assert ("ERROR", "Invalid deployment step: bogus") in _messages(controller)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_logged(self, token_settings):
        controller = DeploymentController.from_settings(token_settings)
        controller.step_runner.run = AsyncMock(side_effect=RuntimeError("disk full"))

        state = await controller.run_pipeline(["create-site"], deployment_id="deploy-err")

        assert state == DeploymentState.FAILED
        assert controller.status().status == DeploymentState.FAILED
        assert ("ERROR", "Deployment failed with exception: disk full") in _messages(controller)

    @pytest.mark.asyncio
    async def test_ledger_is_told_about_the_run(self, controller):
        controller.ledger = MagicMock()
        controller.ledger.start_run = AsyncMock()
        controller.ledger.finish_run = AsyncMock()

        await controller.run_pipeline(["create-site"], test_mode=True, deployment_id="deploy-l")

        controller.ledger.start_run.assert_awaited_once_with("deploy-l", None, ["create-site"])
        controller.ledger.finish_run.assert_awaited_once_with("deploy-l", "completed")


class TestClickUpNotification:
    @pytest.fixture
    def real_controller(self, token_settings, make_script, app_root):
        for path in PIPELINE_SCRIPTS:
            make_script(path, "exit 0")
        (app_root / "tmp").mkdir(exist_ok=True)
        (app_root / "tmp" / "site_url.txt").write_text("example.kinsta.cloud\n")
        controller = DeploymentController.from_settings(token_settings)
        controller.notifier = MagicMock()
        controller.notifier.configured = True
        controller.notifier.notify_deployment_complete = AsyncMock(return_value={})
        return controller

    @pytest.mark.asyncio
    async def test_completed_run_notifies_task(self, real_controller):
        real_controller.set_clickup_task("task-7", True)

        state = await real_controller.run_pipeline(deployment_id="deploy-c")

        assert state == DeploymentState.COMPLETED
        call = real_controller.notifier.notify_deployment_complete.await_args
        assert call.args == ("task-7",)
        assert call.kwargs["site_url"] == "example.kinsta.cloud"
        assert call.kwargs["admin_url"] is None
        assert ("SUCCESS", "ClickUp task task-7 updated with deployment details") in _messages(real_controller)

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_the_run(self, real_controller):
        real_controller.set_clickup_task("task-7", True)
        real_controller.notifier.notify_deployment_complete.side_effect = httpx.ConnectError("down")

        state = await real_controller.run_pipeline(deployment_id="deploy-c")

        assert state == DeploymentState.COMPLETED
        assert real_controller.status().status == DeploymentState.COMPLETED
        assert any(level == "WARNING" and "Failed to update ClickUp task task-7" in msg
                   for level, msg in _messages(real_controller))

    @pytest.mark.asyncio
    async def test_disabled_integration_is_skipped(self, real_controller):
        real_controller.set_clickup_task("task-7", False)
        await real_controller.run_pipeline(deployment_id="deploy-c")
        real_controller.notifier.notify_deployment_complete.assert_not_awaited()


class TestTrigger:
    def test_trigger_demo_writes_starting_status(self, controller, launch):
        launcher, _ = launch
        controller.status_store.write({"status": "idle", "clickup_task_id": "task-1"})

        result = controller.trigger_full()

        assert result.status == "started"
        assert result.pid == 4321
        assert result.demo_mode is True
        assert result.steps == list(PIPELINE)

        status = controller.status()
        assert status.status == DeploymentState.STARTING
        assert status.step == "initializing"
        assert status.deployment_id == result.deployment_id
        assert status.logs == ["Deployment requested from web interface"]
        assert status.clickup_task_id == "task-1"

        command = launcher.call_args.args[0]
        assert command[:3] == ["/usr/bin/python3", "-m", "deploy_console.runner"]
        assert command[command.index("--deployment-id") + 1] == result.deployment_id
        assert "--test" in command
        assert "--steps" not in command

    def test_trigger_subset_passes_steps(self, controller, launch):
        launcher, _ = launch
        result = controller.trigger_full(["get-cred", "create-site"])

        command = launcher.call_args.args[0]
        assert command[command.index("--steps") + 1] == "create-site,get-cred"
        assert result.steps == ["create-site", "get-cred"]

    def test_trigger_while_running_is_rejected(self, controller, launch):
        launcher, _ = launch
        controller.status_store.write({"status": "running", "deployment_id": "deploy-old"})

        with pytest.raises(DeploymentInProgressError, match="deploy-old"):
            controller.trigger_full()
        launcher.assert_not_called()

        result = controller.trigger_full(force=True)
        assert controller.status().deployment_id == result.deployment_id

    def test_git_config_without_token_is_rejected(self, controller, app_root, launch):
        launcher, _ = launch
        (app_root / "config").mkdir()
        (app_root / "config" / "git.json").write_text(json.dumps({"org": "acme", "repo": "site"}))

        with pytest.raises(ConfigurationError, match="GitHub token not configured"):
            controller.trigger_full()
        launcher.assert_not_called()
        assert not controller.status_store.path.exists()

    def test_missing_script_is_rejected_before_any_write(self, token_settings, launch):
        launcher, _ = launch
        controller = DeploymentController.from_settings(token_settings)

        with pytest.raises(ConfigurationError, match="Script not found"):
            controller.trigger_full()
        launcher.assert_not_called()
        assert not controller.status_store.path.exists()

    def test_no_interpreter_is_rejected(self, controller):
        with patch(f"{CONTROLLER}.resolve_interpreter", side_effect=ConfigurationError("No Python CLI interpreter found")), \
                patch(f"{CONTROLLER}.launch_detached") as launcher:
            with pytest.raises(ConfigurationError, match="No Python CLI interpreter"):
                controller.trigger_full()
        launcher.assert_not_called()
        assert not controller.status_store.path.exists()

    def test_real_mode_with_scripts(self, token_settings, make_script, launch):
        launcher, _ = launch
        for path in PIPELINE_SCRIPTS:
            make_script(path, "exit 0")
        controller = DeploymentController.from_settings(token_settings)

        result = controller.trigger_full()

        assert result.demo_mode is False
        assert "--test" not in launcher.call_args.args[0]

    def test_run_step(self, controller, launch):
        result = controller.run_step("github-actions")
        assert result.steps == ["github-actions"]
        with pytest.raises(ConfigurationError):
            controller.run_step("nope")


class TestRepeat:
    def test_requires_credentials(self, controller, make_script, launch):
        make_script("scripts/deploy.sh", "exit 0")
        with pytest.raises(ConfigurationError, match="No credentials found"):
            controller.trigger_repeat()

    def test_requires_deploy_script(self, controller, launch):
        with pytest.raises(ConfigurationError, match="Script not found"):
            controller.trigger_repeat()

    def test_runs_only_the_deploy_step(self, controller, make_script, app_root, launch):
        launcher, _ = launch
        make_script("scripts/deploy.sh", "exit 0")
        (app_root / "tmp").mkdir(exist_ok=True)
        (app_root / "tmp" / "kinsta_token.txt").write_text("kt-123")

        result = controller.trigger_repeat()

        assert result.steps == ["trigger-deploy"]
        command = launcher.call_args.args[0]
        assert command[command.index("--steps") + 1] == "trigger-deploy"
        assert launcher.call_args.kwargs["wrapper_path"].name == "deploy_again_runner.sh"
        assert controller.status().step == "deploy"

    def test_tokens_in_config_count_as_credentials(self, token_settings, make_script, app_root, launch):
        make_script("scripts/deploy.sh", "exit 0")
        (app_root / "config").mkdir()
        (app_root / "config" / "site.json").write_text(json.dumps({"kinsta_token": "kt"}))
        controller = DeploymentController.from_settings(token_settings)

        assert controller.trigger_repeat().steps == ["trigger-deploy"]


class TestStateManagement:
    def test_reset_preserves_correlation_and_clears_run_reference(self, controller):
        controller.status_store.write({
            "status": "failed",
            "message": "boom",
            "clickup_task_id": "task-3",
            "clickup_integration_enabled": True,
        })
        controller.run_reference.write("98765")

        status = controller.reset()

        assert status.status == DeploymentState.IDLE
        assert status.message == "Ready for deployment"
        assert status.clickup_task_id == "task-3"
        assert status.step_timings == {}
        assert controller.run_reference.read() is None

    @pytest.mark.asyncio
    async def test_stop_cancels_the_active_run(self, controller):
        controller.status_store.start_run("deploy-s")
        controller.status_store.start_step("create-site", "Initiate Site Creation")
        controller.run_reference.write("111")

        with patch(f"{CONTROLLER}.kill_matching", return_value=True) as kill:
            status = await controller.stop()

        kill.assert_called_once_with("deploy_console.runner")
        assert status.status == DeploymentState.CANCELLED
        # The interrupted step stays visible until the next reset
        assert status.step_timings["create-site"].status == StepState.RUNNING
        assert controller.run_reference.read() is None
        assert ("WARNING", "Deployment stopped by user") in _messages(controller)

    @pytest.mark.asyncio
    async def test_stop_when_idle(self, controller):
        with patch(f"{CONTROLLER}.kill_matching", return_value=False):
            status = await controller.stop()
        assert status.status == DeploymentState.IDLE

    @pytest.mark.asyncio
    async def test_stop_leaves_finished_run_alone(self, controller):
        controller.status_store.start_run("deploy-f")
        controller.status_store.finish_run(DeploymentState.COMPLETED, "Deployment completed successfully")

        with patch(f"{CONTROLLER}.kill_matching", return_value=False):
            status = await controller.stop()

        assert status.status == DeploymentState.COMPLETED
        assert status.deployment_id == "deploy-f"

    def test_set_clickup_task(self, controller):
        status = controller.set_clickup_task("task-5", True)
        assert status.clickup_task_id == "task-5"
        assert status.clickup_integration_enabled is True

        status = controller.set_clickup_task(None, False)
        assert status.clickup_task_id is None
        assert status.clickup_integration_enabled is False

    def test_set_clickup_task_rejected_while_running(self, controller):
        controller.status_store.write({"status": "starting"})
        with pytest.raises(DeploymentInProgressError):
            controller.set_clickup_task("task-5")

    def test_clear_logs(self, controller):
        controller.log_sink.info("x")
        controller.clear_logs()
        assert controller.logs() == []


class TestQueries:
    def test_logs_tail_and_since(self, controller):
        controller.log_sink.info("first")
        controller.log_sink.info("second")

        assert [r.message for r in controller.logs(1)] == ["second"]
        assert [r.message for r in controller.logs(since="2000-01-01 00:00:00")] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_history_from_log_markers(self, controller, token_settings, make_script):
        await controller.run_pipeline(test_mode=True, deployment_id="deploy-a")

        for path, body in PIPELINE_SCRIPTS.items():
            make_script(path, body)
        failing = DeploymentController.from_settings(token_settings)
        await failing.run_pipeline(deployment_id="deploy-b")

        history = await controller.history(10)

        assert [h.deployment_id for h in history] == ["deploy-b", "deploy-a"]
        assert history[0].status == "failed"
        assert history[0].error == "Deployment failed at step: Trigger Deployment (exit code: 1)"
        assert history[1].status == "completed"
        assert {s.step for s in history[1].steps} == set(PIPELINE)
        assert len(await controller.history(1)) == 1

    @pytest.mark.asyncio
    async def test_history_marks_missing_script_as_failed(self, token_settings):
        controller = DeploymentController.from_settings(token_settings)

        state = await controller.run_pipeline(["create-site"], deployment_id="deploy-m")

        assert state == DeploymentState.FAILED
        history = controller.history_from_log(5)
        assert [h.deployment_id for h in history] == ["deploy-m"]
        assert history[0].status == "failed"
        assert "Script not found" in history[0].error

    def test_history_keeps_piped_messages_whole(self, controller):
        controller.log_sink.info("Starting background deployment process (deploy-p)")
        controller.log_sink.info("Done | ok")
        controller.log_sink.info("Checked", "get-cred")

        history = controller.history_from_log(5)

        assert [s.step for s in history[0].steps] == ["get-cred"]
        assert [r.message for r in controller.logs(2)] == ["Checked", "Done | ok"]

    @pytest.mark.asyncio
    async def test_history_prefers_ledger(self, controller):
        entry = DeploymentHistoryEntry(deployment_id="deploy-db", start_time="2025-01-01 00:00:00")
        controller.ledger = MagicMock()
        controller.ledger.recent_runs = AsyncMock(return_value=[entry])

        assert await controller.history(5) == [entry]
        controller.ledger.recent_runs.assert_awaited_once_with(5)

    def test_system_status(self, controller, make_script):
        make_script("scripts/site.sh", "exit 0")
        make_script("scripts/deploy.sh", "exit 0", executable=False)

        report = controller.system_status()

        assert report.scripts["site.sh"].executable is True
        assert report.scripts["deploy.sh"].exists is True
        assert report.scripts["deploy.sh"].executable is False
        assert report.scripts["creds.sh"].exists is False
        assert "status.sh" in report.scripts
        assert report.deployment.status == DeploymentState.IDLE
