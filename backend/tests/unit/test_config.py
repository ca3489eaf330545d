import json

from deploy_console.core.config import load_git_config


class TestSettings:
    def test_relative_paths_resolve_against_root(self, settings, app_root):
        assert settings.path(settings.STATUS_FILE) == app_root.resolve() / "tmp" / "deployment_status.json"
        assert str(settings.path("/etc/hosts")) == "/etc/hosts"

    def test_postgres_url_is_rewritten(self, make_settings):
        settings = make_settings(DATABASE_URL="postgres://u:p@db/deploys")
        assert settings.DATABASE_URL == "postgresql+psycopg://u:p@db/deploys"

    def test_empty_database_url_disables_ledger(self, make_settings):
        assert make_settings(DATABASE_URL="").DATABASE_URL is None


class TestGitConfig:
    def test_no_file_no_settings(self, settings):
        git = load_git_config(settings)
        assert git.file_present is False
        assert git.is_complete is False

    def test_file_values(self, settings, app_root):
        (app_root / "config").mkdir()
        (app_root / "config" / "git.json").write_text(json.dumps({"org": "acme", "repo": "site", "token": "t1"}))

        git = load_git_config(settings)
        assert (git.owner, git.repo, git.token, git.file_present) == ("acme", "site", "t1", True)
        assert git.is_complete

    def test_settings_win_over_file(self, make_settings, app_root):
        (app_root / "config").mkdir()
        (app_root / "config" / "git.json").write_text(json.dumps({"org": "acme", "repo": "site"}))

        git = load_git_config(make_settings(GITHUB_TOKEN="t2", GITHUB_REPO="other"))
        assert (git.owner, git.repo, git.token) == ("acme", "other", "t2")

    def test_environment_token_fallback(self, settings, monkeypatch):
        monkeypatch.setenv("GITHUB_TOKEN", "from-env")
        assert load_git_config(settings).token == "from-env"

    def test_malformed_file_counts_as_present(self, settings, app_root):
        (app_root / "config").mkdir()
        (app_root / "config" / "git.json").write_text("{oops")

        git = load_git_config(settings)
        assert git.file_present is True
        assert git.owner is None
