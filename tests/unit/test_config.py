from braindrive_installer.config import AgentSettings, OrchestratorSettings, load_settings


def test_defaults(monkeypatch):
    for name in ("PORT", "BRAINDRIVE_PORT", "BRAINDRIVE_MODEL"):
        monkeypatch.delenv(name, raising=False)
    settings = OrchestratorSettings(_env_file=None)
    assert settings.port == 3000
    assert settings.max_steps == 25


def test_conventional_env_names(monkeypatch):
    monkeypatch.setenv("PORT", "4000")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
    monkeypatch.delenv("BRAINDRIVE_PORT", raising=False)
    monkeypatch.delenv("BRAINDRIVE_API_KEY", raising=False)
    settings = OrchestratorSettings(_env_file=None)
    assert settings.port == 4000
    assert settings.api_key == "sk-ant-test"


def test_yaml_then_overrides(tmp_path, monkeypatch):
    monkeypatch.delenv("BRAINDRIVE_ENV_NAME", raising=False)
    config = tmp_path / "installer.yaml"
    config.write_text("env_name: CustomEnv\nlog_retention_days: 3\nreconnect_delay: 1.5\n")

    settings = load_settings(AgentSettings, config, log_retention_days=14, home=None)

    assert settings.env_name == "CustomEnv"
    assert settings.log_retention_days == 14
    assert settings.reconnect_delay == 1.5


def test_agent_ignores_operation_defaults(tmp_path):
    # ports and repo url come with each operation request, not from agent settings
    config = tmp_path / "installer.yaml"
    config.write_text("backend_port: 9005\nrepo_url: https://example.com/fork.git\n")

    settings = load_settings(AgentSettings, config)

    assert not hasattr(settings, "backend_port")
    assert not hasattr(settings, "repo_url")


def test_missing_yaml_ignored(tmp_path, monkeypatch):
    monkeypatch.delenv("BRAINDRIVE_ENV_NAME", raising=False)
    settings = load_settings(AgentSettings, tmp_path / "missing.yaml")
    assert settings.env_name == "BrainDriveDev"
