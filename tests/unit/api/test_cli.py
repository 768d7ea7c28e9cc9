import pytest
from typer.testing import CliRunner

from braindrive_installer.api.cli.main import app

runner = CliRunner()


@pytest.fixture
def home(tmp_path):
    return {"BRAINDRIVE_HOME": str(tmp_path)}


def test_version():
    result = runner.invoke(app, ["version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


def test_operations_listing():
    result = runner.invoke(app, ["system", "operations"])
    assert result.exit_code == 0


def test_logs_export_without_logs(home):
    result = runner.invoke(app, ["logs", "export"], env=home)
    assert result.exit_code == 1


def test_logs_export_and_cleanup(home, tmp_path):
    log_dir = tmp_path / ".braindrive-installer" / "logs"
    log_dir.mkdir(parents=True)
    (log_dir / "installer.log").write_text('{"event": "agent.link.connected", "level": "info"}\n')

    exported = runner.invoke(app, ["logs", "export"], env=home)
    cleaned = runner.invoke(app, ["logs", "cleanup"], env=home)

    assert exported.exit_code == 0
    assert list((log_dir / "exports").glob("braindrive_logs_*.txt"))
    assert cleaned.exit_code == 0
    assert "Removed 0" in cleaned.output
