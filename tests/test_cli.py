import pytest
from typer.testing import CliRunner

from lumisync import __version__
from lumisync.cli import app as cli_app
from lumisync.exceptions import ConfigurationError
from lumisync.models.sync import RunSummary

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("LUMISYNC_PASSWORD", "hunter2")
    return tmp_path / "config.ini"


def _invoke(config_file, *args, **kwargs):
    return runner.invoke(cli_app.app, ["--config", str(config_file), *args], **kwargs)


def _init(config_file, tmp_path):
    result = _invoke(
        config_file, "init", "--username", "nusstu\\e0000000", "--destination", str(tmp_path)
    )
    assert result.exit_code == 0, result.output


def test_version():
    result = runner.invoke(cli_app.app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


def test_init_then_show_config(config_file, tmp_path):
    _init(config_file, tmp_path)
    assert "hunter2" not in config_file.read_text()

    result = _invoke(config_file, "--show-config")
    assert result.exit_code == 0
    assert "nusstu" in result.output


def test_init_refuses_to_overwrite_without_confirmation(config_file, tmp_path):
    _init(config_file, tmp_path)
    result = _invoke(config_file, "init", "--username", "someone", input="n\n")
    assert result.exit_code != 0
    assert "nusstu" in config_file.read_text()


def test_sync_without_config_fails(config_file):
    result = _invoke(config_file, "sync")
    assert result.exit_code == 1
    assert isinstance(result.exception, ConfigurationError)


def test_sync_exit_code_reflects_failures(config_file, tmp_path, monkeypatch):
    _init(config_file, tmp_path)
    seen = {}

    async def fake_sync(config, credentials):
        seen["config"] = config
        seen["password"] = credentials.password.get_secret_value()
        return RunSummary(created=2, failed=1), {"peak_concurrent": 3}

    monkeypatch.setattr(cli_app, "_sync_async", fake_sync)
    result = _invoke(config_file, "sync", "--workers", "3", "--updated", "rename")

    assert result.exit_code == 1
    assert seen["config"].max_workers == 3
    assert seen["config"].on_updated == "rename"
    assert seen["password"] == "hunter2"
    assert "Peak Concurrent" in result.output


def test_sync_exit_code_is_zero_when_everything_succeeds(config_file, tmp_path, monkeypatch):
    _init(config_file, tmp_path)

    async def fake_sync(config, credentials):
        return RunSummary(created=1, skipped=4), {}

    monkeypatch.setattr(cli_app, "_sync_async", fake_sync)
    result = _invoke(config_file, "sync", "--dry-run")
    assert result.exit_code == 0


def test_invalid_option_values_fail(config_file, tmp_path):
    _init(config_file, tmp_path)
    result = _invoke(config_file, "sync", "--updated", "merge")
    assert result.exit_code == 1
    assert isinstance(result.exception, ConfigurationError)
