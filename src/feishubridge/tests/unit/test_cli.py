import importlib

import pytest
from typer.testing import CliRunner

from feishubridge.cli.app import app
from feishubridge.utils.config import ConfigError

cli_module = importlib.import_module("feishubridge.cli.app")

runner = CliRunner()


@pytest.fixture
def feishu_env(monkeypatch):
    for name in ("FEISHU_APP_ID", "FEISHU_APP_SECRET", "FEISHU_EVENT_STREAM_URL", "FEISHU_RENDER_MODE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FEISHU_APP_ID", "cli_a1b2c3")
    monkeypatch.setenv("FEISHU_APP_SECRET", "very-secret")
    monkeypatch.setenv("FEISHU_EVENT_STREAM_URL", "wss://events.example/ws")
    return monkeypatch


def test_check_prints_masked_configuration(feishu_env):
    result = runner.invoke(app, ["check"])

    assert result.exit_code == 0, result.output
    assert "Configuration looks good" in result.output
    assert "very-secret" not in result.output
    assert "wss://events.example/ws" in result.output


def test_check_fails_without_stream_url(feishu_env):
    feishu_env.delenv("FEISHU_EVENT_STREAM_URL")

    result = runner.invoke(app, ["check"])

    assert result.exit_code == 1
    assert "FEISHU_EVENT_STREAM_URL" in result.output


def test_check_reports_invalid_values(feishu_env):
    feishu_env.setenv("FEISHU_RENDER_MODE", "fancy")

    result = runner.invoke(app, ["check"])

    assert result.exit_code == 1
    assert "Invalid Feishu configuration" in result.output


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert "Feishu bridge" in result.output


@pytest.fixture
def serve_stubs(monkeypatch):
    calls = {"stopped": []}

    async def fake_monitor(config, *, handler, client, supervisor, abort):
        calls["supervisor"] = supervisor
        if calls.get("raise"):
            raise calls["raise"]

    monkeypatch.setattr(cli_module, "configure_logging", lambda level=None: None)
    monkeypatch.setattr(cli_module, "monitor_feishu", fake_monitor)
    monkeypatch.setattr(cli_module, "stop_feishu_monitor", calls["stopped"].append)
    return calls


def test_run_stops_monitor_on_shutdown(feishu_env, serve_stubs):
    result = runner.invoke(app, ["run"])

    assert result.exit_code == 0, result.output
    assert serve_stubs["stopped"] == [serve_stubs["supervisor"]]


def test_run_stops_monitor_when_startup_fails(feishu_env, serve_stubs):
    serve_stubs["raise"] = ConfigError("FEISHU_EVENT_STREAM_URL is required")

    result = runner.invoke(app, ["run"])

    assert result.exit_code == 1
    assert "FEISHU_EVENT_STREAM_URL" in result.output
    assert serve_stubs["stopped"] == [serve_stubs["supervisor"]]
