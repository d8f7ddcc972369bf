from __future__ import annotations

import logging
import signal
from pathlib import Path
from typing import Callable, List
from unittest.mock import MagicMock, patch

import pytest

import cell_audit_agent.main as main_module
from cell_audit_agent.main import _format_agent_stats, build_parser, log_resource_usage, main, setup_logging
from cell_audit_agent.store import KEY_LAST_HEARTBEAT_AT, KEY_SERVICE_REQUESTED, JsonFileStore


def test_setup_logging(tmp_path: Path) -> None:
    log_file = tmp_path / "test.log"
    setup_logging("DEBUG", str(log_file))

    logger = logging.getLogger("test_logger")
    logger.debug("Test message")

    assert log_file.exists()
    assert "Test message" in log_file.read_text()


def test_setup_logging_invalid() -> None:
    with pytest.raises(ValueError, match="Invalid log level"):
        setup_logging("INVALID_LEVEL", None)


def test_setup_logging_file_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    """A directory given as log file degrades to console logging."""
    log_file = tmp_path / "log_dir"
    log_file.mkdir()

    setup_logging("INFO", str(log_file))

    assert "Warning: Failed to setup log file" in capsys.readouterr().err


def test_parser_defaults_are_none() -> None:
    args = vars(build_parser().parse_args([]))

    assert args["fix_interval"] is None
    assert args["activitywatch"] is None
    assert args["testing"] is None
    assert args["reset_state"] is False
    assert args["resume"] is False


def test_parser_flags() -> None:
    args = build_parser().parse_args(
        ["--data-dir", "/tmp/x", "--fix-interval", "600", "--activitywatch", "--reset-state"]
    )

    assert args.data_dir == "/tmp/x"
    assert args.fix_interval == 600.0
    assert args.activitywatch is True
    assert args.reset_state is True


@patch("cell_audit_agent.main.threading.Timer")
@patch("cell_audit_agent.main.threading.Event")
@patch("cell_audit_agent.main.Agent")
def test_main_execution(
    mock_agent_cls: MagicMock,
    mock_event_cls: MagicMock,
    mock_timer_cls: MagicMock,
    tmp_path: Path,
    cli_args: Callable[[List[str]], None],
    mock_signal: MagicMock,
) -> None:
    mock_event_cls.return_value.wait.return_value = True
    mock_agent_cls.return_value.get_statistics.return_value = {}
    cli_args(["--data-dir", str(tmp_path), "--testing"])

    main()

    mock_agent_cls.assert_called_once()
    config = mock_agent_cls.call_args[0][0]
    assert config.data_dir == str(tmp_path.resolve())
    assert config.testing is True
    mock_agent_cls.return_value.start.assert_called_once()
    mock_agent_cls.return_value.stop.assert_called_once()

    registered = {call.args[0] for call in mock_signal.call_args_list}
    assert registered == {signal.SIGINT, signal.SIGTERM}


@patch("cell_audit_agent.main.threading.Timer")
@patch("cell_audit_agent.main.threading.Event")
@patch("cell_audit_agent.main.Agent")
def test_signal_handler_sets_stop_event(
    mock_agent_cls: MagicMock,
    mock_event_cls: MagicMock,
    mock_timer_cls: MagicMock,
    tmp_path: Path,
    cli_args: Callable[[List[str]], None],
    mock_signal: MagicMock,
) -> None:
    mock_agent_cls.return_value.get_statistics.return_value = {}
    stop_event = mock_event_cls.return_value
    cli_args(["--data-dir", str(tmp_path)])

    def fire_sigterm(*args: object) -> bool:
        handlers = {call.args[0]: call.args[1] for call in mock_signal.call_args_list}
        handlers[signal.SIGTERM](signal.SIGTERM, None)
        return True

    stop_event.wait.side_effect = fire_sigterm

    main()

    stop_event.set.assert_called_once()
    mock_agent_cls.return_value.stop.assert_called_once()


def test_main_invalid_config_exits_2(
    tmp_path: Path, cli_args: Callable[[List[str]], None], capsys: pytest.CaptureFixture[str]
) -> None:
    cli_args(["--data-dir", str(tmp_path), "--fix-interval", "60", "--fix-timeout", "90"])

    with pytest.raises(SystemExit) as exc_info:
        main()

    assert exc_info.value.code == 2
    assert "Configuration Error" in capsys.readouterr().err


@patch("cell_audit_agent.main.Agent")
def test_main_fatal_error_exits_1(
    mock_agent_cls: MagicMock,
    tmp_path: Path,
    cli_args: Callable[[List[str]], None],
    mock_signal: MagicMock,
) -> None:
    mock_agent_cls.return_value.start.side_effect = RuntimeError("boom")
    cli_args(["--data-dir", str(tmp_path)])

    with pytest.raises(SystemExit) as exc_info:
        main()

    assert exc_info.value.code == 1
    mock_agent_cls.return_value.stop.assert_called_once()


@patch("cell_audit_agent.main.Agent")
def test_reset_state(mock_agent_cls: MagicMock, tmp_path: Path, cli_args: Callable[[List[str]], None]) -> None:
    JsonFileStore(tmp_path / "state.json").set(KEY_LAST_HEARTBEAT_AT, 123.0)
    cli_args(["--data-dir", str(tmp_path), "--reset-state"])

    main()

    assert not (tmp_path / "state.json").exists()
    mock_agent_cls.assert_not_called()


@patch("cell_audit_agent.main.Agent")
def test_resume_without_prior_run(
    mock_agent_cls: MagicMock, tmp_path: Path, cli_args: Callable[[List[str]], None]
) -> None:
    cli_args(["--data-dir", str(tmp_path), "--resume"])

    main()

    mock_agent_cls.assert_not_called()


@patch("cell_audit_agent.main.threading.Timer")
@patch("cell_audit_agent.main.threading.Event")
@patch("cell_audit_agent.main.Agent")
def test_resume_after_prior_run(
    mock_agent_cls: MagicMock,
    mock_event_cls: MagicMock,
    mock_timer_cls: MagicMock,
    tmp_path: Path,
    cli_args: Callable[[List[str]], None],
    mock_signal: MagicMock,
) -> None:
    mock_event_cls.return_value.wait.return_value = True
    mock_agent_cls.return_value.get_statistics.return_value = {}
    JsonFileStore(tmp_path / "state.json").set(KEY_SERVICE_REQUESTED, True)
    cli_args(["--data-dir", str(tmp_path), "--resume"])

    main()

    mock_agent_cls.return_value.start.assert_called_once()


def test_format_agent_stats() -> None:
    msg = _format_agent_stats(
        {"mode": "healthy", "fixes_succeeded": 3, "fixes_requested": 4, "resurrections": 1, "uptime": 3725.0}
    )

    assert "Mode=healthy" in msg
    assert "Fixes=3/4" in msg
    assert "Resurrections=1 (Failed=0)" in msg
    assert "Uptime=01:02:05" in msg


def test_log_resource_usage_flags_backoff(caplog: pytest.LogCaptureFixture) -> None:
    agent = MagicMock()
    agent.get_statistics.return_value = {"mode": "backoff", "backoff_count": 2}

    with caplog.at_level(logging.INFO):
        log_resource_usage(agent)

    assert "Anomaly detected" in caplog.text
    assert "Backoff=2" in caplog.text


def test_log_resource_usage_periodic_info(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    monkeypatch.setattr(main_module, "resource", None)
    monkeypatch.setattr(main_module, "_last_info_log_time", -1e9)
    agent = MagicMock()
    agent.get_statistics.return_value = {"mode": "healthy"}

    with patch("cell_audit_agent.main.threading.active_count", return_value=3):
        with caplog.at_level(logging.INFO):
            log_resource_usage(agent)

    assert "[OK]" in caplog.text
    assert "Max RSS=N/A" in caplog.text


def test_log_resource_usage_survives_stats_error(caplog: pytest.LogCaptureFixture) -> None:
    agent = MagicMock()
    agent.get_statistics.side_effect = RuntimeError("boom")

    with caplog.at_level(logging.DEBUG):
        log_resource_usage(agent)

    assert "Failed to get agent stats" in caplog.text
