"""
Tests for imagechroot.core.logging module.
"""

from unittest.mock import MagicMock

import pytest
import structlog

from imagechroot.core.logging import (
    REDACTED,
    OperationLogger,
    bind_session,
    clear_session,
    format_command,
    redact_secrets,
)


class TestProcessors:
    def test_redact_secrets(self) -> None:
        event = {"event": "LUKS container opened", "passphrase": "hunter2", "device": "/dev/nbd0p3"}
        result = redact_secrets(None, "info", event)
        assert result["passphrase"] == REDACTED
        assert result["device"] == "/dev/nbd0p3"
        assert result["event"] == "LUKS container opened"

    def test_format_command(self) -> None:
        event = {"event": "Running command", "command": ["mount", "-o", "subvol=@", "/dev/nbd0p2", "/tmp/my root"]}
        result = format_command(None, "debug", event)
        assert result["command"] == "mount -o subvol=@ /dev/nbd0p2 '/tmp/my root'"

    def test_format_command_leaves_strings(self) -> None:
        event = {"event": "x", "command": "lsblk -J"}
        assert format_command(None, "debug", event)["command"] == "lsblk -J"


class TestSessionBinding:
    def test_bind_and_clear(self) -> None:
        bind_session("feedc0de-1234")
        assert structlog.contextvars.get_contextvars()["session"] == "feedc0de"
        clear_session()
        assert "session" not in structlog.contextvars.get_contextvars()


class TestOperationLogger:
    def test_success_logs_context(self) -> None:
        logger = MagicMock()
        with OperationLogger("connect image", logger, image="disk.qcow2") as op:
            op.update(device="/dev/nbd0")

        logger.info.assert_called_with(
            "Completed connect image",
            operation="connect image",
            duration_seconds=logger.info.call_args.kwargs["duration_seconds"],
            image="disk.qcow2",
            device="/dev/nbd0",
        )
        assert op.duration_seconds >= 0

    def test_failure_logged_and_propagated(self) -> None:
        logger = MagicMock()
        with pytest.raises(RuntimeError):
            with OperationLogger("mount root", logger):
                raise RuntimeError("boom")

        kwargs = logger.error.call_args.kwargs
        assert kwargs["error_type"] == "RuntimeError"
        assert kwargs["error"] == "boom"

    def test_duration_before_start(self) -> None:
        assert OperationLogger("x", MagicMock()).duration_seconds == 0.0
