from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest

from tunnellb.src.__main__ import JSONFormatter, main, run
from tunnellb.src.config import ControllerConfig


class TestJSONFormatter:
    """Tests for the structured JSON log formatter."""

    def _make_record(
        self,
        msg: str = "test message",
        level: int = logging.INFO,
        exc_info: Any = None,
        **extra: str,
    ) -> logging.LogRecord:
        record = logging.LogRecord(
            name="test.logger",
            level=level,
            pathname="test.py",
            lineno=1,
            msg=msg,
            args=(),
            exc_info=exc_info,
        )
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_format_produces_valid_json(self) -> None:
        parsed = json.loads(JSONFormatter().format(self._make_record()))

        assert parsed["msg"] == "test message"
        assert parsed["level"] == "INFO"
        assert parsed["logger"] == "test.logger"
        assert "ts" in parsed
        assert "error" not in parsed
        assert "service" not in parsed

    def test_format_includes_service_context(self) -> None:
        record = self._make_record(service="default/web", hostname="web-default")

        parsed = json.loads(JSONFormatter().format(record))

        assert parsed["service"] == "default/web"
        assert parsed["hostname"] == "web-default"

    def test_format_includes_error_on_exception(self) -> None:
        try:
            raise ValueError("boom")
        except ValueError:
            record = self._make_record(exc_info=sys.exc_info())

        parsed = json.loads(JSONFormatter().format(record))

        assert "ValueError" in parsed["error"]
        assert "boom" in parsed["error"]

    def test_format_is_single_line(self) -> None:
        output = JSONFormatter().format(self._make_record(msg="line one\nline two"))

        assert output.count("\n") == 0

    def test_format_redacts_sensitive_values(self) -> None:
        record = self._make_record(
            msg="TunnelSecret: c2VjcmV0 token=abc123 Authorization: Bearer abc.def.ghi"
        )

        message = json.loads(JSONFormatter().format(record))["msg"]

        assert "[REDACTED]" in message
        assert "c2VjcmV0" not in message
        assert "abc123" not in message
        assert "abc.def.ghi" not in message


def _fake_components() -> dict[str, MagicMock]:
    informer = MagicMock()
    informer.has_synced.return_value = True
    controller = MagicMock()
    controller.ready = threading.Event()
    syncer = MagicMock()
    return {"informer": informer, "controller": controller, "syncer": syncer}


class TestRun:
    """Wiring of informer, controller, config sync and cloudflared."""

    def _run(
        self,
        config: ControllerConfig,
        components: dict[str, MagicMock],
        daemon: MagicMock | None = None,
    ) -> MagicMock:
        shutdown_event = threading.Event()

        def fake_controller_run(workers: int, stop_event: threading.Event) -> bool:
            stop_event.set()
            return True

        if components["controller"].run.side_effect is None:
            components["controller"].run.side_effect = fake_controller_run

        with (
            patch("tunnellb.src.__main__.load_kube_configuration"),
            patch("tunnellb.src.__main__.build_core_client", return_value=SimpleNamespace()),
            patch("tunnellb.src.__main__.ServiceInformer", return_value=components["informer"]),
            patch(
                "tunnellb.src.__main__.ServiceLoadBalancerController",
                return_value=components["controller"],
            ),
            patch(
                "tunnellb.src.__main__.ConfigSyncer", return_value=components["syncer"]
            ) as syncer_cls,
            patch("tunnellb.src.__main__.TunnelDaemon", return_value=daemon or MagicMock()) as daemon_cls,
            patch("tunnellb.src.__main__.start_health_server") as mock_health,
        ):
            mock_health.return_value = MagicMock()
            run(config, shutdown_event)

        assert shutdown_event.is_set()
        mock_health.return_value.shutdown.assert_called_once()
        assert syncer_cls.call_args.kwargs["ready"] is components["controller"].initial_sync
        return daemon_cls

    def test_run_writes_config_before_starting_daemon(self, tmp_path: Path) -> None:
        components = _fake_components()
        config = ControllerConfig(
            tunnel_id="my-tunnel", config_path=str(tmp_path / "config.yaml"), workers=3
        )

        daemon_cls = self._run(config, components)

        components["syncer"].write_if_missing.assert_called_once()
        components["controller"].run.assert_called_once()
        assert components["controller"].run.call_args.args[0] == 3
        daemon_cls.assert_called_once_with(
            config_path=config.config_path, binary=config.daemon_binary
        )
        components["informer"].request_stop.assert_called_once()
        components["syncer"].stop.assert_called_once()

    def test_run_without_daemon(self, tmp_path: Path) -> None:
        components = _fake_components()
        config = ControllerConfig(config_path=str(tmp_path / "config.yaml"), daemon_enabled=False)

        daemon_cls = self._run(config, components)

        daemon_cls.assert_not_called()

    def test_run_without_tunnel_id_does_not_start_daemon(self, tmp_path: Path) -> None:
        components = _fake_components()
        config = ControllerConfig(config_path=str(tmp_path / "config.yaml"), daemon_enabled=True)

        daemon_cls = self._run(config, components)

        daemon_cls.assert_not_called()
        components["controller"].run.assert_called_once()

    def test_syncer_is_stopped_after_controller_workers_finish(self, tmp_path: Path) -> None:
        components = _fake_components()
        order: list[str] = []
        components["syncer"].stop.side_effect = lambda: order.append("syncer.stop")
        config = ControllerConfig(config_path=str(tmp_path / "config.yaml"), daemon_enabled=False)

        def fake_controller_run(workers: int, stop_event: threading.Event) -> bool:
            stop_event.set()
            order.append("workers joined")
            return True

        components["controller"].run.side_effect = fake_controller_run

        self._run(config, components)

        assert order == ["workers joined", "syncer.stop"]

    def test_background_thread_exit_triggers_shutdown(self) -> None:
        components = _fake_components()
        shutdown_event = threading.Event()
        # informer returns immediately, as it does after an RBAC failure
        components["informer"].run_forever.side_effect = lambda stop: None

        def fake_controller_run(workers: int, stop_event: threading.Event) -> bool:
            return stop_event.wait(timeout=5)

        components["controller"].run.side_effect = fake_controller_run

        with (
            patch("tunnellb.src.__main__.load_kube_configuration"),
            patch("tunnellb.src.__main__.build_core_client", return_value=SimpleNamespace()),
            patch("tunnellb.src.__main__.ServiceInformer", return_value=components["informer"]),
            patch(
                "tunnellb.src.__main__.ServiceLoadBalancerController",
                return_value=components["controller"],
            ),
            patch("tunnellb.src.__main__.ConfigSyncer", return_value=components["syncer"]),
            patch("tunnellb.src.__main__.start_health_server"),
        ):
            run(ControllerConfig(daemon_enabled=False), shutdown_event)

        assert shutdown_event.is_set()


class TestMainEntrypoint:
    def test_main_loads_config_and_installs_signal_handlers(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TUNNEL_ID", "my-tunnel")
        installed: dict[int, Any] = {}

        with (
            patch("tunnellb.src.__main__.run") as mock_run,
            patch("tunnellb.src.__main__.configure_logging"),
            patch(
                "tunnellb.src.__main__.signal.signal",
                side_effect=lambda signum, handler: installed.setdefault(signum, handler),
            ),
        ):
            main()

        mock_run.assert_called_once()
        config, shutdown_event = mock_run.call_args.args
        assert config.tunnel_id == "my-tunnel"
        assert set(installed) == {signal.SIGTERM, signal.SIGINT}

        installed[signal.SIGTERM](signal.SIGTERM, None)
        assert shutdown_event.is_set()
