"""Tests for the exporter service lifecycle."""

import asyncio
import logging
import signal
import socket
from unittest.mock import patch
from urllib.request import urlopen

import pytest

from script_exporter import ScriptExporter

# Fixtures imported from conftest.py: make_config, config, write_script, logger


def fetch(url):
    with urlopen(url, timeout=5) as response:
        return response.read().decode()


async def wait_until(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


class TestScriptExporter:
    """Startup, serving and shutdown."""

    @pytest.mark.asyncio
    async def test_no_scripts_exits_before_listening(self, config, logger):
        exporter = ScriptExporter(config, logger, install_signal_handlers=False)

        with patch.object(exporter.metrics_server, "start") as start:
            exit_code = await exporter.run()

        assert exit_code == 1
        start.assert_not_called()

    @pytest.mark.asyncio
    async def test_serves_script_metrics(self, config, write_script, logger):
        write_script("ok.sh", "echo 'ok_metric 1'")
        write_script("bad.sh", "echo 'bad_metric 1'\nexit 7")
        exporter = ScriptExporter(config, logger, install_signal_handlers=False)

        task = asyncio.create_task(exporter.run())
        await wait_until(lambda: exporter.metrics_server.running)
        await exporter.scheduler.wait_pending(10)

        body = await asyncio.to_thread(
            fetch, f"http://127.0.0.1:{exporter.metrics_server.server_port}/metrics"
        )
        exporter.shutdown_event.set()
        exit_code = await asyncio.wait_for(task, timeout=10)

        assert exit_code == 0
        assert not exporter.metrics_server.running
        assert 'script_exporter_error{error_name="script_exit_code",script_name="bad.sh"} 7\n' in body
        assert 'script_exporter_error{error_name="script_exit_code",script_name="ok.sh"} 0\n' in body
        assert "ok_metric 1\n" in body
        assert "bad_metric 1\n" in body

    @pytest.mark.asyncio
    async def test_busy_port_is_fatal(self, make_config, write_script, logger):
        write_script("ok.sh", "echo 'ok 1'")
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as busy:
            busy.bind(("", 0))
            busy.listen()
            config = make_config(port=busy.getsockname()[1])
            exporter = ScriptExporter(config, logger, install_signal_handlers=False)

            exit_code = await exporter.run()

        assert exit_code == 1
        assert not exporter.metrics_server.running

    @pytest.mark.asyncio
    async def test_shutdown_kills_long_running_scripts(self, make_config, write_script, logger):
        config = make_config(collection={"timeout_sec": 60, "shutdown_timeout_sec": 0.5})
        write_script("hang.sh", "sleep 60")
        exporter = ScriptExporter(config, logger, install_signal_handlers=False)

        task = asyncio.create_task(exporter.run())
        await wait_until(lambda: exporter.metrics_server.running)
        exporter.shutdown_event.set()
        exit_code = await asyncio.wait_for(task, timeout=10)

        assert exit_code == 0
        assert exporter.scheduler.pending == 0
        assert "hang.sh" not in exporter.cache

    @pytest.mark.asyncio
    async def test_missing_scripts_root_warns(self, tmp_path, make_config, logger, caplog):
        """A missing root is served as an access error, with a startup warning."""
        config = make_config(scripts={"path": str(tmp_path / "absent")})
        exporter = ScriptExporter(config, logger, install_signal_handlers=False)
        exporter.shutdown_event.set()

        with caplog.at_level(logging.WARNING, logger="script_exporter"):
            exit_code = await exporter.run()

        assert exit_code == 0
        assert exporter.cache.get("absent").access_failed
        assert any(
            "absent does not exist" in record.getMessage()
            for record in caplog.records
            if record.levelno == logging.WARNING
        )

    def test_signal_sets_shutdown(self, config, logger):
        exporter = ScriptExporter(config, logger, install_signal_handlers=False)

        exporter._handle_signal(signal.SIGTERM)

        assert exporter.shutdown_event.is_set()

    def test_health_check_enabled_by_port(self, make_config, logger):
        assert ScriptExporter(make_config(), logger).health_check is None
        assert ScriptExporter(make_config(health_port=9999), logger).health_check is not None
