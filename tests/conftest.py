"""Shared pytest configuration and fixtures."""

import pytest
from pathlib import Path

from script_exporter import ProgramConfig, ProgramLogger, ProgramSource


@pytest.fixture
def scripts_dir(tmp_path):
    """Empty scripts directory."""
    directory = tmp_path / "scripts"
    directory.mkdir()
    return directory


@pytest.fixture
def write_script(scripts_dir):
    """Write a bash script under the scripts directory and return its path."""
    def _write(name, body):
        path = scripts_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/bash\n" + body + "\n")
        return path

    return _write


@pytest.fixture
def make_config(tmp_path, scripts_dir):
    """Build a loaded configuration pointing at the scripts directory.

    Keyword arguments are exporter section overrides.
    """
    def _make(config_text="", **overrides):
        config_file = tmp_path / "script_exporter.yml"
        config_file.write_text(config_text)
        values = {
            "port": 0,
            "scripts": {"path": str(scripts_dir)},
            "collection": {"timeout_sec": 5},
        }
        values.update(overrides)
        config = ProgramConfig(ProgramSource(config_file=config_file), values)
        config.load()
        return config

    return _make


@pytest.fixture
def config(make_config):
    """Default test configuration."""
    return make_config()


@pytest.fixture
def logger(config):
    """Create logger for tests."""
    return ProgramLogger(ProgramSource(script_path=Path(__file__)), config).logger
