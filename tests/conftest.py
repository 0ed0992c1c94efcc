"""
Pytest configuration and fixtures.

Host-side doubles for the distributed session live here so that unit and
integration tests share one definition.
"""

import logging
import os
import sys

import pytest

from isogate._internal.environment import DRIVER_PYTHON_ENV_VAR, PYTHON_ENV_VAR
from isogate.config import BIND_TIMEOUT_ENV
from isogate.runtime import InProcessRuntime


def pytest_configure(config):
    """Configure pytest with custom settings."""
    log_level = logging.DEBUG if config.getoption("--debug-isogate") else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    logging.getLogger("isogate").setLevel(log_level)
    logging.getLogger("asyncio").setLevel(log_level)

    custom_log_file = config.getoption("--isogate-log-file")
    if custom_log_file:
        file_handler = logging.FileHandler(custom_log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
            )
        )
        logging.getLogger().addHandler(file_handler)


def pytest_addoption(parser):
    """Add custom command line options."""
    parser.addoption(
        "--debug-isogate",
        action="store_true",
        default=False,
        help="Enable debug logging for isogate (shows wire-level detail)",
    )
    parser.addoption(
        "--isogate-log-file",
        action="store",
        default=None,
        help="Log isogate debug output to specified file",
    )


class FakeHostConf:
    """In-memory stand-in for the host session configuration."""

    def __init__(self, values=None):
        self.values = dict(values or {})

    def get(self, key, default=None):
        return self.values.get(key, default)

    def set(self, key, value):
        self.values[key] = value
        return self

    def get_all(self):
        return sorted(self.values.items())


class FakeHostContext:
    def __init__(self, conf):
        self.conf = conf
        self.stop_calls = 0

    def get_conf(self):
        return self.conf

    def stop(self):
        self.stop_calls += 1


class FakeDistributedSession:
    """Host distributed session; hands out one context per call."""

    def __init__(self, master="local[*]", conf=None):
        self.master = master
        self.conf = FakeHostConf(conf or {"app.name": "isogate-tests"})
        self.contexts = []

    def session_context(self):
        context = FakeHostContext(self.conf)
        self.contexts.append(context)
        return context


class RecordingProgress:
    def __init__(self):
        self.values = []

    def update(self, progress):
        self.values.append(progress)


@pytest.fixture
def make_host_session():
    """Factory for host session doubles: ``make_host_session(master="yarn")``."""
    return FakeDistributedSession


@pytest.fixture
def host_session():
    return FakeDistributedSession()


@pytest.fixture
def progress():
    return RecordingProgress()


@pytest.fixture
def runtime():
    """A private in-process runtime, closed after the test."""
    rt = InProcessRuntime(name="test", register_atexit=False)
    yield rt
    rt.close()


@pytest.fixture(autouse=True)
def clean_isogate_env(monkeypatch):
    """Keep the bridge's environment variables out of the test's way."""
    for name in (PYTHON_ENV_VAR, DRIVER_PYTHON_ENV_VAR, BIND_TIMEOUT_ENV):
        monkeypatch.delenv(name, raising=False)
    yield
    os.environ.pop(PYTHON_ENV_VAR, None)
