"""
Shared pytest fixtures for gateway tests.
"""
import os
import signal

import pytest

from wsgate.config import GatewayConfig
from wsgate.gateway import Gateway
from wsgate.tests.contracts._gateway_harness import FakeClock


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Keep host WSGATE_* settings and env files out of tests."""
    for var in list(os.environ):
        if var.startswith("WSGATE_"):
            monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("WSGATE_ENV_FILE", str(tmp_path / "absent.env"))


@pytest.fixture
def gateway_config(tmp_path):
    return GatewayConfig(
        port=0,
        control_socket_path=str(tmp_path / "ctl.sock"),
        pid_file=str(tmp_path / "wsgate.pid"),
        control_read_timeout_sec=0.5,
        tick_interval_ms=1,
        log_dir=str(tmp_path),
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway(gateway_config, clock):
    """A started gateway driven by explicit tick() calls."""
    gw = Gateway(gateway_config, clock=clock)
    gw.start()
    yield gw
    gw.stop()


@pytest.fixture
def restore_signal_handlers():
    """Put back the test runner's SIGINT/SIGTERM handlers afterwards."""
    previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
    yield
    for sig, handler in previous.items():
        signal.signal(sig, handler)
