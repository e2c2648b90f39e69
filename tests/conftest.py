"""Shared pytest fixtures for k8snake tests."""

import os
import threading
import time
from types import SimpleNamespace
from unittest.mock import Mock

import httpx
import pytest

from k8snake.cluster import ClusterReader
from k8snake.config import SessionConfig
from k8snake.tunnel import Tunnel, TunnelManager, TunnelStatus

TOKEN_URL = "https://keycloak.example.com/realms/things/protocol/openid-connect/token"


class FakeStream:
    """One end of a real OS pipe; the test writes, the transport reads."""

    def __init__(self) -> None:
        self._read_fd, self._write_fd = os.pipe()
        self._write_lock = threading.Lock()

    def fileno(self) -> int:
        return self._read_fd

    def write(self, data: str) -> None:
        with self._write_lock:
            if self._write_fd is not None:
                os.write(self._write_fd, data.encode())

    def feed(self, *lines: str) -> None:
        """Write lines as the child process would."""
        self.write("".join(line + "\n" for line in lines))

    def finish(self) -> None:
        """Close the writing end, as a child does when it exits."""
        with self._write_lock:
            if self._write_fd is not None:
                os.close(self._write_fd)
                self._write_fd = None

    def close(self) -> None:
        if self._read_fd is not None:
            os.close(self._read_fd)
            self._read_fd = None


class FakePopen:
    """Stand-in for a kubectl port-forward child process."""

    def __init__(self, args, **kwargs):
        self.args = args
        self.kwargs = kwargs
        self.pid = 4242
        self.stdout = FakeStream()
        self.stderr = FakeStream()
        self.returncode = None
        self.terminate_calls = 0
        self.kill_calls = 0

    def poll(self):
        return self.returncode

    def terminate(self):
        self.terminate_calls += 1
        self.exit(-15)

    def kill(self):
        self.kill_calls += 1
        self.exit(-9)

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self.stdout.finish()
            self.stderr.finish()

    def wait(self, timeout=None):
        return self.returncode


class FakeClock:
    """Manually advanced POSIX clock."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def wait_for(condition, timeout: float = 2.0) -> None:
    """Poll until condition() is truthy or fail the test."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return
        time.sleep(0.01)
    pytest.fail("condition not met in time")


@pytest.fixture
def fake_popen(monkeypatch):
    """Patch subprocess.Popen used by the transport.

    Returns:
        list: FakePopen instances, in spawn order
    """
    spawned: list[FakePopen] = []

    def _spawn(args, **kwargs):
        process = FakePopen(args, **kwargs)
        spawned.append(process)
        return process

    monkeypatch.setattr("k8snake.tunnel.process.subprocess.Popen", _spawn)
    yield spawned
    for process in spawned:
        process.exit(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_config():
    return SessionConfig(
        namespace="things",
        service_name="things-api",
        service_port=8080,
        client_secret_id="things-cli",
        realm_name="things",
        token_url=TOKEN_URL,
        custom_header_name="X-Tenant",
        custom_header_value="default-tenant",
    )


def make_pod(name: str) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(name=name))


def make_service(name: str = "things-api", selector=None) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        spec=SimpleNamespace(selector={"app": "things"} if selector is None else selector),
    )


@pytest.fixture
def cluster():
    """ClusterReader double holding one service, two pods and the client secret."""
    reader = Mock(spec=ClusterReader)
    reader.get_service.return_value = make_service()
    reader.list_pods_for_service.return_value = [make_pod("things-api-0"), make_pod("things-api-1")]
    reader.get_secret_data.return_value = {
        "CLIENT_ID": "things-cli",
        "CLIENT_SECRET": "s3cr3t-value",
    }
    return reader


@pytest.fixture
def ready_tunnel():
    return (
        Tunnel(namespace="things", pod_name="things-api-0", local_port=40123, remote_port=8080)
        .with_status(TunnelStatus.ESTABLISHING)
        .with_status(TunnelStatus.READY)
    )


@pytest.fixture
def tunnel_manager(ready_tunnel):
    manager = Mock(spec=TunnelManager)
    manager.open.return_value = ready_tunnel
    return manager


class TokenEndpoint:
    """MockTransport handler issuing numbered tokens and counting exchanges."""

    def __init__(self, expires_in: int = 300, delay: float = 0.0, status_code: int = 200):
        self.expires_in = expires_in
        self.delay = delay
        self.status_code = status_code
        self.calls = 0
        self.requests: list[httpx.Request] = []
        self._lock = threading.Lock()

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            self.calls += 1
            number = self.calls
            self.requests.append(request)
        if self.delay:
            time.sleep(self.delay)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="invalid_client")
        return httpx.Response(
            200,
            json={"access_token": f"token-{number}", "expires_in": self.expires_in},
        )

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


@pytest.fixture
def token_endpoint():
    return TokenEndpoint()
