"""Process management for the kubectl port-forward transport."""

import os
import selectors
import subprocess
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import TracebackType
from typing import IO, Literal

from ..exceptions import TransportError, TunnelTimeoutError
from ..logging import get_logger
from ..utils import LOOPBACK_HOST, validate_port

logger = get_logger(__name__)

READY_MARKER = "Forwarding from"
READ_CHUNK_SIZE = 65536


class StartupOutcome(str, Enum):
    """How the transport's startup phase ended."""

    READY = "ready"
    EXITED = "exited"


@dataclass(frozen=True)
class StartupResult:
    """Structured outcome of waiting for the transport."""

    outcome: StartupOutcome
    stdout: tuple[str, ...] = ()
    stderr: tuple[str, ...] = ()

    @property
    def ready(self) -> bool:
        return self.outcome == StartupOutcome.READY

    @property
    def error_output(self) -> str:
        return "\n".join(self.stderr)


@dataclass
class _Capture:
    lines: list[str] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def append(self, line: str) -> None:
        with self.lock:
            self.lines.append(line)

    def snapshot(self) -> tuple[str, ...]:
        with self.lock:
            return tuple(self.lines)


class _LineReader:
    """Turns raw reads from one pipe into decoded lines."""

    def __init__(self, name: str, stream: IO[bytes]):
        self.name = name
        self.stream = stream
        self.closed = False
        self._pending = b""

    def read(self) -> tuple[list[str], bool]:
        """Read one chunk without blocking past what select reported.

        Returns:
            Completed lines and whether the pipe reached end of file
        """
        try:
            chunk = os.read(self.stream.fileno(), READ_CHUNK_SIZE)
        except (OSError, ValueError):
            chunk = b""

        if not chunk:
            tail, self._pending = self._pending, b""
            return ([self._decode(tail)] if tail else []), True

        *complete, self._pending = (self._pending + chunk).split(b"\n")
        return [self._decode(line) for line in complete], False

    @staticmethod
    def _decode(line: bytes) -> str:
        return line.decode("utf-8", errors="replace").rstrip("\r")


class PortForwardProcess:
    """Manages one ``kubectl port-forward`` process with context manager support.

    Readiness is signalled by kubectl printing ``Forwarding from ...`` once
    its local listener is bound. A single reader thread watches both pipes;
    stderr written before the ready line is always captured before
    readiness is reported. Output is only kept until startup settles, later
    lines (one per proxied connection) are logged at debug level.
    """

    def __init__(
        self,
        namespace: str,
        pod_name: str,
        local_port: int,
        remote_port: int,
        kubectl_path: str = "kubectl",
        kubeconfig: str | None = None,
        context: str | None = None,
    ):
        """Initialize PortForwardProcess

        Args:
            namespace: Namespace of the pod
            pod_name: Pod to forward to
            local_port: Local port to bind on the loopback interface
            remote_port: Container port inside the pod
            kubectl_path: kubectl executable name or path
            kubeconfig: Optional kubeconfig file passed to kubectl
            context: Optional kubeconfig context passed to kubectl

        Raises:
            ValueError: If a port is out of range
        """
        validate_port(local_port, "Local port")
        validate_port(remote_port, "Remote port")

        self.namespace = namespace
        self.pod_name = pod_name
        self.local_port = local_port
        self.remote_port = remote_port
        self.kubectl_path = kubectl_path
        self.kubeconfig = kubeconfig
        self.context = context

        self._process: subprocess.Popen[bytes] | None = None
        self._stdout = _Capture()
        self._stderr = _Capture()
        self._settled = threading.Event()
        self._outcome: StartupOutcome | None = None
        self._outcome_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._stopped = False
        self._reader: threading.Thread | None = None

    @property
    def command(self) -> list[str]:
        """kubectl invocation for this forward."""
        cmd = [self.kubectl_path]
        if self.kubeconfig:
            cmd += ["--kubeconfig", self.kubeconfig]
        if self.context:
            cmd += ["--context", self.context]
        cmd += [
            "port-forward",
            f"pod/{self.pod_name}",
            f"{self.local_port}:{self.remote_port}",
            "--namespace",
            self.namespace,
            "--address",
            LOOPBACK_HOST,
        ]
        return cmd

    def start(self) -> None:
        """Spawn kubectl and the thread that reads its output.

        Raises:
            TransportError: If kubectl cannot be spawned or was already stopped
        """
        if self._stopped:
            raise TransportError("Port-forward process was already stopped")
        if self._process is not None:
            logger.debug("Port-forward already started", pid=self.pid)
            return

        logger.info(
            "Starting port-forward",
            namespace=self.namespace,
            pod=self.pod_name,
            local_port=self.local_port,
            remote_port=self.remote_port,
        )
        try:
            self._process = subprocess.Popen(
                self.command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as e:
            logger.error("Failed to start port-forward", error=str(e))
            raise TransportError(f"Failed to start kubectl port-forward: {e}") from e

        self._reader = threading.Thread(
            target=self._read_output,
            args=(self._process.stdout, self._process.stderr),
            name=f"port-forward-output-{self.local_port}",
            daemon=True,
        )
        self._reader.start()

        logger.debug("Port-forward process spawned", pid=self._process.pid)

    def _settle(self, outcome: StartupOutcome) -> None:
        with self._outcome_lock:
            if self._outcome is None:
                self._outcome = outcome
                self._settled.set()

    def _read_output(self, stdout: IO[bytes] | None, stderr: IO[bytes] | None) -> None:
        selector = selectors.DefaultSelector()
        try:
            for name, stream in (("stdout", stdout), ("stderr", stderr)):
                if stream is not None:
                    selector.register(
                        stream, selectors.EVENT_READ, _LineReader(name, stream)
                    )
            while selector.get_map():
                events = selector.select()
                # stderr first: kubectl reports bind errors before the ready line
                events.sort(key=lambda event: event[0].data.name != "stderr")
                for key, _ in events:
                    if not key.data.closed:
                        self._consume(selector, key.data)
        finally:
            selector.close()
            self._settle(StartupOutcome.EXITED)
            logger.debug("Port-forward output closed", local_port=self.local_port)

    def _consume(self, selector: selectors.BaseSelector, reader: _LineReader) -> bool:
        """Handle one read from ``reader``; False once its pipe is closed."""
        lines, eof = reader.read()
        for line in lines:
            if reader.name == "stdout":
                self._on_stdout(selector, line)
            else:
                self._on_stderr(line)

        if not eof:
            return True

        reader.closed = True
        selector.unregister(reader.stream)
        reader.stream.close()
        if reader.name == "stdout":
            self._drain_stderr(selector)
            self._settle(StartupOutcome.EXITED)
        return False

    def _on_stdout(self, selector: selectors.BaseSelector, line: str) -> None:
        if self._outcome is not None:
            logger.debug("Port-forward output", line=line)
            return
        self._stdout.append(line)
        if line.startswith(READY_MARKER):
            self._drain_stderr(selector)
            self._settle(StartupOutcome.READY)

    def _on_stderr(self, line: str) -> None:
        if not line:
            return
        if self._outcome is None:
            self._stderr.append(line)
        logger.debug("Port-forward stderr", line=line)

    def _drain_stderr(self, selector: selectors.BaseSelector) -> None:
        """Consume everything kubectl has already written to stderr."""
        readers = [
            key.data for key in selector.get_map().values() if key.data.name == "stderr"
        ]
        for reader in readers:
            with selectors.DefaultSelector() as pending:
                pending.register(reader.stream, selectors.EVENT_READ)
                while pending.select(timeout=0):
                    if not self._consume(selector, reader):
                        break

    def wait_until_ready(self, timeout: float) -> StartupResult:
        """Block until kubectl reports readiness, exits, or the deadline passes.

        Args:
            timeout: Seconds to wait

        Returns:
            Result describing how startup ended

        Raises:
            TunnelTimeoutError: If neither readiness nor exit happened in time
        """
        if not self._settled.wait(timeout):
            raise TunnelTimeoutError(
                f"Timed out after {timeout:.1f}s waiting for port-forward "
                f"to pod {self.namespace}/{self.pod_name} to become ready"
            )
        return self.result()

    def result(self) -> StartupResult:
        """Current startup result; outcome is EXITED until readiness is seen."""
        return StartupResult(
            outcome=self._outcome or StartupOutcome.EXITED,
            stdout=self._stdout.snapshot(),
            stderr=self._stderr.snapshot(),
        )

    def stop(self, timeout: float = 5.0) -> bool:
        """Stop kubectl gracefully, killing it if it does not exit in time.

        Safe to call any number of times from any thread; only the first call
        signals the process.

        Returns:
            True if stopped successfully, False otherwise
        """
        with self._stop_lock:
            if self._stopped:
                logger.debug("Port-forward already stopped", local_port=self.local_port)
                return True
            self._stopped = True

        process = self._process
        if process is None:
            return True

        logger.info("Stopping port-forward", pid=process.pid, local_port=self.local_port)
        try:
            process.terminate()
            try:
                process.wait(timeout=timeout)
                logger.info("Port-forward terminated gracefully")
            except subprocess.TimeoutExpired:
                logger.warning(
                    "Port-forward did not terminate gracefully, force killing",
                    pid=process.pid,
                )
                process.kill()
                process.wait()
            return True
        except OSError as e:
            logger.error("Error stopping port-forward", error=str(e))
            return False
        finally:
            self._settle(StartupOutcome.EXITED)

    def is_running(self) -> bool:
        """Check if kubectl is currently running"""
        if self._process is None:
            return False
        return self._process.poll() is None

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def pid(self) -> int | None:
        """Get process ID if running"""
        if self.is_running() and self._process:
            return self._process.pid
        return None

    def __enter__(self) -> "PortForwardProcess":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        self.stop()
        return False
