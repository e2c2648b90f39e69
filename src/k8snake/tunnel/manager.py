"""Tunnel manager for port-forward lifecycle management."""

import threading
from collections.abc import Callable

from ..config import DEFAULT_READY_TIMEOUT
from ..exceptions import TransportError, TunnelError, TunnelSetupError
from ..logging import get_logger
from ..utils import get_free_port
from .models import Tunnel, TunnelStatus
from .process import PortForwardProcess

logger = get_logger(__name__)

ProcessFactory = Callable[..., PortForwardProcess]


class TunnelManager:
    """Opens, supervises and closes port-forward tunnels into pods."""

    def __init__(
        self,
        kubectl_path: str = "kubectl",
        kubeconfig: str | None = None,
        context: str | None = None,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        process_factory: ProcessFactory = PortForwardProcess,
        port_allocator: Callable[[], int] = get_free_port,
    ):
        """Initialize tunnel manager.

        Args:
            kubectl_path: kubectl executable name or path
            kubeconfig: Optional kubeconfig passed to kubectl
            context: Optional kubeconfig context passed to kubectl
            ready_timeout: Seconds to wait for each tunnel to become ready
            process_factory: Builds the transport for a tunnel
            port_allocator: Picks the local port for a new tunnel
        """
        self.kubectl_path = kubectl_path
        self.kubeconfig = kubeconfig
        self.context = context
        self.ready_timeout = ready_timeout
        self._process_factory = process_factory
        self._port_allocator = port_allocator
        self._tunnels: dict[str, Tunnel] = {}
        self._processes: dict[str, PortForwardProcess] = {}
        self._lock = threading.Lock()

    def open(self, namespace: str, pod_name: str, remote_port: int) -> Tunnel:
        """Open a tunnel from a free local port to ``remote_port`` of a pod.

        Blocks until the transport is ready or ``ready_timeout`` elapses.
        On any failure the transport is stopped before the error is raised.

        Returns:
            Tunnel in READY state

        Raises:
            TunnelTimeoutError: If readiness is not reached in time
            TunnelSetupError: If kubectl reported errors despite readiness
            TransportError: If kubectl could not be started or exited early
        """
        tunnel = Tunnel(
            namespace=namespace,
            pod_name=pod_name,
            local_port=self._port_allocator(),
            remote_port=remote_port,
        ).with_status(TunnelStatus.ESTABLISHING)

        try:
            process = self._process_factory(
                namespace=namespace,
                pod_name=pod_name,
                local_port=tunnel.local_port,
                remote_port=remote_port,
                kubectl_path=self.kubectl_path,
                kubeconfig=self.kubeconfig,
                context=self.context,
            )
        except ValueError as e:
            raise TransportError(f"Invalid port-forward parameters: {e}") from e

        try:
            process.start()
            result = process.wait_until_ready(self.ready_timeout)

            if not result.ready:
                raise TransportError(
                    f"Port-forward to pod {namespace}/{pod_name} exited before "
                    f"becoming ready: {result.error_output or 'no output'}"
                )

            # ready only means the local listener is bound
            if result.error_output:
                raise TunnelSetupError(
                    f"Error found during port-forward setup: {result.error_output}",
                    error_output=result.error_output,
                )
        except TunnelError as e:
            process.stop()
            with self._lock:
                self._tunnels[tunnel.id] = tunnel.with_status(TunnelStatus.FAILED)
            logger.error(
                "Failed to open tunnel",
                tunnel=tunnel.id,
                local_port=tunnel.local_port,
                error=str(e),
            )
            raise

        if result.stdout:
            logger.debug("Port-forward output", tunnel=tunnel.id, output=list(result.stdout))

        tunnel = tunnel.with_status(TunnelStatus.READY, output=result.stdout)
        with self._lock:
            self._tunnels[tunnel.id] = tunnel
            self._processes[tunnel.id] = process

        logger.info(
            "Tunnel ready",
            tunnel=tunnel.id,
            local_port=tunnel.local_port,
            remote_port=remote_port,
        )
        return tunnel

    def close(self, tunnel: Tunnel) -> Tunnel:
        """Stop a tunnel's transport. Closing twice is a no-op.

        Returns:
            The tunnel in CLOSED state, or as passed if it was not open
        """
        with self._lock:
            current = self._tunnels.get(tunnel.id)
            process = self._processes.pop(tunnel.id, None)
            if current is None or process is None or current.is_terminal:
                logger.debug("Tunnel not open, nothing to close", tunnel=tunnel.id)
                return current or tunnel
            closed = current.with_status(TunnelStatus.CLOSED)
            self._tunnels[tunnel.id] = closed

        if not process.stop():
            logger.warning("Tunnel may not have stopped cleanly", tunnel=tunnel.id)
        logger.info("Tunnel closed", tunnel=tunnel.id)
        return closed

    def close_all(self) -> None:
        """Close every open tunnel."""
        with self._lock:
            tunnels = [t for t in self._tunnels.values() if t.is_ready]
        for tunnel in tunnels:
            self.close(tunnel)

    def get_tunnel(self, tunnel_id: str) -> Tunnel | None:
        with self._lock:
            return self._tunnels.get(tunnel_id)

    def is_open(self, tunnel: Tunnel) -> bool:
        """Whether the tunnel is READY and its transport is still running."""
        with self._lock:
            current = self._tunnels.get(tunnel.id)
            process = self._processes.get(tunnel.id)
        return (
            current is not None
            and current.is_ready
            and process is not None
            and process.is_running()
        )
