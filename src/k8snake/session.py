"""Session orchestration.

The orchestrator runs once per process, before the first request leaves:
it finds a pod behind the configured service, opens a tunnel to it, reads
the Keycloak client secret and primes a token. The result is published as
an immutable :class:`SessionState` for the request rewriter to read.
"""

import atexit
import threading
from dataclasses import dataclass
from types import TracebackType
from typing import Any, Literal

import httpx

from .cluster import ClusterReader
from .config import SessionConfig
from .credentials import ClientCredentials, CredentialManager
from .exceptions import (
    K8snakeError,
    NotFoundError,
    SecretRetrievalError,
    SessionNotStartedError,
)
from .logging import get_logger
from .tunnel import Tunnel, TunnelManager

logger = get_logger(__name__)

CLIENT_ID_KEY = "CLIENT_ID"
CLIENT_SECRET_KEY = "CLIENT_SECRET"


@dataclass(frozen=True)
class SessionState:
    """Published tunnel and the token source bound to it."""

    tunnel: Tunnel
    credential_manager: CredentialManager

    @property
    def local_port(self) -> int:
        return self.tunnel.local_port

    def token(self) -> str:
        return self.credential_manager.get_valid_token()


class SessionStateHolder:
    """Holds the current SessionState; publishing swaps the whole snapshot."""

    def __init__(self) -> None:
        self._state: SessionState | None = None
        self._lock = threading.Lock()

    def publish(self, state: SessionState) -> None:
        with self._lock:
            self._state = state

    def clear(self) -> SessionState | None:
        with self._lock:
            state, self._state = self._state, None
            return state

    def get(self) -> SessionState:
        """Return the published state.

        Raises:
            SessionNotStartedError: If nothing has been published yet
        """
        state = self._state
        if state is None:
            raise SessionNotStartedError(
                "Session has not been started; no tunnel or token is available"
            )
        return state

    @property
    def is_published(self) -> bool:
        return self._state is not None


def pick_pod(pods: list[Any], service_name: str, namespace: str) -> str:
    """Name of the first pod, in the order the API returned them.

    Raises:
        NotFoundError: If there are no pods
    """
    if not pods:
        raise NotFoundError(
            f"no pods found for service {service_name} in namespace {namespace}"
        )
    return str(pods[0].metadata.name)


class SessionOrchestrator:
    """Builds the session once and tears its tunnel down exactly once."""

    def __init__(
        self,
        config: SessionConfig,
        cluster: ClusterReader | None = None,
        tunnel_manager: TunnelManager | None = None,
        http_client: httpx.Client | None = None,
        state: SessionStateHolder | None = None,
        register_atexit: bool = True,
    ):
        """Initialize the orchestrator.

        Args:
            config: Session configuration
            cluster: Cluster reader; built from the kubeconfig on start when omitted
            tunnel_manager: Tunnel manager; built from the config when omitted
            http_client: Client used for the token exchange
            state: Holder to publish into; a new one is created when omitted
            register_atexit: Whether to register shutdown() with atexit
        """
        self.config = config
        self.state = state or SessionStateHolder()
        self._cluster = cluster
        self.tunnel_manager = tunnel_manager or TunnelManager(
            kubectl_path=config.kubectl_path,
            kubeconfig=config.kubeconfig,
            context=config.context,
            ready_timeout=config.ready_timeout,
        )
        self._http_client = http_client

        self._start_lock = threading.Lock()
        self._started = False
        self._startup_error: BaseException | None = None
        self._shutdown_lock = threading.Lock()
        self._shut_down = False
        self._register_atexit = register_atexit
        self._tunnel: Tunnel | None = None
        self._credential_manager: CredentialManager | None = None

    @property
    def cluster(self) -> ClusterReader:
        if self._cluster is None:
            self._cluster = ClusterReader.from_kubeconfig(
                self.config.kubeconfig, self.config.context
            )
        return self._cluster

    def start(self) -> SessionState:
        """Run the startup sequence once and return the published state.

        Later calls return the same state, or re-raise the original error if
        startup failed; startup is never retried.
        """
        with self._start_lock:
            if self._startup_error is not None:
                raise self._startup_error
            if self._started:
                return self.state.get()
            if self._shut_down:
                raise SessionNotStartedError("Session has already been shut down")

            try:
                state = self._run()
            except Exception as e:
                self._startup_error = e
                self._release()
                raise

            with self._shutdown_lock:
                abandoned = self._shut_down
                if not abandoned:
                    self.state.publish(state)
                    self._started = True
            if abandoned:
                # shutdown() ran while the tunnel was opening
                self._release()
                raise SessionNotStartedError("Session was shut down during startup")

            if self._register_atexit:
                atexit.register(self.shutdown)
            return state

    def before_first_request(self, request: httpx.Request) -> None:
        """httpx request hook that starts the session on first use."""
        if not self._started:
            self.start()

    def _run(self) -> SessionState:
        config = self.config
        logger.info(
            "Starting session",
            namespace=config.namespace,
            service=config.service_name,
        )

        service = self.cluster.get_service(config.namespace, config.service_name)
        pods = self.cluster.list_pods_for_service(service, config.namespace)
        pod_name = pick_pod(pods, config.service_name, config.namespace)
        logger.debug("Selected pod", pod=pod_name, candidates=len(pods))

        self._tunnel = self.tunnel_manager.open(
            config.namespace, pod_name, config.service_port
        )

        credentials = self._read_client_credentials()
        self._credential_manager = CredentialManager(
            credentials,
            config.resolved_token_url,
            http_client=self._http_client,
            timeout=config.token_timeout,
        )
        self._credential_manager.get_valid_token()

        logger.info(
            "Session ready",
            pod=pod_name,
            local_port=self._tunnel.local_port,
        )
        return SessionState(
            tunnel=self._tunnel, credential_manager=self._credential_manager
        )

    def _read_client_credentials(self) -> ClientCredentials:
        """Read CLIENT_ID and CLIENT_SECRET from the Keycloak client secret.

        Any failure here is fatal for the session.
        """
        name = self.config.secret_name
        namespace = self.config.namespace
        try:
            data = self.cluster.get_secret_data(namespace, name)
        except K8snakeError as e:
            logger.critical(
                "Failed to get client secret", secret=name, namespace=namespace
            )
            raise SecretRetrievalError(
                f"failed to get secret {name} in namespace {namespace}: {e}"
            ) from e

        missing = [k for k in (CLIENT_ID_KEY, CLIENT_SECRET_KEY) if not data.get(k)]
        if missing:
            logger.critical("Client secret is incomplete", secret=name, missing=missing)
            raise SecretRetrievalError(
                f"secret {name} in namespace {namespace} is missing {', '.join(missing)}"
            )

        return ClientCredentials(
            client_id=data[CLIENT_ID_KEY], client_secret=data[CLIENT_SECRET_KEY]
        )

    def _release(self) -> None:
        if self._tunnel is not None:
            self.tunnel_manager.close(self._tunnel)
        if self._credential_manager is not None:
            self._credential_manager.close()

    def shutdown(self) -> None:
        """Close the tunnel. Runs once no matter how many exit paths call it."""
        with self._shutdown_lock:
            if self._shut_down:
                return
            self._shut_down = True

        self.state.clear()
        if self._tunnel is not None:
            logger.debug("Closing tunnel", tunnel=self._tunnel.id)
        self._release()
        if self._register_atexit and self._started:
            atexit.unregister(self.shutdown)

    def __enter__(self) -> "SessionOrchestrator":
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        self.shutdown()
        return False
