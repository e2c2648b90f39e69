"""k8snake - reach a pod through a port-forward tunnel with a Keycloak token."""

from .api import create_rewriter, managed_session, session_client
from .cluster import ClusterReader
from .config import SessionConfig
from .credentials import ClientCredentials, Credential, CredentialManager
from .exceptions import (
    AuthError,
    ClusterError,
    ConfigurationError,
    CredentialError,
    DecodeError,
    K8snakeError,
    NotFoundError,
    SecretRetrievalError,
    SessionNotStartedError,
    TransportError,
    TunnelError,
    TunnelSetupError,
    TunnelStateError,
    TunnelTimeoutError,
)
from .logging import get_logger, setup_logging
from .rewriter import RequestRewriter
from .session import SessionOrchestrator, SessionState, SessionStateHolder
from .tunnel import PortForwardProcess, Tunnel, TunnelManager, TunnelStatus

# Setup logging on package initialization
setup_logging(level="INFO")

logger = get_logger(__name__)

__version__ = "0.1.0"


__all__ = [
    # High-level API
    "session_client",
    "managed_session",
    "create_rewriter",
    # Session
    "SessionConfig",
    "SessionOrchestrator",
    "SessionState",
    "SessionStateHolder",
    "RequestRewriter",
    # Tunnels
    "TunnelManager",
    "Tunnel",
    "TunnelStatus",
    "PortForwardProcess",
    # Credentials
    "CredentialManager",
    "Credential",
    "ClientCredentials",
    "ClusterReader",
    # Exceptions
    "K8snakeError",
    "ConfigurationError",
    "NotFoundError",
    "ClusterError",
    "TunnelError",
    "TunnelTimeoutError",
    "TunnelSetupError",
    "TransportError",
    "TunnelStateError",
    "CredentialError",
    "AuthError",
    "DecodeError",
    "SecretRetrievalError",
    "SessionNotStartedError",
    # Utilities
    "get_logger",
    "setup_logging",
]
