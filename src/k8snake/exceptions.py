"""Custom exceptions for k8snake."""


class K8snakeError(Exception):
    """Base exception for all k8snake errors."""
    pass


class ConfigurationError(K8snakeError):
    """Raised when configuration is invalid."""
    pass


class NotFoundError(K8snakeError):
    """Raised when a service, its pods or a secret cannot be found."""
    pass


class ClusterError(K8snakeError):
    """Raised when the cluster API rejects a request."""
    pass


class TunnelError(K8snakeError):
    """Base exception for tunnel failures."""
    pass


class TunnelTimeoutError(TunnelError):
    """Raised when a tunnel does not become ready before its deadline."""
    pass


class TunnelSetupError(TunnelError):
    """Raised when the transport reported errors while becoming ready."""

    def __init__(self, message: str, error_output: str = ""):
        super().__init__(message)
        self.error_output = error_output


class TransportError(TunnelError):
    """Raised when the port-forward transport cannot be started."""
    pass


class TunnelStateError(TunnelError):
    """Raised on an illegal tunnel state transition."""
    pass


class CredentialError(K8snakeError):
    """Base exception for credential failures."""
    pass


class AuthError(CredentialError):
    """Raised when the token endpoint refuses the exchange."""

    def __init__(
        self, message: str, status_code: int | None = None, body: str = ""
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class DecodeError(CredentialError):
    """Raised when the token endpoint returns an unreadable payload."""
    pass


class SecretRetrievalError(CredentialError):
    """Raised when client credentials cannot be read from the cluster.

    This is fatal: a session without credentials cannot proceed, so callers
    must not retry it.
    """
    pass


class SessionNotStartedError(K8snakeError):
    """Raised when a request is rewritten before the session is published."""
    pass
