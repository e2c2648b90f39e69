"""Utility functions for k8snake."""

import socket
from typing import Any

MIN_PORT = 1
MAX_PORT = 65535

LOOPBACK_HOST = "127.0.0.1"


def validate_port(port: int, port_name: str = "Port") -> None:
    """Validate port number range.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Raises:
        ValueError: If port is not in valid range (1-65535)
    """
    if (
        isinstance(port, bool)
        or not isinstance(port, int)
        or not (MIN_PORT <= port <= MAX_PORT)
    ):
        raise ValueError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")


def get_free_port(host: str = LOOPBACK_HOST) -> int:
    """Ask the OS for an unused local TCP port.

    The socket is closed before returning, so another process may grab the
    port in between; kubectl then fails to bind and reports it on stderr.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, 0))
        port: int = sock.getsockname()[1]
    return port


def build_label_selector(selector: dict[str, str] | None) -> str:
    """Render a service selector as a Kubernetes label selector string.

    Keys are sorted so the same selector always yields the same query.
    """
    if not selector:
        return ""
    return ",".join(f"{key}={value}" for key, value in sorted(selector.items()))


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 4
) -> str:
    """Mask sensitive data for logging while preserving some characters for debugging.

    Args:
        value: Sensitive string to mask (e.g., client secret, bearer token)
        mask_char: Character to use for masking
        show_chars: Number of characters to show at the end

    Returns:
        Masked string safe for logging
    """
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    return mask_char * masked_length + value[-show_chars:]


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Sanitize dictionary data for safe logging by masking sensitive fields."""
    sensitive_fields = {
        "token",
        "secret",
        "password",
        "authorization",
        "api_key",
    }

    sanitized = {}
    for key, value in data.items():
        if any(sensitive_field in key.lower() for sensitive_field in sensitive_fields):
            sanitized[key] = mask_sensitive_data(str(value) if value else None)
        else:
            sanitized[key] = value

    return sanitized
