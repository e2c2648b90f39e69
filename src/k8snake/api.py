"""High-level API for k8snake.

This module provides simple functions that wire the orchestrator and the
request rewriter into an ``httpx.Client``.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import httpx

from .config import SessionConfig
from .logging import get_logger
from .rewriter import RequestRewriter
from .session import SessionOrchestrator

logger = get_logger(__name__)


def create_rewriter(
    config: SessionConfig, orchestrator: SessionOrchestrator
) -> RequestRewriter:
    """Rewriter bound to the orchestrator's published state."""
    return RequestRewriter(
        orchestrator.state,
        custom_header_name=config.custom_header_name,
        custom_header_value=config.custom_header_value,
        content_type=config.content_type,
    )


def session_client(
    config: SessionConfig,
    orchestrator: SessionOrchestrator | None = None,
    **client_kwargs: Any,
) -> httpx.Client:
    """Create an HTTP client whose requests go through the pod tunnel.

    The session is started lazily by the first request. The caller owns the
    orchestrator's shutdown; use :func:`managed_session` to have it handled.

    Args:
        config: Session configuration
        orchestrator: Orchestrator to use; a new one is created when omitted
        **client_kwargs: Extra ``httpx.Client`` arguments

    Returns:
        httpx.Client with the session hooks installed

    Example:
        >>> client = session_client(SessionConfig.from_env())
        >>> client.get("/things").json()
    """
    if orchestrator is None:
        orchestrator = SessionOrchestrator(config)

    hooks = dict(client_kwargs.pop("event_hooks", None) or {})
    hooks["request"] = [
        orchestrator.before_first_request,
        create_rewriter(config, orchestrator),
        *hooks.get("request", []),
    ]
    client_kwargs.setdefault("base_url", f"http://localhost:{config.service_port}")

    return httpx.Client(event_hooks=hooks, **client_kwargs)


@contextmanager
def managed_session(
    config: SessionConfig,
    orchestrator: SessionOrchestrator | None = None,
    **client_kwargs: Any,
) -> Iterator[httpx.Client]:
    """Start a session eagerly and yield a client bound to it.

    The tunnel is closed on exit, whether the block raised or not.

    Example:
        >>> with managed_session(config) as client:
        ...     response = client.get("/things")
    """
    if orchestrator is None:
        orchestrator = SessionOrchestrator(config)

    try:
        orchestrator.start()
        with session_client(config, orchestrator, **client_kwargs) as client:
            yield client
    finally:
        orchestrator.shutdown()
        logger.debug("Session closed", service=config.service_name)
