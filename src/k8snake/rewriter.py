"""Per-request rewriting onto the tunnel."""

import httpx

from .config import DEFAULT_CONTENT_TYPE
from .logging import get_logger
from .session import SessionStateHolder
from .utils import sanitize_log_data

logger = get_logger(__name__)


class RequestRewriter:
    """httpx request hook pointing every request at the published tunnel.

    Only reads the published session state; it never opens tunnels or
    builds credentials itself, and credential errors reach the caller
    unchanged.
    """

    def __init__(
        self,
        state: SessionStateHolder,
        custom_header_name: str | None = None,
        custom_header_value: str = "",
        content_type: str = DEFAULT_CONTENT_TYPE,
    ):
        self.state = state
        self.custom_header_name = custom_header_name
        self.custom_header_value = custom_header_value
        self.content_type = content_type

    def __call__(self, request: httpx.Request) -> None:
        self.rewrite(request)

    def rewrite(self, request: httpx.Request) -> None:
        """Mutate ``request`` in place.

        Raises:
            SessionNotStartedError: If no session state has been published
            CredentialError: If a valid token cannot be obtained
        """
        session = self.state.get()
        tunnel = session.tunnel
        token = session.token()

        request.url = request.url.copy_with(
            host=tunnel.local_host, port=tunnel.local_port
        )
        request.headers["Host"] = f"localhost:{tunnel.local_port}"
        request.headers["Authorization"] = f"Bearer {token}"
        request.headers["Content-Type"] = self.content_type

        if self.custom_header_name and not request.headers.get(self.custom_header_name):
            request.headers[self.custom_header_name] = self.custom_header_value

        logger.debug(
            "Request rewritten",
            method=request.method,
            path=request.url.path,
            headers=sanitize_log_data(dict(request.headers)),
        )
