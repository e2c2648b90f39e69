"""Tunnel models.

A tunnel is an immutable snapshot; every status change produces a new
instance so a handle published to other threads never changes underneath
them.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import TunnelStateError
from ..utils import LOOPBACK_HOST


class TunnelStatus(str, Enum):
    """Tunnel status enumeration."""

    IDLE = "idle"
    ESTABLISHING = "establishing"
    READY = "ready"
    FAILED = "failed"
    CLOSED = "closed"


ALLOWED_TRANSITIONS: dict[TunnelStatus, frozenset[TunnelStatus]] = {
    TunnelStatus.IDLE: frozenset({TunnelStatus.ESTABLISHING}),
    TunnelStatus.ESTABLISHING: frozenset({TunnelStatus.READY, TunnelStatus.FAILED}),
    TunnelStatus.READY: frozenset({TunnelStatus.CLOSED}),
    TunnelStatus.FAILED: frozenset(),
    TunnelStatus.CLOSED: frozenset(),
}


class Tunnel(BaseModel):
    """Port-forward from a local port to a port of one pod."""

    model_config = ConfigDict(frozen=True)

    namespace: str = Field(min_length=1, description="Namespace of the pod")
    pod_name: str = Field(min_length=1, description="Pod the tunnel targets")
    local_port: int = Field(ge=1, le=65535, description="Local port bound by the transport")
    remote_port: int = Field(ge=1, le=65535, description="Container port in the pod")
    status: TunnelStatus = Field(default=TunnelStatus.IDLE)
    created_at: datetime = Field(default_factory=datetime.now)
    ready_at: datetime | None = Field(default=None)
    output: tuple[str, ...] = Field(
        default=(), description="Lines the transport wrote to stdout during startup"
    )

    @property
    def id(self) -> str:
        return f"{self.namespace}/{self.pod_name}:{self.local_port}:{self.remote_port}"

    @property
    def local_host(self) -> str:
        return LOOPBACK_HOST

    @property
    def local_address(self) -> str:
        """``host:port`` the tunnel listens on."""
        return f"{self.local_host}:{self.local_port}"

    @property
    def is_ready(self) -> bool:
        return self.status == TunnelStatus.READY

    @property
    def is_terminal(self) -> bool:
        return self.status in (TunnelStatus.CLOSED, TunnelStatus.FAILED)

    def with_status(self, status: TunnelStatus, **changes: Any) -> "Tunnel":
        """Create new tunnel instance with updated status (immutable pattern).

        Args:
            status: New tunnel status
            **changes: Extra fields to update alongside the status

        Returns:
            New tunnel instance with updated status

        Raises:
            TunnelStateError: If the transition is not allowed
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise TunnelStateError(
                f"Tunnel {self.id} cannot go from {self.status.value} to {status.value}"
            )

        update_data: dict[str, Any] = {"status": status, **changes}
        if status == TunnelStatus.READY and self.ready_at is None:
            update_data["ready_at"] = datetime.now()

        return self.model_copy(update=update_data)
