"""Port-forward tunnel management."""

from .manager import TunnelManager
from .models import Tunnel, TunnelStatus
from .process import PortForwardProcess, StartupOutcome, StartupResult

__all__ = [
    "TunnelManager",
    "Tunnel",
    "TunnelStatus",
    "PortForwardProcess",
    "StartupOutcome",
    "StartupResult",
]
