__version__ = "1.0.0"

from .client import Tunnel, expose, run_cli  # noqa: E402
from .config import TunnelConfig  # noqa: E402
from .session import ConnectionInfo, SessionState, TunnelSession  # noqa: E402

__all__ = [
    "ConnectionInfo",
    "SessionState",
    "Tunnel",
    "TunnelConfig",
    "TunnelSession",
    "expose",
    "run_cli",
]
