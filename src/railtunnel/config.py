from __future__ import annotations

import os
from dataclasses import dataclass

REMOTE_URL_ENV = "RAIL_TUNNEL_REMOTE_URL"

CONTROL_PATH = "/_tunnel/ws/connect"

CONNECT_TIMEOUT_SECONDS = 15.0
KEEPALIVE_INTERVAL_SECONDS = 30.0
FIRST_RETRY_DELAY_SECONDS = 5.0
RETRY_INTERVAL_SECONDS = 10.0
LOCAL_REQUEST_TIMEOUT_SECONDS = 30.0

MAX_FRAME_BYTES = 8 * 1024 * 1024


def default_remote_url() -> str | None:
    """Relay URL from ``$RAIL_TUNNEL_REMOTE_URL``, if set."""
    return os.environ.get(REMOTE_URL_ENV) or None


@dataclass(frozen=True)
class TunnelConfig:
    """Where to forward requests and which relay to register with.

    ``local_port`` is expected to be validated by the caller.
    """

    local_base_url: str
    local_port: int
    relay_url: str

    @classmethod
    def for_port(
        cls, port: int, relay_url: str, local_host: str = "localhost"
    ) -> "TunnelConfig":
        return cls(
            local_base_url=f"http://{local_host}:{port}",
            local_port=port,
            relay_url=relay_url.rstrip("/"),
        )
