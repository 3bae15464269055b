"""
Expose a local service that is already running on port 8000.

Usage:
    # Start your local app first (e.g. simple_http_app.py), then:
    RAIL_TUNNEL_REMOTE_URL=https://my-tunnel.example.com python expose_example.py
"""
import os

import railtunnel


def main() -> None:
    tunnel = railtunnel.expose(8000, os.environ["RAIL_TUNNEL_REMOTE_URL"])
    print("Public URL:", tunnel.public_url)
    try:
        input("Press Enter to stop...")
    finally:
        tunnel.close()


if __name__ == "__main__":
    main()
