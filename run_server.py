#!/usr/bin/env python
"""
API Server Entry Point

Usage:
    Development:  python run_server.py --dev
    Production:   python run_server.py --port 8000

Background jobs run in a separate process: ``sellerops-worker``.
"""

import argparse
import os

import uvicorn

from sellerops.config import get_settings


def run_dev_server(port: int) -> None:
    """Run development server with auto-reload."""
    uvicorn.run(
        "sellerops.main:app",
        host="127.0.0.1",
        port=port,
        reload=True,
        reload_dirs=["sellerops"],
        log_level="debug",
    )


def run_prod_server(port: int) -> None:
    settings = get_settings()
    uvicorn.run(
        "sellerops.main:app",
        host=settings.api_host,
        port=port,
        workers=int(os.getenv("WORKERS", 4)),
        log_level=settings.monitoring.log_level.lower(),
        proxy_headers=True,
        forwarded_allow_ips="*",
        server_header=False,
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seller Operations API Server")
    parser.add_argument("--dev", action="store_true", help="Run in development mode with auto-reload")
    parser.add_argument("--port", type=int, default=None, help="Port to run on (default: API_PORT)")
    args = parser.parse_args()

    port = args.port or get_settings().api_port
    if args.dev:
        run_dev_server(port)
    else:
        run_prod_server(port)
