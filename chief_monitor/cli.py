"""Run the monitor API server.

Usage:
    python -m chief_monitor.cli
    python -m chief_monitor.cli --host 0.0.0.0 --port 8080
"""

import argparse
import logging

import uvicorn

from chief_monitor.config import get_settings


def main(argv: list[str] | None = None) -> None:
    """Parse arguments and serve the FastAPI app with uvicorn."""
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Chief Monitor telemetry and alerting service")
    parser.add_argument("--host", default=settings.monitor_host, help="Bind address (default: %(default)s)")
    parser.add_argument("--port", type=int, default=settings.monitor_port, help="Bind port (default: %(default)s)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run("chief_monitor.api.main:app", host=args.host, port=args.port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
