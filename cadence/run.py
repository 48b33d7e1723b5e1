from __future__ import annotations

import argparse

import uvicorn

from .config import get_settings


def main(argv: list[str] | None = None) -> None:
    """Serve the API. Host and port default to the `app` section of the settings file."""
    s = get_settings()
    parser = argparse.ArgumentParser(prog="cadence-server")
    parser.add_argument("--host", default=s.app.host, help=f"Bind address (default: {s.app.host})")
    parser.add_argument("--port", type=int, default=int(s.app.port), help=f"Bind port (default: {s.app.port})")
    args = parser.parse_args(argv)

    uvicorn.run("cadence.main:app", host=args.host, port=args.port, log_level=s.logging.level.lower())


if __name__ == "__main__":
    main()
