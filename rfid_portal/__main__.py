"""
python -m rfid_portal [--config PATH] [--host H] [--port P]

Loads the YAML config, sets up logging and serves the FastAPI app with uvicorn.
"""

from __future__ import annotations
import argparse
import logging

import uvicorn

from . import config_loader


def _parse_args() -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="RFID portal server")
    ap.add_argument("--config", help="Path to config/config.yaml (optional)")
    ap.add_argument("--host", help="Bind address (default from app.server.host)")
    ap.add_argument("--port", type=int, help="Bind port (default from app.server.port)")
    return ap.parse_args()


def main() -> None:
    args = _parse_args()

    if args.config:
        config_loader.use_config(config_loader.load_config(args.config))

    level = config_loader.get_log_level("INFO")
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    host, port = config_loader.get_server_bind()
    host = args.host or host
    port = args.port or port
    logging.getLogger("portal").info("server_bind", extra={"host": host, "port": port})

    from .server import app
    uvicorn.run(app, host=host, port=port, log_level=level.lower())


if __name__ == "__main__":
    main()
