#!/usr/bin/env python3
"""
Slipway Controller Daemon

Main entry point for running the Slipway controller as a daemon.
This starts the FastAPI server and the services behind it.
"""

import os
import sys
import logging
import signal
import argparse
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

def setup_logging(level: str = "INFO"):
    """Set up logging configuration."""
    logs_dir = Path(os.getenv("SLIPWAY_LOG_DIR", "logs"))
    logs_dir.mkdir(parents=True, exist_ok=True)

    log_file_path = logs_dir / 'slipway-controller.log'

    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_file_path)
        ]
    )

    logger = logging.getLogger(__name__)
    logger.info(f"Logging to file: {log_file_path}")

def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    logging.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)

def main():
    """Main entry point for the controller daemon."""
    parser = argparse.ArgumentParser(description="Slipway Controller Daemon")
    parser.add_argument("--host", default=None, help="Host to bind to (default: from environment)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to (default: from environment)")
    parser.add_argument("--log-level", default="INFO",
                       choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                       help="Logging level")
    parser.add_argument("--nginx-container", default=None,
                       help="Nginx container name (default: from environment)")

    args = parser.parse_args()

    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    host = args.host or os.getenv("SLIPWAY_HOST")
    if not host:
        logger.error("SLIPWAY_HOST environment variable is required. Please set it in .env file.")
        sys.exit(1)

    port = args.port or (int(os.getenv("SLIPWAY_PORT")) if os.getenv("SLIPWAY_PORT") else None)
    if port is None:
        logger.error("SLIPWAY_PORT environment variable is required. Please set it in .env file.")
        sys.exit(1)

    # Components read their settings from the environment when the API starts
    if args.nginx_container:
        os.environ["SLIPWAY_NGINX_CONTAINER"] = args.nginx_container

    logger.info("Starting Slipway Controller...")
    logger.info(f"API will be available at http://{host}:{port}")
    logger.info(f"Nginx container: {os.getenv('SLIPWAY_NGINX_CONTAINER', 'slipway-nginx')}")

    import uvicorn
    from controller.api import app

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["handlers"]["default"]["stream"] = "ext://sys.stdout"

    try:
        uvicorn.run(
            app,
            host=host,
            port=port,
            log_level=args.log_level.lower(),
            access_log=True,
            log_config=log_config
        )
    except Exception as e:
        logger.error(f"Failed to start controller: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
