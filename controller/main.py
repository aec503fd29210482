#!/usr/bin/env python3
"""
Telescaler Controller Daemon

Main entry point for running the Telescaler controller as a daemon.
This starts the FastAPI server and all background loops.
"""

import os
import sys
import logging
import signal
import argparse
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

def setup_logging(level: str = "INFO"):
    """Set up logging configuration."""
    # In a container, use /app/logs (mounted volume); locally, ./logs under the project root
    if os.path.exists('/app/logs'):
        logs_dir = Path('/app/logs')
    else:
        logs_dir = project_root / 'logs'

    logs_dir.mkdir(exist_ok=True)

    log_file_path = logs_dir / 'telescaler-controller.log'

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
    from controller.config import Settings

    parser = argparse.ArgumentParser(description="Telescaler Controller Daemon")
    parser.add_argument("--host", default=None, help="Host to bind to (default: TELESCALER_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to (default: TELESCALER_PORT)")
    parser.add_argument("--log-level", default=None,
                       choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                       help="Logging level (default: TELESCALER_LOG_LEVEL or INFO)")
    parser.add_argument("--policy-file", default=None,
                       help="YAML/JSON policy file to load at startup (default: TELESCALER_POLICY_FILE)")
    parser.add_argument("--orchestrator", default=None, choices=["simulated", "docker"],
                       help="Orchestration backend (default: TELESCALER_ORCHESTRATOR or simulated)")

    args = parser.parse_args()

    try:
        settings = Settings.from_env()
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    # Command line arguments win over the environment
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    if args.log_level:
        settings.log_level = args.log_level
    if args.policy_file:
        settings.policy_file = args.policy_file
    if args.orchestrator:
        settings.orchestrator = args.orchestrator

    setup_logging(settings.log_level)
    logger = logging.getLogger(__name__)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    if settings.policy_file and not Path(settings.policy_file).exists():
        logger.error(f"Policy file {settings.policy_file} does not exist")
        sys.exit(1)

    logger.info("Starting Telescaler Controller...")
    logger.info(f"API will be available at http://{settings.host}:{settings.port}")
    logger.info(
        f"Orchestrator: {settings.orchestrator}, evaluation every {settings.evaluation_interval_seconds}s, "
        f"max {settings.max_concurrent_actions} concurrent actions"
    )

    try:
        import uvicorn
        from controller.api import app
        from controller.utils import lifecycle
        from controller.utils.lifecycle import ControlPlane

        lifecycle.set_control_plane(ControlPlane.build(settings))

        # Configure uvicorn logging to work with our setup
        log_config = uvicorn.config.LOGGING_CONFIG
        log_config["handlers"]["default"]["stream"] = "ext://sys.stdout"

        uvicorn.run(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
            access_log=True,
            log_config=log_config
        )

    except Exception as e:
        logger.error(f"Failed to start controller: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
