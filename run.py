#!/usr/bin/env python3
"""
Workflow Engine Entry Point

Starts the FastAPI server and the background SLA scheduler.
"""

import sys

import uvicorn

from workflow_core.config import get_config
from workflow_core.logging_config import setup_logging
from workflow_core.system import get_workflow_system


def run_server(host: str, port: int, debug: bool = False) -> None:
    """Run the FastAPI server"""
    uvicorn.run(
        "workflow_core.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format)
    logger.info(f"Starting workflow engine on {config.api_host}:{config.api_port} "
                f"(storage={config.storage_backend})")

    system = get_workflow_system()
    system.start_background_tasks()

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down workflow engine")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
    finally:
        system.shutdown()
