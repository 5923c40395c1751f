#!/usr/bin/env python3
"""
Lending Engine Entry Point

Starts the FastAPI server (and, when enabled, the payment worker pool) using
settings from the environment (LENDING_* variables or .env).
"""

import sys

import uvicorn

from lending_engine.api import create_app
from lending_engine.config import get_config
from lending_engine.logging_config import setup_logging


def run_server(host: str, port: int, log_level: str = "info"):
    """Run the FastAPI server"""
    uvicorn.run(create_app(), host=host, port=port, log_level=log_level)


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    print("Starting Lending Engine...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"Payment workers: {config.worker_concurrency if config.worker_enabled else 'disabled'}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")
    print()

    try:
        run_server(host=config.api_host, port=config.api_port, log_level=config.log_level.lower())
    except KeyboardInterrupt:
        print("\nShutting down Lending Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
