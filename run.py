#!/usr/bin/env python3
"""
Microfinance Back-Office Entry Point

Starts the FastAPI server with settings from MICROFINANCE_* environment
variables (or .env).
"""

import sys

from microfinance.api import run_server
from microfinance.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Village Microfinance API...")
    print(f"Database: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
