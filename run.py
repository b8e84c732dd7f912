#!/usr/bin/env python3
"""
Lending Back Office Entry Point

Starts the FastAPI server with the host, port and logging taken from the
LENDING_* environment configuration.
"""

import sys

from lending_core.api import run_server
from lending_core.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Lending Back Office...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Lending Back Office...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
