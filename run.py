#!/usr/bin/env python3
"""
Confidential Ledger Entry Point

Starts the FastAPI server with the confidential ledger system.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from confidential_ledger.api import run_server
from confidential_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()

    print("Starting Confidential Ledger...")
    print(f"Storage backend: {config.storage_backend}")
    print(f"Balance codec: {config.balance_codec} (placeholder, not confidential)")
    print(f"Minimum vault reserve: {config.minimum_vault_reserve}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False  # Set to True for development
        )
    except KeyboardInterrupt:
        print("\nShutting down Confidential Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
