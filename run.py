#!/usr/bin/env python3
"""
Garden Ledger Entry Point

Starts the FastAPI server with the settings from the GARDEN_* environment.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from garden_ledger.api import run_server
from garden_ledger.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print("🌻 Starting Garden Ledger...")
    print(f"💾 Storage: {settings.storage_type}, leases: {settings.lock_backend}")
    print(f"🌐 API available at: http://localhost:{settings.api_port}")
    print(f"📚 Documentation at: http://localhost:{settings.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\n👋 Shutting down Garden Ledger...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
