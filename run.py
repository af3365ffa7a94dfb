#!/usr/bin/env python3
"""
Teller Core Entry Point

Starts the FastAPI server with the configured storage backend.
"""

import sys

import uvicorn

from teller_core.api import create_app
from teller_core.config import get_config


if __name__ == "__main__":
    config = get_config()

    print("🏦 Starting Teller Core...")
    print(f"🗄️  Storage: {config.database_url.split('://')[0]}")
    print("🔒 Audit trail active" if config.enable_audit_logging else "⚠️  Audit trail disabled")
    print("💰 All amounts use Decimal precision")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        uvicorn.run(
            create_app(),
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down Teller Core...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
