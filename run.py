#!/usr/bin/env python3
"""
Interbank Ledger Entry Point

Starts the FastAPI server with the configured bank identity.
"""

import sys

import uvicorn

from interbank.config import get_config


if __name__ == "__main__":
    config = get_config()

    print(f"🏦 Starting Interbank Ledger for bank {config.bank_prefix}...")
    print("🔑 Outgoing transfers signed with RS256")
    print("🏛️  Counterpart banks attested by the central bank registry")
    if config.test_mode:
        print("🧪 TEST mode: no calls to the registry or counterpart banks")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        uvicorn.run(
            "interbank.api:create_app",
            factory=True,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down Interbank Ledger...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)
