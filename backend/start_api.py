#!/usr/bin/env python3
"""
raff webhooks API startup script (development).

Serves raff.main:app with reload. Production runs uvicorn directly.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the webhook API server."""
    print("Starting raff webhooks API...")
    print("   Salla webhooks: POST http://localhost:8000/webhooks/salla")
    print("   Zid webhooks:   POST http://localhost:8000/webhooks/zid")
    print("   Swagger UI:     http://localhost:8000/docs")

    if not Path(".env").exists():
        print("WARNING: No .env file found. Set at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   SALLA_WEBHOOK_SECRET=... / ZID_WEBHOOK_SECRET=...")

    try:
        uvicorn.run(
            "raff.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["raff"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down raff webhooks API...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
