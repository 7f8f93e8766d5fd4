#!/usr/bin/env python3
"""
Run script for the LunaSphere API.
This script launches the FastAPI server defined in lunasphere.main.
"""
import os
import sys
import traceback

import uvicorn

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3000"))
    reload = os.getenv("APP_ENV", "production") == "development"
    try:
        print("Starting LunaSphere API server...")
        print(f"Access the API at http://localhost:{port}/api")
        print(f"Health check at http://localhost:{port}/health")

        uvicorn.run(
            "lunasphere.main:app",
            host=host,
            port=port,
            reload=reload,
            log_level=os.getenv("LOG_LEVEL", "info").lower(),
        )
    except Exception as e:
        print(f"Error starting server: {e}")
        traceback.print_exc()
        sys.exit(1)
