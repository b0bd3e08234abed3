#!/usr/bin/env python
"""Run the fulfillment API under uvicorn. PORT and HOST come from the environment."""
import os

import uvicorn

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    host = os.environ.get("HOST", "0.0.0.0")

    print(f"Starting merchant fulfillment API on {host}:{port}")

    uvicorn.run(
        "merchant.main:app",
        host=host,
        port=port,
        log_level=os.environ.get("LOG_LEVEL", "info").lower(),
    )
