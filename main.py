"""
main.py: server launcher and entry point.

Run this file to start the seat scheduler API:

    python main.py

This file does NOT contain application logic. See seatflow/main.py for the
FastAPI application, service wiring, and startup sequence.

Direct uvicorn usage:
    uvicorn seatflow.main:app --reload

Set SEATFLOW_DRIVER_ENABLED=1 to run the periodic scheduler tick inside the
server process.
"""

from __future__ import annotations

import os

import uvicorn


HOST = os.getenv("SEATFLOW_HOST", "127.0.0.1")
PORT = int(os.getenv("SEATFLOW_PORT", "8000"))


def main() -> None:
    """Start the seat scheduler server."""
    print("=" * 60)
    print("  Seatflow: Reading Room Seat Scheduler")
    print("=" * 60)
    print(f"  Server  : http://{HOST}:{PORT}")
    print(f"  API docs: http://{HOST}:{PORT}/docs")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    # Start uvicorn; blocks until CTRL+C
    uvicorn.run(
        "seatflow.main:app",
        host=HOST,
        port=PORT,
        reload=False,  # one process; the driver loop must not run twice
        log_level="info",
    )


if __name__ == "__main__":
    main()
