"""
main.py: server launcher and entry point.

Run this file to start the scheduler API and open the interactive docs:

    python main.py

The Streamlit operator dashboard runs separately:

    streamlit run dashboard/app.py

This file does NOT contain application logic. See app.py for the FastAPI
application, service wiring, and startup sequence.
"""

from __future__ import annotations

import os
import threading
import time
import webbrowser

import uvicorn


HOST = os.getenv("FLEET_HOST", "127.0.0.1")
PORT = int(os.getenv("FLEET_PORT", "8000"))
DOCS_URL = f"http://{HOST}:{PORT}/docs"


def _open_browser_after_startup(delay_seconds: float = 2.0) -> None:
    """
    Open the API docs in the default browser after a short delay.

    The delay allows uvicorn to finish startup (schema init, demo seed)
    before the browser hits the server for the first time.
    """
    time.sleep(delay_seconds)
    print(f"\n  Opening API docs -> {DOCS_URL}\n")
    webbrowser.open(DOCS_URL)


def main() -> None:
    """Start the scheduler server."""
    print("=" * 60)
    print("  Fleet Timeline Scheduler")
    print("=" * 60)
    print(f"  Server   : http://{HOST}:{PORT}")
    print(f"  API docs : {DOCS_URL}")
    print("  Dashboard: streamlit run dashboard/app.py")
    print("=" * 60)
    print("  Press CTRL+C to stop\n")

    browser_thread = threading.Thread(
        target=_open_browser_after_startup,
        daemon=True,
    )
    browser_thread.start()

    uvicorn.run(
        "app:app",
        host=HOST,
        port=PORT,
        reload=True,
        log_level="info",
    )


if __name__ == "__main__":
    main()
