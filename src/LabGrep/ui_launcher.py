"""Launch the Streamlit app and open the browser."""

from __future__ import annotations

import logging
import threading
import time
import webbrowser
from pathlib import Path

import requests

logger = logging.getLogger(__name__)

PORT = 8501
URL = f"http://localhost:{PORT}"
APP_PATH = Path(__file__).resolve().parent / "app.py"


def _wait_and_open_browser(url: str = URL, attempts: int = 30) -> bool:
    """Wait for the Streamlit server to become ready, then open the browser."""
    for _ in range(attempts):  # one attempt per second
        try:
            resp = requests.get(url, timeout=2)
            if resp.status_code == 200:
                webbrowser.open(url)
                return True
        except requests.RequestException as exc:
            logger.debug("streamlit not ready yet: %s", exc)
        time.sleep(1)
    logger.warning("streamlit did not answer at %s, open it manually", url)
    return False


def launch(port: int = PORT) -> None:
    from streamlit.web import bootstrap

    url = f"http://localhost:{port}"
    threading.Thread(target=_wait_and_open_browser, args=(url,), daemon=True).start()

    bootstrap.run(
        str(APP_PATH),
        is_hello=False,
        args=[],
        flag_options={
            "server.headless": True,
            "server.port": port,
            "browser.gatherUsageStats": False,
        },
    )
