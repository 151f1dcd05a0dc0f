import logging
import threading
from datetime import datetime, timezone

import requests

log = logging.getLogger(__name__)


def ping_once(url: str, timeout: float = 10) -> int | None:
    """GET the service's own URL so the host doesn't idle it. Returns the status code."""
    stamp = datetime.now(timezone.utc).isoformat()
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        log.error("[KEEP-ALIVE] %s - Error pinging self: %s", stamp, e)
        return None
    log.info("[KEEP-ALIVE] %s - Ping status: %s", stamp, resp.status_code)
    return resp.status_code


class KeepAlive(threading.Thread):
    def __init__(self, url: str, interval: float = 240):
        super().__init__(name="keep-alive", daemon=True)
        self.url = url
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            ping_once(self.url)

    def stop(self):
        self._stop_event.set()
