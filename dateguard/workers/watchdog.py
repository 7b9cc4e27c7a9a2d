import logging
import time

import httpx

from ..config import configure_logging, settings

log = logging.getLogger("dateguard.workers.watchdog")


def tick(client: httpx.Client) -> dict:
    r = client.post(f"{settings.api_base}/api/v1/sweeps/watchdog", headers={"X-Api-Key": settings.api_key})
    r.raise_for_status()
    return r.json()


def run_loop():
    configure_logging()
    log.info("starting watchdog loop, every %ss against %s", settings.watchdog_interval_seconds, settings.api_base)
    with httpx.Client(timeout=30) as client:
        while True:
            try:
                out = tick(client)
                if out.get("triggered") or out.get("failed"):
                    log.warning("watchdog: %d triggered, %d failed", out.get("triggered", 0), out.get("failed", 0))
                time.sleep(settings.watchdog_interval_seconds)
            except KeyboardInterrupt:
                break
            except Exception as e:
                log.error("watchdog sweep error: %s", e)
                time.sleep(settings.watchdog_interval_seconds)


if __name__ == "__main__":
    run_loop()
