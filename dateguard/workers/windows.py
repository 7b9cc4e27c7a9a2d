import logging
import time

import httpx

from ..config import configure_logging, settings

log = logging.getLogger("dateguard.workers.windows")

# Publish first: an encounter with both reviews in should close as posted,
# not as expired, when both are due in the same tick
SWEEPS = ("publish", "expiry")


def tick(client: httpx.Client) -> dict:
    out = {}
    for name in SWEEPS:
        try:
            r = client.post(f"{settings.api_base}/api/v1/sweeps/{name}", headers={"X-Api-Key": settings.api_key})
            r.raise_for_status()
            out[name] = r.json()
            log.info("%s sweep: %d processed, %d failed", name, out[name].get("processed", 0),
                     out[name].get("failed", 0))
        except httpx.HTTPError as e:
            log.error("%s sweep error: %s", name, e)
    return out


def run_loop():
    configure_logging()
    log.info("starting encounter window loop, every %ss", settings.window_sweep_interval_seconds)
    with httpx.Client(timeout=30) as client:
        while True:
            try:
                tick(client)
                time.sleep(settings.window_sweep_interval_seconds)
            except KeyboardInterrupt:
                break


if __name__ == "__main__":
    run_loop()
