# nostr_identity/refresh.py

import asyncio
import logging

from nostr_identity.config import PUSH_REFRESH_ENABLED, PUSH_REFRESH_INTERVAL
from nostr_identity.errors import NostrIdentityError

logger = logging.getLogger(__name__)

_INITIAL_DELAY = 5  # seconds before the first check


async def _refresh_loop(push, initial_delay: float, interval: float):
    """
    Background worker: re-sends push registrations before the service
    expires them. Runs once shortly after startup, then every *interval*.
    """
    await asyncio.sleep(initial_delay)
    while True:
        try:
            if push.store.current is not None:
                await push.check_and_refresh()
        except NostrIdentityError as exc:
            logger.warning("Push refresh skipped: %s", exc)
        except Exception:
            logger.exception("Push refresh crashed; will retry next interval")
        await asyncio.sleep(interval)


def start_refresh_task(push, initial_delay: float = _INITIAL_DELAY, interval: float = PUSH_REFRESH_INTERVAL):
    """
    Called from the FastAPI startup hook. Returns the task, or None when
    refresh is disabled.
    """
    if not PUSH_REFRESH_ENABLED:
        logger.info("Push refresh disabled (PUSH_REFRESH_ENABLED != true)")
        return None

    logger.info("Starting push refresh task (every %ds)", interval)
    return asyncio.create_task(_refresh_loop(push, initial_delay, interval), name="push-refresh")


async def stop_refresh_task(task):
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
