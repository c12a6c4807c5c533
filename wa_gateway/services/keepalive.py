import asyncio
import logging

import aiohttp

logger = logging.getLogger(__name__)


def normalize_url(url: str) -> str:
    """Hosting platforms often expose a bare hostname; assume https for those."""
    url = url.strip()
    if "://" not in url:
        url = f"https://{url}"
    return url


async def ping_once(session: aiohttp.ClientSession, url: str) -> bool:
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=10)) as resp:
            logger.debug("Keepalive ping %s -> %s", url, resp.status)
            return resp.status < 500
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.debug("Keepalive ping failed: %s", e)
        return False


async def keepalive_loop(url: str, interval: float):
    """Hit our own public URL every `interval` seconds so the host does not idle us out."""
    target = normalize_url(url)
    logger.info("Keepalive enabled: pinging %s every %ss", target, interval)
    async with aiohttp.ClientSession() as session:
        while True:
            await asyncio.sleep(interval)
            await ping_once(session, target)
