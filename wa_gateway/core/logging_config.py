import logging
import sys
from typing import TextIO

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _utf8_stream_for_stdout() -> TextIO:
    # Emoji in log lines must not crash consoles with legacy codepages
    if hasattr(sys.stdout, "reconfigure"):
        try:
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        except (AttributeError, ValueError):
            pass
    return sys.stdout


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once for the whole process.

    `force=True` replaces any handler uvicorn or a library installed before us,
    so every module logs through the same UTF-8 stream.
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(_utf8_stream_for_stdout())],
        force=True,
    )
    # Socket.IO and aiohttp are chatty at DEBUG
    for noisy in ("asyncio", "aiohttp.access", "engineio.client", "socketio.client"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
