import logging
import os
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

# Fixed User Agent
REAL_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"

# Full bootstrap for small containers: no sandbox, no /dev/shm, one process
FRESH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--single-process",
    "--disable-gpu",
]

RESUME_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
]

CHROMIUM_CANDIDATES = ["/usr/bin/chromium", "/usr/bin/chromium-browser"]


class LaunchMode(str, Enum):
    RESUME = "resume"
    FRESH = "fresh"


def select_launch_mode(has_credential: bool, force_fresh: bool = False) -> LaunchMode:
    if has_credential and not force_fresh:
        return LaunchMode.RESUME
    return LaunchMode.FRESH


@dataclass
class LaunchConfig:
    mode: LaunchMode
    headless: bool = True
    args: List[str] = field(default_factory=list)
    executable_path: Optional[str] = None
    user_agent: str = REAL_USER_AGENT
    viewport: Dict[str, int] = field(default_factory=lambda: {"width": 1280, "height": 800})

    def browser_kwargs(self) -> Dict[str, Any]:
        launch_args: Dict[str, Any] = {"headless": self.headless, "args": list(self.args)}
        if self.executable_path:
            launch_args["executable_path"] = self.executable_path
        return launch_args

    def context_kwargs(self) -> Dict[str, Any]:
        return {"user_agent": self.user_agent, "viewport": dict(self.viewport)}


def detect_browser_executable(candidates: Sequence[str] = CHROMIUM_CANDIDATES) -> Optional[str]:
    """Return the first system Chromium found, logging its version.

    None means Playwright's bundled browser will be used.
    """
    for path in candidates:
        if not path or not os.path.exists(path):
            continue
        try:
            out = subprocess.run([path, "--version"], capture_output=True, text=True, timeout=3)
            version = (out.stdout or out.stderr or "").strip()
        except (OSError, subprocess.SubprocessError) as e:
            version = f"version unknown ({e})"
        logger.info("ℹ️ Chromium found at %s: %s", path, version)
        return path

    logger.info("No system Chromium found, falling back to Playwright's bundled browser")
    return None


def build_launch_config(mode: LaunchMode, settings) -> LaunchConfig:
    """Browser options for a launch mode.

    Fresh launches get the full bootstrap flag set. Resume launches assume the
    browser binary is already provisioned and only disable the sandbox.
    """
    executable = settings.browser_executable_path or detect_browser_executable()
    if settings.browser_executable_path:
        logger.info("Using custom executable: %s", settings.browser_executable_path)

    args = FRESH_ARGS if mode is LaunchMode.FRESH else RESUME_ARGS
    return LaunchConfig(
        mode=mode,
        headless=settings.headless,
        args=list(args),
        executable_path=executable,
    )
