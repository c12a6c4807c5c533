import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, Dict, Optional

from wa_gateway.core.config import DEFAULT_CLIENT_ID
from wa_gateway.core.errors import GatewayError, NotReadyError, SendError, StoreError
from wa_gateway.services.backoff import BackoffPolicy
from wa_gateway.services.credential_store import CredentialRecord, CredentialStore
from wa_gateway.services.events import (
    AuthFailed,
    Authenticated,
    ChallengeIssued,
    Disconnected,
    Ready,
    SessionEvent,
)
from wa_gateway.services.launch import LaunchMode, select_launch_mode
from wa_gateway.services.snapshot import SnapshotCache

logger = logging.getLogger(__name__)

# Minimum seconds between two "QR generated" log lines
CHALLENGE_LOG_INTERVAL = 30.0

# (mode, credential payload, event callback) -> session handle
SessionFactory = Callable[[LaunchMode, Any, Callable[[SessionEvent], None]], Any]


class ControllerState(str, Enum):
    NOT_STARTED = "not-started"
    INITIALIZING = "initializing"
    AWAITING_CHALLENGE = "awaiting-challenge"
    READY = "ready"
    DEGRADED = "degraded"


@dataclass
class ChallengeToken:
    value: str
    image_base64: Optional[str]
    issued_at: float


class SessionController:
    """Brings one WhatsApp session to ready and keeps it there.

    Owns the session handle exclusively. Transitions run under one lock, so a
    launch, a retry and an event never interleave; HTTP handlers read `state`
    and `challenge` without the lock and see the last settled value.

    Cold start probes the store for a credential (restoring the snapshot if
    the primary record is missing) and launches in resume or fresh mode.
    Launch failures and rejected credentials are retried with `backoff`.
    A disconnect tears the session down, waits `settle_delay` and relaunches
    in resume mode without probing again.
    """

    def __init__(
        self,
        store: CredentialStore,
        session_factory: SessionFactory,
        client_id: str = DEFAULT_CLIENT_ID,
        snapshots: Optional[SnapshotCache] = None,
        backoff: Optional[BackoffPolicy] = None,
        force_fresh: bool = False,
        settle_delay: float = 15.0,
        persist_interval: float = 300.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.session_factory = session_factory
        self.client_id = client_id
        self.snapshots = snapshots or SnapshotCache(store, client_id)
        self.backoff = backoff or BackoffPolicy()
        self.force_fresh = force_fresh
        self.settle_delay = settle_delay
        self.persist_interval = persist_interval
        self._sleep = sleep

        self.state = ControllerState.NOT_STARTED
        self.challenge: Optional[ChallengeToken] = None
        self.attempts = 0
        self.mode: Optional[LaunchMode] = None

        self._session = None
        self._generation = 0
        self._launching = False
        self._closing = False
        self._lock = asyncio.Lock()
        self._events: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._retry_task: Optional[asyncio.Task] = None
        self._persist_task: Optional[asyncio.Task] = None
        self._last_challenge_log: Optional[float] = None
        self._suppressed_challenges = 0

    @classmethod
    def from_settings(cls, settings, store: CredentialStore, session_factory: SessionFactory) -> "SessionController":
        return cls(
            store,
            session_factory,
            client_id=settings.client_id,
            backoff=BackoffPolicy.from_settings(settings),
            force_fresh=settings.force_fresh_login,
            settle_delay=settings.reconnect_settle_delay,
            persist_interval=settings.persist_interval,
        )

    @property
    def ready(self) -> bool:
        return self.state is ControllerState.READY

    @property
    def pending_retry(self) -> Optional[asyncio.Task]:
        return self._retry_task

    # -- startup ----------------------------------------------------------

    async def run(self, startup_delay: float = 0.0):
        """Background entry point: wait for the HTTP server to settle, then start."""
        if startup_delay > 0:
            logger.info("⏳ Waiting %ss before initializing client...", startup_delay)
            await asyncio.sleep(startup_delay)
        await self.start()

    async def start(self) -> bool:
        """Probe for a stored session and launch. Returns False if already started."""
        if self._launching or self._closing or self.state is not ControllerState.NOT_STARTED:
            logger.info("Start ignored, session is %s", self.state.value)
            return False

        self._launching = True
        try:
            self._ensure_consumer()
            async with self._lock:
                self.state = ControllerState.INITIALIZING
                await self._probe_and_launch()
        finally:
            self._launching = False
        return True

    def _probe(self) -> LaunchMode:
        has_credential = self.store.has_credential(self.client_id)
        if has_credential:
            logger.info("✅ Found existing WhatsApp session data for %s", self.client_id)
        else:
            logger.info("ℹ️ No session found for %s, checking snapshot", self.client_id)
            if self.snapshots.restore():
                has_credential = self.store.has_credential(self.client_id)

        return select_launch_mode(has_credential, self.force_fresh)

    async def _probe_and_launch(self):
        try:
            mode = self._probe()
        except StoreError as e:
            logger.error("❌ Could not check for a stored session: %s", e)
            self._fail(f"store unavailable: {e}", None)
            return
        await self._launch(mode)

    async def _launch(self, mode: LaunchMode):
        # Caller holds self._lock
        if self._closing:
            return

        self._generation += 1
        generation = self._generation
        self.mode = mode
        self.state = ControllerState.INITIALIZING

        credential = self._load_credential() if mode is LaunchMode.RESUME else None
        logger.info("⚙️ Initializing WhatsApp client (%s mode)...", mode.value)
        session = self.session_factory(mode, credential, partial(self._enqueue, generation))
        self._session = session
        try:
            await session.initialize()
        except Exception as e:
            logger.warning("⚠️ Launch attempt failed: %s", e)
            await self._teardown()
            self._fail(str(e), mode)
            return

        logger.info("✅ WhatsApp client launched")

    def _load_credential(self):
        try:
            record = self.store.load_credential(self.client_id)
        except StoreError as e:
            logger.warning("⚠️ Could not load stored credential: %s", e)
            return None
        return record.payload if record else None

    # -- events -----------------------------------------------------------

    def _enqueue(self, generation: int, event: SessionEvent):
        self._events.put_nowait((generation, event))

    def _ensure_consumer(self):
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume_events())

    async def _consume_events(self):
        while True:
            generation, event = await self._events.get()
            try:
                async with self._lock:
                    if generation != self._generation:
                        logger.debug("Dropping %s from a closed session", type(event).__name__)
                        continue
                    await self.handle_event(event)
            except Exception:
                logger.exception("Error handling %s", type(event).__name__)
            finally:
                self._events.task_done()

    async def drain(self):
        """Wait until every queued session event has been handled."""
        await self._events.join()

    async def handle_event(self, event: SessionEvent):
        """Apply one session event. Caller holds the transition lock."""
        if isinstance(event, ChallengeIssued):
            self._on_challenge(event)
        elif isinstance(event, Authenticated):
            self.challenge = None
            logger.info("✅ WhatsApp authenticated")
        elif isinstance(event, Ready):
            await self._on_ready()
        elif isinstance(event, AuthFailed):
            await self._on_auth_failed(event)
        elif isinstance(event, Disconnected):
            await self._on_disconnected(event)
        else:
            raise TypeError(f"Unknown session event: {event!r}")

    def _on_challenge(self, event: ChallengeIssued):
        self.challenge = ChallengeToken(event.token, event.image_base64, event.issued_at)
        self.state = ControllerState.AWAITING_CHALLENGE

        now = time.monotonic()
        if self._last_challenge_log is None or now - self._last_challenge_log >= CHALLENGE_LOG_INTERVAL:
            extra = f" ({self._suppressed_challenges} refreshes since last notice)" if self._suppressed_challenges else ""
            logger.info("📱 QR generated, scan to login%s", extra)
            self._last_challenge_log = now
            self._suppressed_challenges = 0
        else:
            self._suppressed_challenges += 1

    async def _on_ready(self):
        self.challenge = None
        self.state = ControllerState.READY
        self.attempts = 0
        logger.info("🤖 WhatsApp client READY")
        await self.persist()
        self._start_persist_timer()

    async def _on_auth_failed(self, event: AuthFailed):
        logger.error("❌ auth_failure: %s", event.reason)
        self.challenge = None
        await self._teardown()
        # The stored credential was rejected, the next attempt needs a new QR
        self._fail(event.reason, LaunchMode.FRESH)

    async def _on_disconnected(self, event: Disconnected):
        logger.warning("⚠️ disconnected: %s", event.reason)
        was_ready = self.ready
        self.state = ControllerState.DEGRADED
        self.challenge = None
        await self._teardown()

        logger.info("♻️ Reinitializing client in %ss...", self.settle_delay)
        await self._sleep(self.settle_delay)
        await self._launch(LaunchMode.RESUME if was_ready else (self.mode or LaunchMode.FRESH))

    async def _teardown(self):
        session, self._session = self._session, None
        # Anything the old session still emits is stale from here on
        self._generation += 1
        if session is None:
            return
        try:
            await session.close()
        except Exception as e:
            logger.warning("⚠️ Error closing session: %s", e)

    # -- retries ----------------------------------------------------------

    def _fail(self, reason: str, mode: Optional[LaunchMode]):
        """Count a failed attempt and schedule the next one. `mode=None` re-probes the store."""
        self.attempts += 1
        self.state = ControllerState.DEGRADED
        self.challenge = None

        delay = self.backoff.delay(self.attempts)
        if self.backoff.exhausted(self.attempts):
            logger.warning(
                "⚠️ %d attempts failed (%s), re-checking every %ss",
                self.attempts, reason, delay,
            )
        else:
            logger.info(
                "Retrying in %ss (attempt %d/%d)",
                delay, self.attempts, self.backoff.max_attempts,
            )
        self._schedule_retry(delay, mode)

    def _schedule_retry(self, delay: float, mode: Optional[LaunchMode]):
        if self._closing:
            return
        if self._retry_task is not None and not self._retry_task.done():
            return
        self._retry_task = asyncio.create_task(self._retry(delay, mode))

    async def _retry(self, delay: float, mode: Optional[LaunchMode]):
        await self._sleep(delay)
        async with self._lock:
            self._retry_task = None
            if self._closing or self.ready:
                return
            if mode is None:
                await self._probe_and_launch()
            else:
                await self._launch(mode)

    # -- persistence ------------------------------------------------------

    async def persist(self) -> bool:
        """Save the live session's credentials and refresh the snapshot."""
        session = self._session
        if session is None:
            return False
        try:
            payload = await session.snapshot_credentials()
            self.store.save_credential(CredentialRecord(client_id=self.client_id, payload=payload))
        except GatewayError as e:
            logger.warning("⚠️ Could not persist session: %s", e)
            return False
        except Exception as e:
            logger.exception("❌ Unexpected error while persisting session: %s", e)
            return False

        logger.info("💾 Session credentials saved for %s", self.client_id)
        self.snapshots.backup()
        return True

    def _start_persist_timer(self):
        if self._persist_task is None or self._persist_task.done():
            self._persist_task = asyncio.create_task(self._persist_loop())

    async def _persist_loop(self):
        while not self._closing:
            await asyncio.sleep(self.persist_interval)
            async with self._lock:
                if self.ready:
                    await self.persist()

    # -- gateway-facing ---------------------------------------------------

    async def send_message(self, phone: str, message: str, image_path: Optional[str] = None):
        session = self._session
        if not self.ready or session is None:
            raise NotReadyError("Client not ready")
        try:
            await session.send_message(phone, message, image_path)
        except GatewayError:
            raise
        except Exception as e:
            raise SendError(str(e)) from e

    def status(self) -> Dict[str, Any]:
        try:
            persisted = self.store.count_records(self.client_id)
        except StoreError as e:
            logger.warning("Could not count stored records: %s", e)
            persisted = None

        return {
            "ok": True,
            "state": self.state.value,
            "ready": self.ready,
            "qr": self.challenge is not None,
            "attempts": self.attempts,
            "mode": self.mode.value if self.mode else None,
            "persisted_records": persisted,
        }

    # -- shutdown ---------------------------------------------------------

    async def shutdown(self, timeout: float = 10.0):
        """Final backup, then release the browser and the store, within `timeout` seconds."""
        if self._closing:
            return
        self._closing = True
        logger.info("🛑 Shutting down, backing up session before exit")

        timers = [t for t in (self._retry_task, self._persist_task) if t is not None and not t.done()]
        for task in timers:
            task.cancel()
        await asyncio.gather(*timers, return_exceptions=True)

        try:
            await asyncio.wait_for(self._flush_and_release(), timeout)
        except asyncio.TimeoutError:
            logger.error("❌ Shutdown did not finish within %ss", timeout)
        finally:
            self.store.close()
            if self._consumer is not None and not self._consumer.done():
                self._consumer.cancel()
                await asyncio.gather(self._consumer, return_exceptions=True)

    async def _flush_and_release(self):
        if self.ready:
            await self.persist()
        else:
            self.snapshots.backup()
        await self._teardown()
