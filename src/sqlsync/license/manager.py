"""License session management with heartbeat and offline burst mode.

One session is held for the whole run.  A background heartbeat task keeps
it alive; after ``retry_attempts`` consecutive heartbeat failures the
session is marked lost and ``ensure_active()`` starts failing, which the
executor checks at every phase boundary.

When the server cannot be reached at all, a local burst budget (persisted
in a small JSON ledger) allows a limited number of offline runs.  A denial
from a reachable server never falls back to burst mode.

Usage:
    from sqlsync.license.manager import LicenseSessionManager

    async with LicenseSessionManager(config.license) as manager:
        manager.ensure_active()
        ...
"""

import asyncio
import contextlib
import json
import logging
import os
import socket
from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import httpx

from sqlsync.config.models import LicenseConfiguration
from sqlsync.errors import LicenseUnavailableError
from sqlsync.license.models import (
    LicenseAcquireRequest,
    LicenseAcquireResponse,
    LicenseHeartbeatRequest,
    LicenseHeartbeatResponse,
    LicenseReleaseRequest,
    LicenseSession,
)

logger = logging.getLogger(__name__)

BUILD_ID_VARIABLES: tuple[str, ...] = (
    "BUILD_BUILDID",  # Azure DevOps
    "GITHUB_RUN_ID",
    "CI_PIPELINE_ID",  # GitLab
    "BUILD_NUMBER",  # Jenkins
    "BUILDKITE_BUILD_NUMBER",
)

DENIAL_CONCURRENT_LIMIT = "concurrent_limit_exceeded"
DENIAL_NOT_LICENSED = "tool_not_licensed"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def detect_build_id(environ: Mapping[str, str] | None = None) -> str:
    """CI build identifier, or a timestamp when not running in CI."""
    environ = os.environ if environ is None else environ
    for name in BUILD_ID_VARIABLES:
        value = environ.get(name)
        if value:
            return value
    return f"local-{_utc_now():%Y%m%d%H%M%S}"


def detect_local_ip() -> str:
    """Best-effort local IPv4 address; no packet is sent."""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            sock.connect(("10.255.255.255", 1))
            return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"


# ============================================================================
# Burst Ledger
# ============================================================================


class BurstLedger:
    """Persisted count of remaining offline burst sessions.

    Args:
        path: JSON file holding ``{"burst_count_remaining": n}``.
        allowance: Budget used when the file does not exist yet.
    """

    def __init__(self, path: str | Path, allowance: int) -> None:
        self.path = Path(path)
        self.allowance = allowance

    def remaining(self) -> int:
        if not self.path.exists():
            return self.allowance
        try:
            data = json.loads(self.path.read_text())
            return int(data["burst_count_remaining"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Unreadable burst ledger {self.path}, treating budget as spent: {e}")
            return 0

    def set_remaining(self, count: int) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(
                {"burst_count_remaining": count, "updated_at": _utc_now().isoformat()},
                indent=2,
            )
        )

    def consume(self) -> int:
        """Spend exactly one burst event.

        Returns:
            The remaining budget after spending.

        Raises:
            LicenseUnavailableError: If the budget is already zero.
        """
        remaining = self.remaining()
        if remaining <= 0:
            raise LicenseUnavailableError(
                "License server unreachable and no burst events remain",
                burst_events_exhausted=True,
            )
        self.set_remaining(remaining - 1)
        return remaining - 1


# ============================================================================
# Session Manager
# ============================================================================


class LicenseSessionManager:
    """Acquire, keep alive and release one license session.

    Args:
        config: License settings.
        client: Optional ``httpx.AsyncClient`` (a private one is created and
            closed by ``close()`` otherwise).
        ledger: Optional burst ledger (default: ``config.burst_ledger_path``).
    """

    def __init__(
        self,
        config: LicenseConfiguration,
        client: httpx.AsyncClient | None = None,
        ledger: BurstLedger | None = None,
    ) -> None:
        self.config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.request_timeout_seconds)
        self.ledger = ledger or BurstLedger(config.burst_ledger_path, config.burst_allowance)
        self._lock = asyncio.Lock()
        self._lost = asyncio.Event()
        self._session: LicenseSession | None = None
        self._heartbeat_task: asyncio.Task | None = None

    async def __aenter__(self) -> "LicenseSessionManager":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info) -> None:
        try:
            await self.release()
        finally:
            await self.close()

    @property
    def session(self) -> LicenseSession | None:
        return self._session

    @property
    def is_lost(self) -> bool:
        return self._lost.is_set()

    def _url(self, path: str) -> str:
        return f"{self.config.server_url.rstrip('/')}{path}"

    # ------------------------------------------------------------------
    # Acquire
    # ------------------------------------------------------------------

    async def acquire(self) -> LicenseSession:
        """Acquire a session, falling back to burst mode if the server is unreachable.

        Raises:
            LicenseUnavailableError: On denial, or when the server is
                unreachable and the burst budget is spent.
        """
        from sqlsync import __version__

        request = LicenseAcquireRequest(
            tool_name=self.config.tool_name,
            tool_version=self.config.tool_version or __version__,
            ip_address=detect_local_ip(),
            build_id=detect_build_id(),
        )
        attempts = self.config.retry_attempts
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            try:
                http_response = await self._client.post(self._url("/acquire"), json=request.to_wire())
                if http_response.status_code >= 500:
                    http_response.raise_for_status()
            except httpx.HTTPError as e:
                last_error = e
                logger.warning(f"License server unreachable (attempt {attempt}/{attempts}): {e}")
                if attempt < attempts:
                    await asyncio.sleep(self.config.retry_interval_seconds)
                continue

            try:
                response = LicenseAcquireResponse.model_validate(http_response.json())
            except ValueError as e:
                raise LicenseUnavailableError(f"Invalid license server response: {e}") from e

            if response.license_granted:
                return await self._start_session(response)

            if response.burst_events_exhausted:
                raise LicenseUnavailableError(
                    "License denied: burst events exhausted", burst_events_exhausted=True
                )
            if response.reason == DENIAL_CONCURRENT_LIMIT and attempt < attempts:
                wait = response.retry_after_seconds or self.config.retry_interval_seconds
                logger.warning(f"Concurrent license limit reached, retrying in {wait}s")
                await asyncio.sleep(wait)
                continue
            raise LicenseUnavailableError(f"License denied: {response.reason or 'no reason given'}")

        return await self._start_burst_session(last_error)

    async def _start_session(self, response: LicenseAcquireResponse) -> LicenseSession:
        expires_at = (
            _aware(response.expires_at)
            if response.expires_at
            else _utc_now() + timedelta(seconds=self.config.session_duration_seconds)
        )
        session = LicenseSession(
            session_id=response.session_id or uuid4().hex,
            burst_mode=response.burst_mode,
            burst_count_remaining=response.burst_count_remaining,
            expires_at=expires_at,
        )
        if response.burst_count_remaining is not None:
            self.ledger.set_remaining(response.burst_count_remaining)

        async with self._lock:
            self._session = session
            self._lost.clear()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        logger.info(f"License session {session.session_id} acquired (expires {expires_at.isoformat()})")
        return session

    async def _start_burst_session(self, last_error: Exception | None) -> LicenseSession:
        remaining = self.ledger.consume()
        session = LicenseSession(
            session_id=f"offline-{uuid4().hex}",
            burst_mode=True,
            burst_count_remaining=remaining,
            expires_at=_utc_now() + timedelta(seconds=self.config.burst_session_seconds),
            offline=True,
        )
        async with self._lock:
            self._session = session
            self._lost.clear()
        logger.warning(
            f"License server unreachable ({last_error}); running in burst mode, "
            f"{remaining} burst events remaining"
        )
        return session

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        failures = 0
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            session = self._session
            if session is None:
                return

            try:
                http_response = await self._client.post(
                    self._url("/heartbeat"),
                    json=LicenseHeartbeatRequest(session_id=session.session_id).to_wire(),
                )
                http_response.raise_for_status()
                response = (
                    LicenseHeartbeatResponse.model_validate(http_response.json())
                    if http_response.content
                    else LicenseHeartbeatResponse()
                )
                if not response.success:
                    raise ValueError("heartbeat rejected by server")
            except Exception as e:
                failures += 1
                logger.warning(
                    f"License heartbeat failed ({failures}/{self.config.retry_attempts}): {e}"
                )
                if failures >= self.config.retry_attempts:
                    async with self._lock:
                        self._lost.set()
                    logger.error(f"License session {session.session_id} lost")
                    return
                continue

            failures = 0
            async with self._lock:
                if self._session is not None and self._session.session_id == session.session_id:
                    self._session.expires_at = (
                        _aware(response.expires_at)
                        if response.expires_at
                        else _utc_now() + timedelta(seconds=self.config.session_duration_seconds)
                    )

    def ensure_active(self) -> None:
        """Raise if the session cannot be used to start more work.

        Raises:
            LicenseUnavailableError: If there is no session, the heartbeat
                was lost, or the session expired.
        """
        session = self._session
        if session is None:
            raise LicenseUnavailableError("No license session held")
        if self._lost.is_set():
            raise LicenseUnavailableError(f"License session {session.session_id} lost (heartbeat failed)")
        if _utc_now() >= session.expires_at:
            raise LicenseUnavailableError(f"License session {session.session_id} expired")

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    async def release(self) -> None:
        """Stop the heartbeat, then release the session (best effort)."""
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        async with self._lock:
            session, self._session = self._session, None
        if session is None or session.offline:
            return

        try:
            http_response = await self._client.post(
                self._url("/release"),
                json=LicenseReleaseRequest(session_id=session.session_id).to_wire(),
            )
            http_response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to release license session {session.session_id}: {e}")
            return
        logger.info(f"License session {session.session_id} released")

    async def close(self) -> None:
        """Close the HTTP client if this manager created it."""
        if self._owns_client:
            await self._client.aclose()
