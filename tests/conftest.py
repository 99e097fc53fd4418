"""Shared test fixtures for sklink."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Optional

import pytest

from sklink.config import SyncConfig
from sklink.models import DevicePlatform
from sklink.relay import SyncRelay
from sklink.secret_store import ACCESS_TOKEN_KEY, MemorySecretStore
from sklink.service import DeviceSyncService
from sklink.transport import LocalTransport


class FakeClock:
    """Settable UTC clock shared by the relay and every device."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def relay(clock: FakeClock) -> SyncRelay:
    """An in-memory sync server on the fake clock."""
    return SyncRelay(clock=clock)


@pytest.fixture
def user_token(relay: SyncRelay) -> str:
    return relay.issue_token("user-1")


@pytest.fixture
def make_device(
    relay: SyncRelay, user_token: str, clock: FakeClock, tmp_path: Path,
) -> Callable[..., DeviceSyncService]:
    """Factory for signed-in devices of the same user, each with its own home."""

    def _make(name: str = "laptop", token: Optional[str] = None) -> DeviceSyncService:
        store = MemorySecretStore({ACCESS_TOKEN_KEY: token or user_token})
        config = SyncConfig(
            device_name=name,
            platform=DevicePlatform.LINUX,
            poll_interval_seconds=0.01,
        )
        home = tmp_path / name
        home.mkdir(exist_ok=True)
        return DeviceSyncService(
            LocalTransport(relay, store), store, config=config, home=home, clock=clock,
        )

    return _make


@pytest.fixture
def pair_devices() -> Callable:
    """Run an honest pairing from a trusted issuer to a registered claimer."""

    async def _pair(issuer: DeviceSyncService, claimer: DeviceSyncService) -> int:
        session = await issuer.start_pairing()
        claim = await claimer.claim_pairing(session.code)
        await issuer.poll_for_claimer_connection()
        if claim.require_sas:
            claimer.acknowledge_sas()
            await issuer.approve_pairing()
        await issuer.complete_pairing()
        bundle = await claimer.poll_for_key_bundle()
        result = await claimer.confirm_pairing_as_claimer(bundle)
        return result.key_version

    return _pair
