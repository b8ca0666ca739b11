"""Shared fixtures: recording fakes for the signer, persistence and network."""

from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

import pytest

from xmtp_identity.auth import LocalWalletSigner
from xmtp_identity.client.identity import IdentityManager
from xmtp_identity.core.errors import NetworkUnavailableError, StorageIOError
from xmtp_identity.core.keys import ContactBundle
from xmtp_identity.core.network import InMemoryNetwork
from xmtp_identity.core.persistence import InMemoryPersistence

CREATE_PREFIX = b"XMTP : Create Identity"
ENABLE_PREFIX = b"XMTP : Enable Identity"


class RecordingSigner(LocalWalletSigner):
    """Development wallet that records every request and can refuse or stall"""

    def __init__(self, address: Optional[str] = None, decline: Tuple[str, ...] = (),
                 delay: float = 0.0, events: Optional[List[str]] = None, private_key=None):
        super().__init__(private_key)
        if address is not None:
            self.address = address
        self.decline = decline
        self.delay = delay
        self.events = events if events is not None else []
        self.requests: List[bytes] = []
        self.requested = asyncio.Event()
        self.block: Optional[asyncio.Event] = None

    @staticmethod
    def kind(payload: bytes) -> str:
        if payload.startswith(CREATE_PREFIX):
            return "create"
        if payload.startswith(ENABLE_PREFIX):
            return "enable"
        return "other"

    async def sign(self, payload: bytes) -> bytes:
        kind = self.kind(payload)
        self.requests.append(payload)
        self.events.append(f"sign:{kind}")
        self.requested.set()
        if self.block is not None:
            await self.block.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if kind in self.decline:
            raise PermissionError("user rejected the request")
        return await super().sign(payload)

    def count(self, kind: str) -> int:
        return sum(1 for p in self.requests if self.kind(p) == kind)


class RecordingPersistence(InMemoryPersistence):
    def __init__(self, fail_set: bool = False):
        super().__init__()
        self.fail_set = fail_set
        self.gets: List[str] = []
        self.sets: List[Tuple[str, bytes]] = []
        self.deletes: List[str] = []

    async def get(self, key: str):
        self.gets.append(key)
        return await super().get(key)

    async def set(self, key: str, value: bytes) -> None:
        if self.fail_set:
            raise StorageIOError("disk full", step="set")
        self.sets.append((key, value))
        await super().set(key, value)

    async def delete(self, key: str) -> None:
        self.deletes.append(key)
        await super().delete(key)


class RecordingNetwork(InMemoryNetwork):
    def __init__(self, fail_publish: bool = False, fail_fetch: bool = False,
                 fetch_error: Optional[Exception] = None):
        super().__init__()
        self.fail_publish = fail_publish
        self.fetch_error = fetch_error
        if fail_fetch and fetch_error is None:
            self.fetch_error = NetworkUnavailableError("node unreachable", step="fetch")
        self.publish_calls = 0
        self.fetch_calls = 0

    async def publish_contact(self, contact: ContactBundle) -> None:
        self.publish_calls += 1
        if self.fail_publish:
            raise NetworkUnavailableError("node unreachable", step="publish_contact")
        await super().publish_contact(contact)

    async def fetch_encrypted_bundle(self, owner_address: str):
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return await super().fetch_encrypted_bundle(owner_address)


@pytest.fixture()
def signer() -> RecordingSigner:
    return RecordingSigner(address="0xABC")


@pytest.fixture()
def persistence() -> RecordingPersistence:
    return RecordingPersistence()


@pytest.fixture()
def network() -> RecordingNetwork:
    return RecordingNetwork()


@pytest.fixture()
def manager(persistence: RecordingPersistence, network: RecordingNetwork) -> IdentityManager:
    return IdentityManager(persistence, network.factory())
