"""
Keystore provider chain

Providers are tried in declared order and the first one that produces keys
wins. A provider with nothing to offer returns a miss; a provider that finds
something it cannot decode raises, which stops the chain so that corruption
is never mistaken for a missing identity.
"""

from typing import List, Optional, Protocol, Sequence
from dataclasses import dataclass
from enum import Enum
import logging

from ..auth import SignerCapability
from ..core.config import ClientConfig
from ..core.crypto import EncryptedKeyRecord
from ..core.errors import (
    IdentityError,
    MalformedKeyRecordError,
    NetworkUnavailableError,
)
from ..core.keys import KeyMaterial, KeyVersion
from ..core.network import NetworkClient
from ..core.persistence import PersistenceProvider, guarded, storage_key

logger = logging.getLogger(__name__)


class ResolutionOutcome(str, Enum):
    FOUND = "found"
    SEALED = "sealed"
    MISS = "miss"


class KeySource(str, Enum):
    """Where an identity's keys came from"""

    STATIC = "static"
    PERSISTED = "persisted"
    NETWORK = "network"
    GENERATED = "generated"


@dataclass(frozen=True)
class Resolution:
    """
    Result of one provider attempt

    FOUND carries usable key material. SEALED carries an encrypted record that
    the storage-encryption signature will open. MISS carries a reason.
    """

    outcome: ResolutionOutcome
    source: Optional[KeySource] = None
    material: Optional[KeyMaterial] = None
    record: Optional[EncryptedKeyRecord] = None
    reason: Optional[str] = None

    @classmethod
    def found(cls, source: KeySource, material: KeyMaterial) -> 'Resolution':
        return cls(ResolutionOutcome.FOUND, source=source, material=material)

    @classmethod
    def sealed(cls, source: KeySource, record: EncryptedKeyRecord) -> 'Resolution':
        return cls(ResolutionOutcome.SEALED, source=source, record=record)

    @classmethod
    def miss(cls, reason: str) -> 'Resolution':
        return cls(ResolutionOutcome.MISS, reason=reason)

    @property
    def generated(self) -> bool:
        return self.source == KeySource.GENERATED


@dataclass
class ResolutionContext:
    """Everything a provider may use while resolving one owner's keys"""

    owner_address: str
    config: ClientConfig
    signer: SignerCapability
    persistence: PersistenceProvider
    network: NetworkClient

    @property
    def storage_key(self) -> str:
        return storage_key(self.config.environment, self.owner_address)


class KeystoreProvider(Protocol):
    name: str

    async def resolve(self, ctx: ResolutionContext) -> Resolution: ...


def _check_owner(record: EncryptedKeyRecord, owner_address: str) -> None:
    if record.owner_address != owner_address:
        raise MalformedKeyRecordError(
            f"Key record belongs to {record.owner_address}", owner_address=owner_address
        )


class StaticProvider:
    """Keys handed over directly through ``private_key_override``"""

    name = "static"

    async def resolve(self, ctx: ResolutionContext) -> Resolution:
        raw = ctx.config.private_key_override
        if not raw:
            return Resolution.miss("no private key override")
        return Resolution.found(KeySource.STATIC, KeyMaterial.from_raw(raw, ctx.owner_address))


class PersistedProvider:
    """Encrypted record left in persistence by an earlier bootstrap"""

    name = "persisted"

    async def resolve(self, ctx: ResolutionContext) -> Resolution:
        if not ctx.config.persist_identity_cache:
            return Resolution.miss("identity cache disabled")

        key = ctx.storage_key
        raw = await guarded("get", key, ctx.persistence.get(key))
        if raw is None:
            return Resolution.miss("no stored record")

        record = EncryptedKeyRecord.from_bytes(raw)
        _check_owner(record, ctx.owner_address)
        return Resolution.sealed(KeySource.PERSISTED, record)


class NetworkProvider:
    """
    Wallet-encrypted bundle previously stored on the network

    The record is returned sealed. The session's storage signature over the
    record's challenge opens it, so a restore costs the same single enable
    prompt as a local reload.
    """

    name = "network"

    async def resolve(self, ctx: ResolutionContext) -> Resolution:
        try:
            raw = await ctx.network.fetch_encrypted_bundle(ctx.owner_address)
        except NetworkUnavailableError as e:
            return self._unavailable(ctx, e)
        except IdentityError:
            raise
        except Exception as e:
            return self._unavailable(ctx, e)
        if raw is None:
            return Resolution.miss("no bundle on network")

        record = EncryptedKeyRecord.from_bytes(raw)
        _check_owner(record, ctx.owner_address)
        return Resolution.sealed(KeySource.NETWORK, record)

    @staticmethod
    def _unavailable(ctx: ResolutionContext, error: Exception) -> Resolution:
        logger.warning("Bundle fetch for %s failed, falling through: %s",
                       ctx.owner_address, error)
        return Resolution.miss("network unavailable")


class GeneratorProvider:
    """Terminal fallback: fresh keys"""

    name = "generator"

    def __init__(self, version: KeyVersion = KeyVersion.V2):
        self.version = version

    async def resolve(self, ctx: ResolutionContext) -> Resolution:
        return Resolution.found(KeySource.GENERATED,
                                KeyMaterial.generate(ctx.owner_address, self.version))


def default_providers() -> List[KeystoreProvider]:
    return [StaticProvider(), PersistedProvider(), NetworkProvider(), GeneratorProvider()]


class KeystoreProviderChain:
    """Ordered provider strategies; first non-miss wins"""

    def __init__(self, providers: Optional[Sequence[KeystoreProvider]] = None):
        self.providers = list(providers) if providers is not None else default_providers()

    async def resolve(self, ctx: ResolutionContext) -> Resolution:
        for provider in self.providers:
            try:
                result = await provider.resolve(ctx)
            except IdentityError as e:
                if e.owner_address is None:
                    e.owner_address = ctx.owner_address
                if e.step is None:
                    e.step = f"resolve_keys:{provider.name}"
                raise

            if result.outcome != ResolutionOutcome.MISS:
                logger.debug("Provider %s resolved keys for %s (%s)",
                             provider.name, ctx.owner_address, result.outcome.value)
                return result
            logger.debug("Provider %s missed for %s: %s",
                         provider.name, ctx.owner_address, result.reason)

        raise IdentityError("No keystore provider produced keys",
                            owner_address=ctx.owner_address, step="resolve_keys")
