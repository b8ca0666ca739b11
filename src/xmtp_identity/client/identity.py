"""
Identity bootstrap

IdentityManager drives every client through one fixed sequence:

    Uninitialized -> ResolvingKeys -> AwaitingCreateSignature (fresh keys only)
    -> AwaitingStorageSignature -> Persisting -> PublishingContact (optional)
    -> Ready

Any error moves the session to Failed. The order is enforced by a transition
table, so a create-identity signature can never be requested after the
storage signature, and the storage signature is requested on every run.

Concurrent bootstraps for the same owner and environment are serialised with
a lock; a caller that waited behind an in-flight bootstrap gets that result
instead of prompting the wallet a second time.
"""

from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple
from enum import Enum
import asyncio
import functools
import inspect
import logging
import weakref

from ..auth import SignerCapability
from ..core.config import ClientConfig, Environment
from ..core.crypto import (
    EncryptedKeyRecord,
    create_identity_payload,
    enable_identity_payload,
    generate_challenge,
    open_key_record,
    seal_key_material,
)
from ..core.errors import (
    IdentityError,
    InvalidStateError,
    NetworkUnavailableError,
    SignatureDeclinedError,
)
from ..core.keys import KeyMaterial
from ..core.network import (
    EndpointDescriptor,
    NetworkClient,
    NetworkEnvironmentRouter,
    NetworkFactory,
)
from ..core.persistence import PersistenceProvider, guarded, storage_key
from .providers import (
    KeySource,
    KeystoreProvider,
    KeystoreProviderChain,
    ResolutionContext,
)

logger = logging.getLogger(__name__)


class BootstrapState(str, Enum):
    UNINITIALIZED = "uninitialized"
    RESOLVING_KEYS = "resolving_keys"
    AWAITING_CREATE_SIGNATURE = "awaiting_create_signature"
    AWAITING_STORAGE_SIGNATURE = "awaiting_storage_signature"
    PERSISTING = "persisting"
    PUBLISHING_CONTACT = "publishing_contact"
    READY = "ready"
    FAILED = "failed"


S = BootstrapState

# Imports enter at the storage signature (or later when caching is off)
TRANSITIONS: Dict[BootstrapState, Tuple[BootstrapState, ...]] = {
    S.UNINITIALIZED: (S.RESOLVING_KEYS, S.AWAITING_STORAGE_SIGNATURE,
                      S.PUBLISHING_CONTACT, S.READY, S.FAILED),
    S.RESOLVING_KEYS: (S.AWAITING_CREATE_SIGNATURE, S.AWAITING_STORAGE_SIGNATURE, S.FAILED),
    S.AWAITING_CREATE_SIGNATURE: (S.AWAITING_STORAGE_SIGNATURE, S.FAILED),
    S.AWAITING_STORAGE_SIGNATURE: (S.PERSISTING, S.FAILED),
    S.PERSISTING: (S.PUBLISHING_CONTACT, S.READY, S.FAILED),
    S.PUBLISHING_CONTACT: (S.READY, S.FAILED),
    S.READY: (),
    S.FAILED: (),
}

CANCELLED = "cancelled"


class IdentitySession:
    """One bootstrap run for one owner in one environment"""

    def __init__(self, owner_address: str, config: ClientConfig, endpoint: EndpointDescriptor):
        self.owner_address = owner_address
        self.config = config
        self.environment = config.environment
        self.endpoint = endpoint
        self.state = BootstrapState.UNINITIALIZED
        self.history: List[BootstrapState] = [self.state]
        self.source: Optional[KeySource] = None
        self.published = False
        self.publish_error: Optional[NetworkUnavailableError] = None
        self.failure: Optional[BaseException] = None
        self.failure_reason: Optional[str] = None
        self._material: Optional[KeyMaterial] = None
        # Signer that drove this run
        self.signer: Optional[SignerCapability] = None

    def advance(self, state: BootstrapState) -> None:
        if state not in TRANSITIONS[self.state]:
            raise InvalidStateError(
                f"Illegal transition {self.state.value} -> {state.value}",
                owner_address=self.owner_address, step=self.state.value
            )
        logger.debug("%s [%s]: %s -> %s", self.owner_address, self.environment.value,
                     self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def fail(self, reason: str, error: Optional[BaseException] = None) -> None:
        self.failure = error
        self.failure_reason = reason
        if self.state != BootstrapState.FAILED:
            self.advance(BootstrapState.FAILED)

    def attach_material(self, material: KeyMaterial) -> None:
        self._material = material

    def release_material(self) -> None:
        self._material = None

    @property
    def is_ready(self) -> bool:
        return self.state == BootstrapState.READY

    @property
    def key_material(self) -> KeyMaterial:
        """Live key material; only available once Ready"""
        if not self.is_ready or self._material is None:
            raise InvalidStateError("Identity is not ready",
                                    owner_address=self.owner_address, step=self.state.value)
        return self._material

    @property
    def public_key(self) -> bytes:
        return self.key_material.public_key_bytes()

    def export_key_bundle(self) -> bytes:
        return self.key_material.export()

    def __repr__(self) -> str:
        return (f"IdentitySession(owner={self.owner_address!r}, "
                f"env={self.environment.value!r}, state={self.state.value!r})")


async def _run_hook(hook: Optional[Callable[[], Any]]) -> None:
    if hook is None:
        return
    result = hook()
    if inspect.isawaitable(result):
        await result


class IdentityManager:
    """
    Orchestrates identity bootstrap, import, export and wipe

    Collaborators are injected: a PersistenceProvider for encrypted records
    and a factory that builds a NetworkClient for a resolved endpoint.
    """

    def __init__(self, persistence: PersistenceProvider, network_factory: NetworkFactory,
                 router: Optional[NetworkEnvironmentRouter] = None,
                 providers: Optional[Sequence[KeystoreProvider]] = None):
        self.persistence = persistence
        self.network_factory = network_factory
        self.router = router or NetworkEnvironmentRouter()
        self.chain = KeystoreProviderChain(providers)
        self._sessions: Dict[Tuple[Environment, str], IdentitySession] = {}
        # Locks live only while a caller holds or waits on them
        self._locks: 'weakref.WeakValueDictionary[Tuple[Environment, str], asyncio.Lock]' = \
            weakref.WeakValueDictionary()
        self._finished: Dict[Tuple[Environment, str], int] = {}

    def _lock_for(self, key: Tuple[Environment, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _new_session(self, owner_address: str, config: ClientConfig,
                     signer: SignerCapability) -> IdentitySession:
        endpoint = self.router.resolve(config.environment, config.api_url)
        session = IdentitySession(owner_address, config, endpoint)
        session.signer = signer
        self._sessions[(config.environment, owner_address)] = session
        return session

    async def bootstrap(self, signer: SignerCapability,
                        config: Optional[ClientConfig] = None) -> IdentitySession:
        """
        Resolve or create the signer's identity and bring it to Ready

        Raises the underlying IdentityError (the session is left Failed) when
        a signature is declined, storage fails or a stored record is corrupt.
        Publish failures do not raise; check ``session.published``.
        """
        config = config or ClientConfig()
        owner_address = await signer.get_address()
        key = (config.environment, owner_address)
        seen = self._finished.get(key, 0)

        async with self._lock_for(key):
            current = self._sessions.get(key)
            if (self._finished.get(key, 0) != seen and current is not None
                    and current.is_ready and current.config == config
                    and current.signer is signer):
                logger.debug("Reusing bootstrap that finished while %s was queued", owner_address)
                return current

            session = self._new_session(owner_address, config, signer)
            try:
                await self._run(session, signer)
            finally:
                self._finished[key] = self._finished.get(key, 0) + 1
            return session

    async def import_from_key_bundle(self, raw: bytes, signer: SignerCapability,
                                     config: Optional[ClientConfig] = None) -> IdentitySession:
        """Adopt an exported bundle, skipping key resolution and creation"""
        config = config or ClientConfig()
        owner_address = await signer.get_address()
        try:
            material = KeyMaterial.from_raw(raw, owner_address)
        except IdentityError as e:
            e.owner_address = owner_address
            e.step = "import"
            raise

        key = (config.environment, owner_address)
        async with self._lock_for(key):
            session = self._new_session(owner_address, config, signer)
            try:
                await self._run(session, signer, imported=material)
            finally:
                self._finished[key] = self._finished.get(key, 0) + 1
            return session

    async def _run(self, session: IdentitySession, signer: SignerCapability,
                   imported: Optional[KeyMaterial] = None) -> None:
        config = session.config
        owner_address = session.owner_address
        request = functools.partial(self._request_signature, signer, session)

        try:
            network = self.network_factory(session.endpoint)
            record: Optional[EncryptedKeyRecord] = None

            if imported is None:
                session.advance(S.RESOLVING_KEYS)
                resolution = await self.chain.resolve(ResolutionContext(
                    owner_address=owner_address,
                    config=config,
                    signer=signer,
                    persistence=self.persistence,
                    network=network,
                ))
                session.source = resolution.source
                material = resolution.material
                record = resolution.record

                if resolution.generated:
                    session.advance(S.AWAITING_CREATE_SIGNATURE)
                    await _run_hook(config.pre_create_identity_hook)
                    signature = await request(
                        create_identity_payload(material.public_key_bytes()), "create_identity"
                    )
                    material = material.with_identity_signature(signature)
            else:
                session.source = KeySource.STATIC
                material = imported

            sealed: Optional[EncryptedKeyRecord] = None
            if imported is None or config.persist_identity_cache:
                session.advance(S.AWAITING_STORAGE_SIGNATURE)
                await _run_hook(config.pre_enable_identity_hook)
                challenge = record.challenge if record is not None else generate_challenge()
                signature = await request(enable_identity_payload(challenge), "enable_identity")
                if record is not None:
                    material = open_key_record(record, signature)
                sealed = seal_key_material(material, signature, challenge)

                session.advance(S.PERSISTING)
                if config.persist_identity_cache:
                    key = storage_key(config.environment, owner_address)
                    await guarded("set", key, self.persistence.set(key, sealed.to_bytes()))

            session.attach_material(material)

            if not config.skip_network_publish:
                session.advance(S.PUBLISHING_CONTACT)
                upload = sealed if session.source == KeySource.GENERATED else None
                await self._publish(session, network, material, upload)

            session.advance(S.READY)
            logger.info("Identity %s ready in %s (source=%s, published=%s)",
                        owner_address, config.environment.value,
                        session.source.value if session.source else None, session.published)

        except asyncio.CancelledError:
            session.release_material()
            session.fail(CANCELLED)
            logger.warning("Bootstrap for %s cancelled in %s",
                           owner_address, session.history[-2].value)
            raise
        except IdentityError as e:
            if e.owner_address is None:
                e.owner_address = owner_address
            if e.step is None:
                e.step = session.state.value
            session.release_material()
            session.fail(type(e).__name__, e)
            logger.error("Bootstrap for %s failed: %s", owner_address, e)
            raise
        except Exception as e:
            session.release_material()
            session.fail(type(e).__name__, e)
            logger.exception("Bootstrap for %s failed unexpectedly", owner_address)
            raise

    async def _request_signature(self, signer: SignerCapability, session: IdentitySession,
                                 payload: bytes, step: str) -> bytes:
        timeout = session.config.signature_timeout
        logger.debug("Requesting %s signature from %s", step, session.owner_address)
        try:
            if timeout is not None:
                signature = await asyncio.wait_for(signer.sign(payload), timeout)
            else:
                signature = await signer.sign(payload)
        except asyncio.TimeoutError as e:
            raise SignatureDeclinedError(
                f"Signer did not answer within {timeout}s",
                owner_address=session.owner_address, step=step
            ) from e
        except SignatureDeclinedError as e:
            e.owner_address = e.owner_address or session.owner_address
            e.step = e.step or step
            raise
        except Exception as e:
            raise SignatureDeclinedError(
                f"Signer declined: {e}", owner_address=session.owner_address, step=step
            ) from e

        if not signature:
            raise SignatureDeclinedError("Signer returned an empty signature",
                                         owner_address=session.owner_address, step=step)
        return bytes(signature)

    async def _publish(self, session: IdentitySession, network: NetworkClient,
                       material: KeyMaterial, sealed: Optional[EncryptedKeyRecord]) -> None:
        """Publish the contact bundle; failures leave the identity usable but unpublished"""
        try:
            if sealed is not None:
                await network.store_encrypted_bundle(session.owner_address, sealed.to_bytes())
            await network.publish_contact(material.contact_bundle(session.config.app_version))
            session.published = True
        except Exception as e:
            if isinstance(e, NetworkUnavailableError):
                error = e
            else:
                error = NetworkUnavailableError(f"Publish failed: {e}",
                                                owner_address=session.owner_address,
                                                step="publish_contact")
                error.__cause__ = e
            session.publish_error = error
            logger.warning("Identity %s is not published: %s", session.owner_address, error)

    def session(self, owner_address: str,
                environment: Optional[Environment] = None) -> Optional[IdentitySession]:
        """Latest session for an owner; environment may be omitted when unambiguous"""
        if environment is not None:
            return self._sessions.get((Environment(environment), owner_address))

        matches = [s for (env, owner), s in self._sessions.items() if owner == owner_address]
        if len(matches) > 1:
            raise InvalidStateError("Owner has sessions in several environments; pass one",
                                    owner_address=owner_address)
        return matches[0] if matches else None

    def export_key_bundle(self, owner_address: str,
                          environment: Optional[Environment] = None) -> bytes:
        """Unencrypted bundle bytes of a Ready identity"""
        session = self.session(owner_address, environment)
        if session is None or not session.is_ready:
            raise InvalidStateError("No ready identity to export",
                                    owner_address=owner_address, step="export")
        return session.export_key_bundle()

    async def wipe(self, owner_address: str, environment: Environment) -> None:
        """Remove the stored record and forget the session"""
        environment = Environment(environment)
        key = (environment, owner_address)
        async with self._lock_for(key):
            record_key = storage_key(environment, owner_address)
            await guarded("delete", record_key, self.persistence.delete(record_key))
            self._sessions.pop(key, None)
            self._finished.pop(key, None)
            logger.info("Wiped identity record %s", record_key)
