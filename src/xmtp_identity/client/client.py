"""
XMTP client facade

Client bundles a Ready identity with the configuration it was created under
and the content codecs that configuration registers. Message transport lives
elsewhere; this is the object applications hold on to.
"""

from typing import Any, Dict, Optional

from ..auth import SignerCapability
from ..core.codecs import (
    CONTENT_TYPE_TEXT,
    CodecRegistry,
    ContentCodec,
    ContentTooLargeError,
    ContentTypeId,
    EncodedContent,
)
from ..core.config import ClientConfig, Environment
from ..core.network import InMemoryNetwork, NetworkFactory
from ..core.persistence import InMemoryPersistence, PersistenceProvider
from .identity import IdentityManager, IdentitySession


def _manager(manager: Optional[IdentityManager],
             persistence: Optional[PersistenceProvider],
             network_factory: Optional[NetworkFactory]) -> IdentityManager:
    if manager is not None:
        return manager
    return IdentityManager(
        persistence if persistence is not None else InMemoryPersistence(),
        network_factory if network_factory is not None else InMemoryNetwork().factory()
    )


class Client:
    """Client bound to one Ready identity"""

    def __init__(self, manager: IdentityManager, session: IdentitySession):
        self.manager = manager
        self.session = session
        self.codecs = CodecRegistry(session.config.codecs)

    @classmethod
    async def create(cls, signer: SignerCapability, config: Optional[ClientConfig] = None, *,
                     persistence: Optional[PersistenceProvider] = None,
                     network_factory: Optional[NetworkFactory] = None,
                     manager: Optional[IdentityManager] = None) -> 'Client':
        """Bootstrap the signer's identity and return a ready client"""
        manager = _manager(manager, persistence, network_factory)
        session = await manager.bootstrap(signer, config)
        return cls(manager, session)

    @classmethod
    async def from_key_bundle(cls, raw: bytes, signer: SignerCapability,
                              config: Optional[ClientConfig] = None, *,
                              persistence: Optional[PersistenceProvider] = None,
                              network_factory: Optional[NetworkFactory] = None,
                              manager: Optional[IdentityManager] = None) -> 'Client':
        """Build a client from bytes returned by ``export_key_bundle``"""
        manager = _manager(manager, persistence, network_factory)
        session = await manager.import_from_key_bundle(raw, signer, config)
        return cls(manager, session)

    @property
    def address(self) -> str:
        return self.session.owner_address

    @property
    def config(self) -> ClientConfig:
        return self.session.config

    @property
    def environment(self) -> Environment:
        return self.session.environment

    @property
    def api_url(self) -> str:
        return self.session.endpoint.api_url

    @property
    def public_key(self) -> bytes:
        return self.session.public_key

    @property
    def is_published(self) -> bool:
        return self.session.published

    def export_key_bundle(self) -> bytes:
        """Unencrypted key bundle; treat it like a password"""
        return self.manager.export_key_bundle(self.address, self.environment)

    def register_codec(self, codec: ContentCodec) -> None:
        self.codecs.register(codec)

    def _check_size(self, encoded: EncodedContent) -> None:
        limit = self.config.max_content_size_bytes
        if len(encoded.content) > limit:
            raise ContentTooLargeError(
                f"Content is {len(encoded.content)} bytes; the limit is {limit}"
            )

    def encode_content(self, content: Any,
                       content_type: Optional[ContentTypeId] = None) -> EncodedContent:
        codec = self.codecs.require(content_type or CONTENT_TYPE_TEXT)
        encoded = codec.encode(content)
        self._check_size(encoded)
        return encoded

    def decode_content(self, encoded: EncodedContent) -> Any:
        self._check_size(encoded)
        return self.codecs.require(encoded.type).decode(encoded)

    async def wipe(self) -> None:
        """Delete this identity's stored record"""
        await self.manager.wipe(self.address, self.environment)

    def get_user_info(self) -> Dict[str, Any]:
        """Get current identity information"""
        return {
            'address': self.address,
            'environment': self.environment.value,
            'api_url': self.api_url,
            'public_key': self.public_key.hex(),
            'key_version': self.session.key_material.version.value,
            'source': self.session.source.value if self.session.source else None,
            'published': self.is_published,
        }
