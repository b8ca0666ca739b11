"""
Content codec contract

Messages carry typed content. A codec turns one content type into
EncodedContent and back; the registry looks codecs up by type id. Only the
interface and the default text codec live here.
"""

from typing import Any, Dict, Iterable, Optional, Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field


class CodecError(Exception):
    """Base exception for content encoding"""
    pass


class UnknownContentTypeError(CodecError):
    """No codec registered for a content type"""
    pass


class ContentTooLargeError(CodecError):
    """Encoded content exceeds the configured size limit"""
    pass


class ContentTypeId(BaseModel):
    """Identifies a content type, e.g. xmtp.org/text:1.0"""

    model_config = ConfigDict(frozen=True)

    authority_id: str
    type_id: str
    version_major: int = 1
    version_minor: int = 0

    @property
    def key(self) -> str:
        """Lookup key; minor versions share a codec"""
        return f"{self.authority_id}/{self.type_id}:{self.version_major}"

    def __str__(self) -> str:
        return f"{self.authority_id}/{self.type_id}:{self.version_major}.{self.version_minor}"


class EncodedContent(BaseModel):
    """Wire form of a piece of content"""

    type: ContentTypeId
    parameters: Dict[str, str] = Field(default_factory=dict)
    content: bytes
    fallback: Optional[str] = None


@runtime_checkable
class ContentCodec(Protocol):
    content_type: ContentTypeId

    def encode(self, content: Any) -> EncodedContent: ...
    def decode(self, encoded: EncodedContent) -> Any: ...


CONTENT_TYPE_TEXT = ContentTypeId(authority_id="xmtp.org", type_id="text")


class TextCodec:
    """UTF-8 text, the default content type"""

    content_type = CONTENT_TYPE_TEXT

    def encode(self, content: Any) -> EncodedContent:
        if not isinstance(content, str):
            raise CodecError(f"Text codec cannot encode {type(content).__name__}")
        return EncodedContent(
            type=CONTENT_TYPE_TEXT,
            parameters={"encoding": "UTF-8"},
            content=content.encode('utf-8')
        )

    def decode(self, encoded: EncodedContent) -> str:
        encoding = encoded.parameters.get("encoding", "UTF-8")
        if encoding.upper() != "UTF-8":
            raise CodecError(f"Unrecognized encoding {encoding}")
        return encoded.content.decode('utf-8')


class CodecRegistry:
    """Codecs keyed by content type (major version granularity)"""

    def __init__(self, codecs: Iterable[ContentCodec] = ()):
        self._codecs: Dict[str, ContentCodec] = {}
        self.register(TextCodec())
        for codec in codecs:
            self.register(codec)

    def register(self, codec: ContentCodec) -> None:
        if not isinstance(codec, ContentCodec):
            raise CodecError(f"{codec!r} does not implement the codec interface")
        self._codecs[codec.content_type.key] = codec

    def codec_for(self, content_type: ContentTypeId) -> Optional[ContentCodec]:
        return self._codecs.get(content_type.key)

    def require(self, content_type: ContentTypeId) -> ContentCodec:
        codec = self.codec_for(content_type)
        if codec is None:
            raise UnknownContentTypeError(f"No codec registered for {content_type}")
        return codec

    def __contains__(self, content_type: ContentTypeId) -> bool:
        return content_type.key in self._codecs

    def __len__(self) -> int:
        return len(self._codecs)
