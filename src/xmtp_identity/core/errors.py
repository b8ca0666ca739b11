"""
Error taxonomy for the identity lifecycle

Every error carries the owner address and the bootstrap step it was raised
from so callers can log it without extra bookkeeping. Provider fallthrough
never uses these exceptions; a provider that simply has nothing to offer
returns a miss instead.
"""

from typing import Optional


class IdentityError(Exception):
    """Base exception for identity operations"""

    def __init__(self, message: str, owner_address: Optional[str] = None,
                 step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.owner_address = owner_address
        self.step = step

    def __str__(self) -> str:
        context = []
        if self.owner_address:
            context.append(f"owner={self.owner_address}")
        if self.step:
            context.append(f"step={self.step}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class SignatureDeclinedError(IdentityError):
    """The signer refused or timed out. Fatal, never retried automatically."""


class StorageIOError(IdentityError):
    """Persistence backend failure. The caller may retry."""


class MalformedKeyRecordError(IdentityError):
    """Stored key bytes could not be decoded or decrypted"""


class NetworkUnavailableError(IdentityError):
    """Contact publish or bundle fetch failed"""


class InvalidStateError(IdentityError):
    """Operation is not valid in the current bootstrap state"""
