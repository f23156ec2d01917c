"""
zkchat Core Package
===================
End-to-end encryption and zero-knowledge key distribution for community and
team messaging.

Provides:
- PIN protection for locally stored identity keys
- NIP-44 key wrapping between member identities
- Invite-code key channels (community and team)
- Signed, encrypted message codec with legacy fallback
- Remote signer (bunker) proxy over a broadcast transport
"""

from .channels import (
    BootstrapResult, ChannelKeyChannel, CommunityKeyChannel, DistributionResult, MigrationBatchResult, TeamKeyChannel,
)
from .codec import DecryptResult, MessageCodec, decrypt_authenticated
from .config import Settings
from .context import CryptoContext
from .errors import (
    BunkerTimeoutError, ContextError, FormatError, KeyUnavailable, RemoteSignerError, ServerError,
    SignerError, UnsupportedFormatError, UnwrapError, ZKError,
)
from .session import Session
from .signers import ExternalCapabilitySigner, LocalSigner, RemoteSigner, Signer, select_signer

__all__ = [
    "BootstrapResult",
    "ChannelKeyChannel",
    "CommunityKeyChannel",
    "DistributionResult",
    "MigrationBatchResult",
    "TeamKeyChannel",
    "DecryptResult",
    "MessageCodec",
    "decrypt_authenticated",
    "Settings",
    "CryptoContext",
    "BunkerTimeoutError",
    "ContextError",
    "FormatError",
    "KeyUnavailable",
    "RemoteSignerError",
    "ServerError",
    "SignerError",
    "UnsupportedFormatError",
    "UnwrapError",
    "ZKError",
    "Session",
    "ExternalCapabilitySigner",
    "LocalSigner",
    "RemoteSigner",
    "Signer",
    "select_signer",
]
