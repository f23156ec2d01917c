"""
zkchat_core.errors
------------------
Exception taxonomy shared by every zkchat component.

Signature verification failures are not exceptions: the message codec reports
them as ``valid=False`` so callers can flag a message instead of hiding it.
"""

from __future__ import annotations
from typing import Optional


class ZKError(Exception):
    pass


class ContextError(ZKError):
    """Crypto used outside a secure execution context. Fatal, never retried."""


class FormatError(ZKError):
    """Malformed base64/JSON/hex or an envelope that cannot be parsed."""


class UnsupportedFormatError(FormatError):
    def __init__(self, version, alg):
        super().__init__(f"Unsupported key format: v{version} alg={alg}")
        self.version = version
        self.alg = alg


class Nip44Error(FormatError):
    pass


class KeyUnavailable(ZKError):
    """No signer backend is configured for the current session."""


class SignerError(ZKError):
    """A signer backend failed for a reason of its own (extension threw, account locked)."""

    def __init__(self, message: str, backend: str):
        super().__init__(message)
        self.backend = backend


class UnwrapError(ZKError):
    def __init__(self, message: str, backend: str):
        super().__init__(message)
        self.backend = backend


class BunkerTimeoutError(ZKError, TimeoutError):
    def __init__(self, method: str, timeout: float):
        super().__init__(f"Bunker request timed out: {method} after {timeout:g}s")
        self.method = method
        self.timeout = timeout


class RemoteSignerError(ZKError):
    """Error reported by the remote signer itself, passed through verbatim."""

    def __init__(self, message: str, method: Optional[str] = None):
        super().__init__(message)
        self.method = method


class ServerError(ZKError):
    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status
