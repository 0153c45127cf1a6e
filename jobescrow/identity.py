"""
Identity and request signing for escrow operations.

An identity is a base64-encoded Ed25519 public key. Every state-changing
operation is authorised by a Credential: the caller's signature over a
canonical encoding of the action, its parameters, a single-use nonce and the
time it was issued. The escrow service hands credentials to an
IdentityVerifier and only trusts the identity the verifier returns.
"""

import base64
import binascii
import hashlib
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from jobescrow.config import EscrowConfig
from jobescrow.errors import AuthorizationError, CryptoError, SignatureError
from jobescrow.utils import parse_datetime, utc_now

logger = logging.getLogger(__name__)

MAX_NONCE_LENGTH = 128


@dataclass
class KeyPair:
    """Ed25519 key pair.

    Attributes:
        public_key: Base64-encoded public key (this is the identity)
        private_key: Base64-encoded private key (optional, for security)
        created_at: When the key was generated
        key_id: Short identifier derived from public key
    """

    public_key: str
    private_key: Optional[str] = None
    created_at: Optional[datetime] = None
    key_id: Optional[str] = None

    @property
    def identity(self) -> str:
        return self.public_key


def generate_key_pair() -> KeyPair:
    """Generate a new Ed25519 key pair.

    Raises:
        CryptoError: If key generation fails
    """
    try:
        private_key = Ed25519PrivateKey.generate()
        private_bytes = private_key.private_bytes_raw()
        public_bytes = private_key.public_key().public_bytes_raw()
    except Exception as e:
        logger.error(f"Key generation failed: {e}")
        raise CryptoError(f"Failed to generate key pair: {e}") from e

    return KeyPair(
        public_key=base64.b64encode(public_bytes).decode("ascii"),
        private_key=base64.b64encode(private_bytes).decode("ascii"),
        created_at=datetime.now(timezone.utc),
        key_id=hashlib.sha256(public_bytes).hexdigest()[:8],
    )


def sign_message(message: bytes, private_key_b64: str) -> str:
    """Sign a message with an Ed25519 private key.

    Returns:
        Base64-encoded signature

    Raises:
        CryptoError: If the key is malformed
    """
    try:
        private_key = Ed25519PrivateKey.from_private_bytes(base64.b64decode(private_key_b64))
    except (binascii.Error, ValueError) as e:
        raise CryptoError(f"Failed to sign message: {e}") from e
    return base64.b64encode(private_key.sign(message)).decode("ascii")


def verify_signature(message: bytes, signature_b64: str, public_key_b64: str) -> bool:
    """Verify a message signature with an Ed25519 public key.

    Returns:
        True if signature is valid

    Raises:
        SignatureError: If the signature or key is invalid
    """
    try:
        public_key = Ed25519PublicKey.from_public_bytes(base64.b64decode(public_key_b64))
        public_key.verify(base64.b64decode(signature_b64), message)
    except (binascii.Error, ValueError, InvalidSignature) as e:
        logger.debug(f"Signature verification failed: {e!r}")
        raise SignatureError("Invalid signature") from e
    return True


def is_valid_identity(identity: str) -> bool:
    """Check that a string decodes to a 32-byte Ed25519 public key."""
    if not isinstance(identity, str) or not identity:
        return False
    try:
        return len(base64.b64decode(identity, validate=True)) == 32
    except (binascii.Error, ValueError):
        return False


def new_nonce() -> str:
    return secrets.token_hex(16)


def canonical_message(
    action: str,
    payload: Mapping[str, Any],
    identity: str,
    nonce: str,
    issued_at: datetime,
) -> bytes:
    """Bytes a credential signs: compact, sorted-key JSON."""
    body = {
        "action": action,
        "identity": identity,
        "issued_at": issued_at.isoformat(),
        "nonce": nonce,
        "payload": dict(payload),
    }
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


@dataclass(frozen=True)
class Credential:
    """A signed authorisation for one operation by one identity."""

    identity: str
    nonce: str
    issued_at: datetime
    signature: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "identity": self.identity,
            "nonce": self.nonce,
            "issued_at": self.issued_at.isoformat(),
            "signature": self.signature,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, str]) -> "Credential":
        return cls(
            identity=data["identity"],
            nonce=data["nonce"],
            issued_at=parse_datetime(data["issued_at"]),
            signature=data["signature"],
        )


def sign_request(
    key_pair: KeyPair,
    action: str,
    payload: Mapping[str, Any],
    nonce: Optional[str] = None,
    issued_at: Optional[datetime] = None,
) -> Credential:
    """Sign an escrow operation with ``key_pair``.

    Args:
        key_pair: Signer's keys (private key required)
        action: Operation name, e.g. ``"approve_worker"``
        payload: Operation parameters, exactly as the service will rebuild them
        nonce: Single-use value (default: random)
        issued_at: Signing time (default: now)
    """
    if key_pair.private_key is None:
        raise CryptoError("Private key not available")
    nonce = nonce or new_nonce()
    issued_at = issued_at or utc_now()
    message = canonical_message(action, payload, key_pair.public_key, nonce, issued_at)
    return Credential(
        identity=key_pair.public_key,
        nonce=nonce,
        issued_at=issued_at,
        signature=sign_message(message, key_pair.private_key),
    )


@runtime_checkable
class IdentityVerifier(Protocol):
    """Turns a credential into a trusted identity, or raises AuthorizationError."""

    def verify(self, credential: Credential, action: str, payload: Mapping[str, Any]) -> str: ...


class Ed25519Verifier:
    """Verifies Ed25519-signed credentials with a freshness window.

    Nonce reuse is not checked here; the escrow service consumes nonces inside
    the operation's transaction so that a replay fails atomically.
    """

    def __init__(self, config: Optional[EscrowConfig] = None, clock=utc_now):
        self.config = config or EscrowConfig()
        self._clock = clock

    def verify(self, credential: Credential, action: str, payload: Mapping[str, Any]) -> str:
        if not isinstance(credential, Credential):
            raise AuthorizationError("A signed credential is required")
        if not is_valid_identity(credential.identity):
            raise AuthorizationError("Credential identity is not a valid public key")
        if not credential.nonce or len(credential.nonce) > MAX_NONCE_LENGTH:
            raise AuthorizationError("Credential nonce is missing or too long")

        issued_at = credential.issued_at
        if issued_at.tzinfo is None:
            raise AuthorizationError("Credential timestamp must be timezone-aware")
        now = self._clock()
        if issued_at > now + timedelta(seconds=self.config.clock_skew_seconds):
            raise AuthorizationError("Credential issued in the future")
        if now - issued_at > timedelta(seconds=self.config.credential_max_age_seconds):
            raise AuthorizationError("Credential has expired")

        message = canonical_message(
            action, payload, credential.identity, credential.nonce, issued_at
        )
        verify_signature(message, credential.signature, credential.identity)
        return credential.identity
