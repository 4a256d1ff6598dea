"""
SparkChat - Key agreement and per-recipient encryption.

This module implements the cryptography behind group messages:
- NIST P-256 Elliptic Curve Diffie-Hellman for pairwise key agreement
- AES-256-GCM authenticated encryption, one fresh 96-bit nonce per call
- SubjectPublicKeyInfo (DER, base64) encoding of public keys for the wire

A group message is encrypted once per recipient: for each recipient the
sender derives the pairwise secret from its own private key and the
recipient's public key, and encrypts the plaintext under it. Only the
holder of the matching private key can derive the same secret.

The raw 32-byte ECDH shared secret is used directly as the AES-256 key.
This is what WebCrypto's deriveKey(ECDH -> AES-GCM-256) produces, so
browser peers on the same broker can read our messages and we theirs.

All cryptographic operations use the cryptography library (Apache 2.0/BSD).
"""

import base64
import binascii
import hashlib
import os
import secrets
import string
from typing import List, Optional

from cryptography.exceptions import InternalError, InvalidTag, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .constants import (
    ANONYMOUS_NAME_PREFIX,
    ANONYMOUS_NAME_RANDOM_LENGTH,
    CLIENT_ID_HEX_LENGTH,
    CLIENT_ID_PREFIX,
    MESSAGE_ID_RANDOM_LENGTH,
    NONCE_SIZE,
)
from .errors import CryptoUnavailable, DecryptionFailed, EncryptionFailed, MalformedKey

CURVE = ec.SECP256R1()

_BASE36_ALPHABET = string.digits + string.ascii_lowercase


class KeyPair:
    """
    A session's ECDH key pair on P-256.

    The private key never leaves this object: there is deliberately no
    export for it. Only the public half is serialized.
    """

    def __init__(self, private_key: Optional[ec.EllipticCurvePrivateKey] = None):
        if private_key is None:
            private_key = ec.generate_private_key(CURVE)
        self.private_key = private_key
        self.public_key = private_key.public_key()

    def get_public_key_bytes(self) -> bytes:
        """Get public key as DER-encoded SubjectPublicKeyInfo."""
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def export_public_key(self) -> str:
        """Get public key in its wire form."""
        return export_public_key(self.public_key)

    def __repr__(self) -> str:
        return f"KeyPair(fingerprint={generate_fingerprint(self.export_public_key())[:16]})"


def generate_key_pair() -> KeyPair:
    """
    Generate a fresh P-256 key pair for key agreement.

    Raises:
        CryptoUnavailable: If the backend cannot provide the primitives
    """
    try:
        return KeyPair()
    except (UnsupportedAlgorithm, InternalError) as e:
        raise CryptoUnavailable(
            f"Cannot generate P-256 key pair: {e}", {"curve": CURVE.name}
        ) from e


def export_public_key(public_key: ec.EllipticCurvePublicKey) -> str:
    """
    Encode a public key as base64 of its DER SubjectPublicKeyInfo.

    Deterministic: the same key always yields the same string, which is why
    the string doubles as the peer's cache key and wire identifier.
    """
    spki = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(spki).decode("ascii")


def import_public_key(serialized: str) -> ec.EllipticCurvePublicKey:
    """
    Parse a serialized public key received from the network.

    Raises:
        MalformedKey: If the input is not a base64 SPKI P-256 public key
    """
    if not isinstance(serialized, str) or not serialized:
        raise MalformedKey("Public key must be a non-empty string")

    try:
        spki = base64.b64decode(serialized, validate=True)
        public_key = serialization.load_der_public_key(spki)
    except (binascii.Error, ValueError, UnsupportedAlgorithm) as e:
        raise MalformedKey(f"Cannot parse public key: {e}") from e

    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise MalformedKey("Public key is not an elliptic curve key")
    if public_key.curve.name != CURVE.name:
        raise MalformedKey(
            f"Unsupported curve: {public_key.curve.name}",
            {"curve": public_key.curve.name, "expected": CURVE.name},
        )

    return public_key


def derive_shared_key(
    private_key: ec.EllipticCurvePrivateKey, public_key: ec.EllipticCurvePublicKey
) -> bytes:
    """
    Derive the pairwise AES-256 key via ECDH.

    derive_shared_key(a.private, b.public) == derive_shared_key(b.private, a.public)
    """
    return private_key.exchange(ec.ECDH(), public_key)


def encrypt(
    plaintext: str,
    private_key: ec.EllipticCurvePrivateKey,
    recipient_public_key: ec.EllipticCurvePublicKey,
) -> str:
    """
    Encrypt a message for one recipient.

    A new random nonce is drawn on every call; reusing a nonce under the same
    derived key would break AES-GCM entirely.

    Returns:
        base64(nonce || ciphertext || tag)

    Raises:
        EncryptionFailed: If key agreement or encryption fails
    """
    try:
        shared_key = derive_shared_key(private_key, recipient_public_key)
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = AESGCM(shared_key).encrypt(nonce, plaintext.encode("utf-8"), None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise EncryptionFailed(f"Encryption failed: {e}") from e

    return base64.b64encode(nonce + ciphertext).decode("ascii")


def encrypt_for_recipients(
    plaintext: str,
    private_key: ec.EllipticCurvePrivateKey,
    recipient_public_keys: List[ec.EllipticCurvePublicKey],
) -> List[str]:
    """
    Encrypt a message once per recipient.

    Returns one ciphertext per recipient, in the order the keys were given.
    """
    return [encrypt(plaintext, private_key, public_key) for public_key in recipient_public_keys]


def decrypt(
    ciphertext: str,
    private_key: ec.EllipticCurvePrivateKey,
    sender_public_key: ec.EllipticCurvePublicKey,
) -> str:
    """
    Decrypt a message encrypted for us by the holder of sender_public_key.

    Raises:
        DecryptionFailed: On tag mismatch (wrong key, corrupted data, or data
            not addressed to us) or an undecodable payload
    """
    try:
        combined = base64.b64decode(ciphertext, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise DecryptionFailed(f"Ciphertext is not valid base64: {e}") from e

    if len(combined) <= NONCE_SIZE:
        raise DecryptionFailed("Ciphertext too short", {"length": len(combined)})

    nonce, body = combined[:NONCE_SIZE], combined[NONCE_SIZE:]

    try:
        shared_key = derive_shared_key(private_key, sender_public_key)
        plaintext_bytes = AESGCM(shared_key).decrypt(nonce, body, None)
        return plaintext_bytes.decode("utf-8")
    except InvalidTag as e:
        raise DecryptionFailed("Authentication tag mismatch") from e
    except (ValueError, UnicodeDecodeError) as e:
        raise DecryptionFailed(f"Decryption failed: {e}") from e


def generate_fingerprint(serialized_key: str) -> str:
    """
    Generate a human-readable fingerprint of a serialized public key.

    Users can compare fingerprints out-of-band; display names are
    self-asserted and prove nothing.

    Returns a 64-character hexadecimal SHA-256 digest of the SPKI bytes.
    """
    return hashlib.sha256(base64.b64decode(serialized_key)).hexdigest()


def _random_base36(length: int) -> str:
    return "".join(secrets.choice(_BASE36_ALPHABET) for _ in range(length))


def generate_message_id(timestamp_ms: int) -> str:
    """
    Generate a message id: "<ms timestamp>-<7 random base36 chars>".

    The id is the only deduplication key for messages.
    """
    return f"{timestamp_ms}-{_random_base36(MESSAGE_ID_RANDOM_LENGTH)}"


def generate_client_id() -> str:
    """Generate a broker client id, e.g. "spark-chat-1a2b3c4d"."""
    return CLIENT_ID_PREFIX + secrets.token_hex(CLIENT_ID_HEX_LENGTH // 2)


def generate_anonymous_name() -> str:
    """Generate a placeholder display name, e.g. "Anonymous-k3x9q"."""
    return ANONYMOUS_NAME_PREFIX + _random_base36(ANONYMOUS_NAME_RANDOM_LENGTH)
