"""Key identity, signing handles and key-pair management."""

from __future__ import annotations

import hashlib
import logging
import os
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.asymmetric.ec import ECDSA
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature

from aumai_pkgseal.errors import UnknownSignatureFormat

logger = logging.getLogger(__name__)

_ED25519_SIGNATURE_SIZE = 64
_RSA_KEY_SIZE = 4096
_RSA_MIN_KEY_SIZE = 2048


class SignatureAlgorithm(str, Enum):
    """Asymmetric signing algorithm choices."""

    ed25519 = "ed25519"
    ecdsa_p256 = "ecdsa_p256"
    rsa = "rsa"


# ---------------------------------------------------------------------------
# Key identity
# ---------------------------------------------------------------------------


def _algorithm_of(key: object) -> SignatureAlgorithm:
    if isinstance(key, (Ed25519PrivateKey, Ed25519PublicKey)):
        return SignatureAlgorithm.ed25519
    if isinstance(key, (ec.EllipticCurvePrivateKey, ec.EllipticCurvePublicKey)):
        if not isinstance(key.curve, ec.SECP256R1):
            raise ValueError(
                f"Unsupported elliptic curve: {key.curve.name}. Only P-256 is supported."
            )
        return SignatureAlgorithm.ecdsa_p256
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        if key.key_size < _RSA_MIN_KEY_SIZE:
            raise ValueError(
                f"RSA key too small: {key.key_size} bits (minimum {_RSA_MIN_KEY_SIZE})"
            )
        return SignatureAlgorithm.rsa
    raise ValueError(
        f"Unsupported key type: {type(key).__name__}. "
        "Only Ed25519, ECDSA P-256 and RSA are supported."
    )


def _export_public_pem(public_key: object) -> str:
    pem = public_key.public_bytes(  # type: ignore[attr-defined]
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return pem.decode("ascii").rstrip()


def _load_public_key(pem: bytes | str) -> object:
    data = pem.encode("ascii") if isinstance(pem, str) else pem
    public_key = serialization.load_pem_public_key(data)
    _algorithm_of(public_key)
    return public_key


def normalize_public_pem(pem: bytes | str) -> str:
    """Return the normalized export form of a PEM public key.

    The key is parsed and re-exported as SubjectPublicKeyInfo PEM, then
    trailing whitespace is stripped.  Different wrappings of the same key
    material therefore normalize to the same text.

    Raises:
        ValueError: if *pem* is not a supported public key.
    """
    return _export_public_pem(_load_public_key(pem))


def derive_keyid(pem: bytes | str) -> str:
    """Return the hex SHA-256 KeyId of the normalized public key export."""
    normalized = normalize_public_pem(pem)
    return hashlib.sha256(normalized.encode("ascii")).hexdigest()


def key_algorithm(pem: bytes | str) -> SignatureAlgorithm:
    """Return the :class:`SignatureAlgorithm` of a PEM public key."""
    return _algorithm_of(_load_public_key(pem))


# ---------------------------------------------------------------------------
# Signing handles
# ---------------------------------------------------------------------------


@runtime_checkable
class SigningKeyHandle(Protocol):
    """Anything that can sign payloads for a known KeyId.

    External key stores (HSMs, agents) implement this to sign without ever
    exposing private key material to this library.
    """

    @property
    def keyid(self) -> str: ...

    def sign(self, payload: bytes) -> bytes: ...


class SigningKey:
    """An in-process private key wrapped as a :class:`SigningKeyHandle`."""

    def __init__(self, private_key: object) -> None:
        self._algorithm = _algorithm_of(private_key)
        self._private_key = private_key
        self._public_pem = _export_public_pem(
            private_key.public_key()  # type: ignore[attr-defined]
        )
        self._keyid = hashlib.sha256(self._public_pem.encode("ascii")).hexdigest()

    @classmethod
    def from_pem(cls, pem: bytes, password: bytes | None = None) -> SigningKey:
        """Load a PEM private key, decrypting it with *password* if given."""
        return cls(serialization.load_pem_private_key(pem, password=password))

    @property
    def keyid(self) -> str:
        return self._keyid

    @property
    def algorithm(self) -> SignatureAlgorithm:
        return self._algorithm

    @property
    def public_pem(self) -> str:
        return self._public_pem

    def sign(self, payload: bytes) -> bytes:
        key = self._private_key
        if self._algorithm == SignatureAlgorithm.ed25519:
            return key.sign(payload)  # type: ignore[attr-defined]
        if self._algorithm == SignatureAlgorithm.ecdsa_p256:
            return key.sign(payload, ECDSA(hashes.SHA256()))  # type: ignore[attr-defined]
        return key.sign(  # type: ignore[attr-defined]
            payload, padding.PKCS1v15(), hashes.SHA256()
        )

    def __repr__(self) -> str:
        return f"SigningKey(keyid={self._keyid[:16]}..., algorithm={self._algorithm.value})"


# ---------------------------------------------------------------------------
# Verification primitive
# ---------------------------------------------------------------------------


def verify_signature(public_pem: str, signature: bytes, payload: bytes) -> bool:
    """Check *signature* over *payload* with the PEM public key.

    Returns:
        ``True`` if the signature is cryptographically valid, ``False`` if it
        is well-formed for the algorithm but does not match.

    Raises:
        UnknownSignatureFormat: if *signature* cannot be a signature of this
            key's algorithm at all (wrong length, malformed DER).
    """
    public_key = _load_public_key(public_pem)
    algorithm = _algorithm_of(public_key)
    keyid = hashlib.sha256(_export_public_pem(public_key).encode("ascii")).hexdigest()

    try:
        if algorithm == SignatureAlgorithm.ed25519:
            if len(signature) != _ED25519_SIGNATURE_SIZE:
                raise UnknownSignatureFormat(
                    f"Ed25519 signatures are {_ED25519_SIGNATURE_SIZE} bytes, "
                    f"got {len(signature)}",
                    keyid=keyid,
                )
            public_key.verify(signature, payload)  # type: ignore[attr-defined]
        elif algorithm == SignatureAlgorithm.ecdsa_p256:
            try:
                decode_dss_signature(signature)
            except ValueError as exc:
                raise UnknownSignatureFormat(
                    f"ECDSA signature is not valid DER: {exc}", keyid=keyid
                ) from exc
            public_key.verify(  # type: ignore[attr-defined]
                signature, payload, ECDSA(hashes.SHA256())
            )
        else:
            expected = (public_key.key_size + 7) // 8  # type: ignore[attr-defined]
            if len(signature) != expected:
                raise UnknownSignatureFormat(
                    f"RSA signatures for this key are {expected} bytes, "
                    f"got {len(signature)}",
                    keyid=keyid,
                )
            public_key.verify(  # type: ignore[attr-defined]
                signature, payload, padding.PKCS1v15(), hashes.SHA256()
            )
    except InvalidSignature:
        return False
    return True


# ---------------------------------------------------------------------------
# KeyManager
# ---------------------------------------------------------------------------


class KeyManager:
    """Generate, persist, and load asymmetric key pairs."""

    def generate_keypair(
        self,
        algorithm: SignatureAlgorithm = SignatureAlgorithm.ed25519,
        passphrase: bytes | None = None,
    ) -> tuple[bytes, bytes]:
        """Generate a fresh key pair.

        Args:
            algorithm: ``ed25519``, ``ecdsa_p256`` or ``rsa`` (4096 bits).
            passphrase: Optional passphrase to encrypt the private key PEM.

        Returns:
            A tuple of ``(private_key_pem, public_key_pem)``.  The public PEM
            is already in normalized form.
        """
        encryption: serialization.KeySerializationEncryption = (
            serialization.BestAvailableEncryption(passphrase)
            if passphrase is not None
            else serialization.NoEncryption()
        )
        if algorithm == SignatureAlgorithm.ed25519:
            private_key: object = Ed25519PrivateKey.generate()
        elif algorithm == SignatureAlgorithm.ecdsa_p256:
            private_key = ec.generate_private_key(ec.SECP256R1())
        else:
            private_key = rsa.generate_private_key(
                public_exponent=65537, key_size=_RSA_KEY_SIZE
            )
        private_pem = private_key.private_bytes(  # type: ignore[attr-defined]
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )
        public_pem = _export_public_pem(
            private_key.public_key()  # type: ignore[attr-defined]
        )
        return private_pem, (public_pem + "\n").encode("ascii")

    def save_keypair(
        self,
        private_key: bytes,
        public_key: bytes,
        path: str,
        prefix: str = "",
    ) -> tuple[Path, Path]:
        """Write the key pair to *path*.

        Files are named ``<prefix>-private.pem`` / ``<prefix>-public.pem``, or
        ``private.pem`` / ``public.pem`` without a prefix.  The directory is
        created if needed and the private key is written with mode 0o600.

        Returns:
            ``(private_path, public_path)``.
        """
        out_dir = Path(path)
        out_dir.mkdir(parents=True, exist_ok=True)

        stem = prefix.rstrip("-") + "-" if prefix else ""
        private_file = out_dir / f"{stem}private.pem"
        public_file = out_dir / f"{stem}public.pem"

        private_file.write_bytes(private_key)
        public_file.write_bytes(public_key)

        try:
            os.chmod(private_file, 0o600)
        except NotImplementedError:
            pass  # Windows

        logger.debug("Wrote key pair to %s and %s", private_file, public_file)
        return private_file, public_file

    def load_private_key(self, path: str, password: bytes | None = None) -> SigningKey:
        """Load a PEM private key file as a :class:`SigningKey`.

        Raises:
            OSError: if the file cannot be read.
            ValueError: if the key is malformed, unsupported or the password is wrong.
            TypeError: if a password is required but not given (or vice versa).
        """
        handle = SigningKey.from_pem(Path(path).read_bytes(), password=password)
        logger.debug("Loaded %s private key %s", handle.algorithm.value, handle.keyid)
        return handle

    def load_public_key(self, path: str) -> str:
        """Read a PEM public key file and return its normalized form."""
        return normalize_public_pem(Path(path).read_bytes())


__all__ = [
    "KeyManager",
    "SignatureAlgorithm",
    "SigningKey",
    "SigningKeyHandle",
    "derive_keyid",
    "key_algorithm",
    "normalize_public_pem",
    "verify_signature",
]
