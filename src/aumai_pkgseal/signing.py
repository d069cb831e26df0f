"""Threshold signing and verification of manifests and registries."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from aumai_pkgseal.canonical import CanonicalValue, encode
from aumai_pkgseal.errors import MalformedEncoding, ThresholdNotMet
from aumai_pkgseal.keys import SigningKeyHandle, verify_signature
from aumai_pkgseal.models import (
    Manifest,
    Signature,
    SignedManifest,
    SignedRegistry,
    SignedStatement,
    TrustRegistry,
    VerificationResult,
)

logger = logging.getLogger(__name__)

Payload = Manifest | TrustRegistry

# ---------------------------------------------------------------------------
# Signing payload
# ---------------------------------------------------------------------------


def build_signable(payload: Payload, registry: TrustRegistry) -> CanonicalValue:
    """Return the canonical structure every signer signs.

    The structure binds the payload to the authorizing registry::

        {"type": b"manifest" | b"registry",
         "threshold": <registry threshold>,
         "public-keys": [<registry key records, sorted by keyid>],
         "payload": <payload.to_canonical_value()>}
    """
    if isinstance(payload, Manifest):
        kind = b"manifest"
    elif isinstance(payload, TrustRegistry):
        kind = b"registry"
    else:
        raise TypeError(f"Cannot sign a {type(payload).__name__}")
    return {
        b"type": kind,
        b"threshold": registry.threshold,
        b"public-keys": [record.to_canonical_value() for record in registry.keys],
        b"payload": payload.to_canonical_value(),
    }


def signing_payload(payload: Payload, registry: TrustRegistry) -> bytes:
    """Canonically encode :func:`build_signable`.

    Raises:
        MalformedEncoding: if the payload or registry holds values that have
            no canonical form (bad hex, out-of-range integers).
    """
    try:
        return encode(build_signable(payload, registry))
    except MalformedEncoding:
        raise
    except (ValueError, TypeError) as exc:
        raise MalformedEncoding(f"Cannot encode signing payload: {exc}") from exc


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------


def _statement_type(payload: Payload) -> type[SignedStatement]:  # type: ignore[type-arg]
    return SignedManifest if isinstance(payload, Manifest) else SignedRegistry


def _sign_all(
    data: bytes,
    registry: TrustRegistry,
    signing_keys: Iterable[SigningKeyHandle],
) -> list[Signature]:
    trusted = registry.keyids()
    signatures: list[Signature] = []
    for handle in signing_keys:
        if handle.keyid not in trusted:
            logger.warning(
                "Key %s is not in registry version %d; its signature will not count",
                handle.keyid,
                registry.version,
            )
        signatures.append(Signature(keyid=handle.keyid, sig=handle.sign(data).hex()))
        logger.debug("Signed payload with key %s", handle.keyid)
    return signatures


def sign(
    payload: Payload,
    registry: TrustRegistry,
    signing_keys: Iterable[SigningKeyHandle],
) -> SignedStatement:  # type: ignore[type-arg]
    """Sign *payload* under *registry* with every key in *signing_keys*.

    Signatures are listed in the order the keys were given.  *registry* is
    not modified.

    Raises:
        InvalidRegistry: if *registry* fails :meth:`TrustRegistry.check`.
        MalformedEncoding: if the payload has no canonical form.
    """
    registry.check()
    data = signing_payload(payload, registry)
    signatures = _sign_all(data, registry, signing_keys)
    logger.info(
        "Signed %s with %d key(s) under registry version %d",
        type(payload).__name__,
        len(signatures),
        registry.version,
    )
    return _statement_type(payload)(signed=payload, signatures=signatures)


def add_signatures(
    statement: SignedStatement,  # type: ignore[type-arg]
    registry: TrustRegistry,
    signing_keys: Iterable[SigningKeyHandle],
) -> SignedStatement:  # type: ignore[type-arg]
    """Return *statement* co-signed by *signing_keys*.

    Existing signatures from other keys are kept; an existing signature from
    one of *signing_keys* is replaced by the fresh one.
    """
    registry.check()
    data = signing_payload(statement.signed, registry)
    fresh = {sig.keyid: sig for sig in _sign_all(data, registry, signing_keys)}
    kept = [sig for sig in statement.signatures if sig.keyid not in fresh]
    return statement.model_copy(update={"signatures": tuple(kept + list(fresh.values()))})


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


def verify(
    statement: SignedStatement,  # type: ignore[type-arg]
    registry: TrustRegistry,
    now: datetime | None = None,
    enforce_expiry: bool = True,
) -> VerificationResult:
    """Check that *statement* carries enough valid signatures for *registry*.

    The signing payload is always recomputed from ``statement.signed``.
    Signatures from keys outside *registry* are ignored, and a key that
    signed more than once counts once.

    Raises:
        InvalidRegistry: if *registry* is unusable (checked before any
            signature work); :class:`RegistryExpired` if it is past its
            expiry and *enforce_expiry* is set.
        MalformedEncoding: if ``statement.signed`` has no canonical form.
        UnknownSignatureFormat: if a trusted key's signature cannot be
            interpreted by that key's algorithm.
        ThresholdNotMet: if fewer than ``registry.threshold`` distinct
            trusted keys produced a valid signature.
    """
    registry.check()
    if enforce_expiry:
        registry.check_expiry(now)
    data = signing_payload(statement.signed, registry)

    valid: list[str] = []
    invalid: list[str] = []
    ignored: list[str] = []
    for signature in statement.signatures:
        record = registry.get_key(signature.keyid)
        if record is None:
            logger.debug("Ignoring signature from untrusted key %s", signature.keyid)
            ignored.append(signature.keyid)
            continue
        if signature.keyid in valid:
            continue
        if verify_signature(record.key, signature.signature, data):
            valid.append(signature.keyid)
        else:
            logger.debug("Invalid signature from key %s", signature.keyid)
            invalid.append(signature.keyid)

    if len(valid) < registry.threshold:
        raise ThresholdNotMet(required=registry.threshold, got=len(valid))

    logger.info(
        "Verified %s: %d of %d required signature(s)",
        type(statement.signed).__name__,
        len(valid),
        registry.threshold,
    )
    return VerificationResult(
        required=registry.threshold,
        valid_keyids=valid,
        invalid_keyids=[keyid for keyid in invalid if keyid not in valid],
        ignored_keyids=ignored,
    )


__all__ = [
    "add_signatures",
    "build_signable",
    "sign",
    "signing_payload",
    "verify",
]
