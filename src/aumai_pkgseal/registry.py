"""Trust registry bootstrap, threshold-signed rotation, and persistence."""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from aumai_pkgseal.errors import InvalidRegistry, RotationConflict, RotationError
from aumai_pkgseal.models import (
    PublicKeyRecord,
    SignedRegistry,
    SignedStatement,
    TrustRegistry,
    VerificationResult,
)
from aumai_pkgseal.signing import verify

logger = logging.getLogger(__name__)

KeyInput = bytes | str | PublicKeyRecord


def _record(key: KeyInput) -> PublicKeyRecord:
    if isinstance(key, PublicKeyRecord):
        return key
    try:
        return PublicKeyRecord.from_pem(key)
    except ValueError as exc:
        raise InvalidRegistry(f"Not a supported public key: {exc}") from exc


# ---------------------------------------------------------------------------
# Bootstrap and rotation
# ---------------------------------------------------------------------------


def bootstrap(
    keys: Iterable[KeyInput],
    threshold: int,
    expires: datetime | None = None,
) -> TrustRegistry:
    """Create the first registry (version 1) from trusted public keys.

    This is the trust anchor.  It is not verified against any earlier state
    and must reach its users through an out-of-band verified channel.

    Raises:
        InvalidRegistry: if a key is unsupported or the registry cannot reach
            its own threshold.
    """
    registry = TrustRegistry(
        threshold=threshold,
        keys=[_record(key) for key in keys],
        version=1,
        expires=expires,
    )
    registry.check()
    logger.info(
        "Bootstrapped registry with %d key(s), threshold %d",
        len(registry.keys),
        registry.threshold,
    )
    return registry


def propose_rotation(
    current: TrustRegistry,
    add: Iterable[KeyInput] = (),
    remove: Iterable[str] = (),
    threshold: int | None = None,
    expires: datetime | None = None,
    clear_expiry: bool = False,
) -> TrustRegistry:
    """Return the successor of *current* with keys added/removed.

    The proposal has version ``current.version + 1`` and must still be
    signed by ``current.threshold`` members of *current* before
    :func:`apply_rotation` accepts it.

    Raises:
        RotationError: if a key to remove is not registered.
        InvalidRegistry: if the proposed registry violates its invariants.
    """
    records = {record.keyid: record for record in current.keys}
    for keyid in remove:
        if keyid not in records:
            raise RotationError(f"Cannot remove unknown key {keyid}")
        del records[keyid]
    for key in add:
        record = _record(key)
        if record.keyid in records:
            logger.debug("Key %s is already registered", record.keyid)
        records[record.keyid] = record

    proposed = TrustRegistry(
        threshold=current.threshold if threshold is None else threshold,
        keys=list(records.values()),
        version=current.version + 1,
        expires=None if clear_expiry else (expires or current.expires),
    )
    proposed.check()
    return proposed


def apply_rotation(
    current: TrustRegistry,
    statement: SignedRegistry,
    now: datetime | None = None,
    enforce_expiry: bool = True,
) -> TrustRegistry:
    """Accept the registry in *statement* as the successor of *current*.

    The rotation is all-or-nothing: either the proposed registry is returned,
    or an exception is raised and *current* remains authoritative.

    Raises:
        RotationConflict: if the proposal is not exactly ``current.version + 1``.
        InvalidRegistry: if *current* or the proposal is invalid.
        ThresholdNotMet: if fewer than ``current.threshold`` members of
            *current* signed the proposal.
    """
    current.check()
    proposed = statement.signed
    if proposed.version != current.version + 1:
        raise RotationConflict(expected=proposed.version - 1, actual=current.version)
    proposed.check()

    result = verify(statement, current, now=now, enforce_expiry=enforce_expiry)
    logger.info(
        "Rotated registry %d -> %d (%d of %d signatures)",
        current.version,
        proposed.version,
        result.got,
        result.required,
    )
    return proposed


def follow_rotations(
    anchor: TrustRegistry,
    rotations: Iterable[SignedRegistry],
    now: datetime | None = None,
) -> TrustRegistry:
    """Apply a chain of rotations to a pinned trust anchor.

    Intermediate registries may have expired since they were replaced; only
    the final registry's expiry is enforced.
    """
    anchor.check()
    current = anchor
    for statement in rotations:
        current = apply_rotation(current, statement, enforce_expiry=False)
    current.check_expiry(now)
    return current


# ---------------------------------------------------------------------------
# RegistryStore
# ---------------------------------------------------------------------------


class RegistryStore:
    """The current signed registry as a versioned value with JSON persistence.

    Readers take a snapshot with :attr:`current`.  :meth:`rotate` validates a
    rotation against the snapshot it was computed from, then swaps it in only
    if no other rotation landed meanwhile (compare-and-swap on ``version``).
    The loser gets :class:`RotationConflict` and must recompute against the
    new current registry.
    """

    def __init__(self, registry_path: str | None = None) -> None:
        self._registry_path = Path(registry_path) if registry_path else None
        self._statement: SignedRegistry | None = None
        self._swap_lock = threading.Lock()

        if self._registry_path and self._registry_path.exists():
            self._load()

    @property
    def initialized(self) -> bool:
        return self._statement is not None

    @property
    def statement(self) -> SignedRegistry:
        if self._statement is None:
            raise InvalidRegistry("Registry has not been initialized")
        return self._statement

    @property
    def current(self) -> TrustRegistry:
        return self.statement.signed

    def initialize(self, registry: TrustRegistry) -> None:
        """Install the bootstrap registry.

        Raises:
            RotationError: if the store already holds a registry.
            InvalidRegistry: if *registry* is invalid.
        """
        registry.check()
        with self._swap_lock:
            if self._statement is not None:
                raise RotationError("Registry is already initialized; rotate instead")
            self._statement = SignedRegistry(signed=registry)
            self._save()

    def rotate(self, statement: SignedRegistry, now: datetime | None = None) -> TrustRegistry:
        """Verify *statement* against the current registry and make it current."""
        snapshot = self.current
        proposed = apply_rotation(snapshot, statement, now=now)
        with self._swap_lock:
            latest = self.current
            if latest.version != snapshot.version:
                raise RotationConflict(expected=snapshot.version, actual=latest.version)
            self._statement = statement
            self._save()
        return proposed

    def verify(
        self,
        statement: SignedStatement,  # type: ignore[type-arg]
        now: datetime | None = None,
    ) -> VerificationResult:
        """Verify a signed statement against the current registry snapshot."""
        return verify(statement, self.current, now=now)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _save(self) -> None:
        if self._registry_path is None or self._statement is None:
            return
        self._registry_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._registry_path.with_name(self._registry_path.name + ".tmp")
        tmp_path.write_text(self._statement.to_json(), encoding="utf-8")
        os.replace(tmp_path, self._registry_path)

    def _load(self) -> None:
        if self._registry_path is None or not self._registry_path.exists():
            return
        statement = SignedRegistry.from_json(
            self._registry_path.read_text(encoding="utf-8")
        )
        statement.signed.check()
        self._statement = statement
        logger.debug(
            "Loaded registry version %d from %s",
            statement.signed.version,
            self._registry_path,
        )


__all__ = [
    "RegistryStore",
    "apply_rotation",
    "bootstrap",
    "follow_rotations",
    "propose_rotation",
]
