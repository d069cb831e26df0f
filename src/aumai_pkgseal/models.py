"""Pydantic models for aumai-pkgseal."""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime
from enum import Enum
from typing import Generic, TypeVar

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from aumai_pkgseal.canonical import (
    CanonicalValue,
    as_bytes,
    as_int,
    as_list,
    as_map,
    as_text,
    field,
)
from aumai_pkgseal.errors import InvalidRegistry, MalformedEncoding, RegistryExpired
from aumai_pkgseal.keys import SignatureAlgorithm, key_algorithm, normalize_public_pem

MANIFEST_FORMAT_VERSION = 1

_HEX256 = r"^[0-9a-f]{64}$"
_HEX = r"^(?:[0-9a-f]{2})*$"

_MANIFEST_FIELDS = frozenset({b"version", b"files"})
_FILE_FIELDS = frozenset({b"hash", b"size"})
_KEY_FIELDS = frozenset({b"keyid", b"key"})
_REGISTRY_FIELDS = frozenset({b"threshold", b"keys", b"version", b"expires"})


def check_relative_path(path: str) -> str:
    """Validate a manifest path: relative, POSIX separators, no dot segments.

    Raises:
        ValueError: describing the first violation found.
    """
    if not path:
        raise ValueError("path must not be empty")
    if "\\" in path:
        raise ValueError(f"path must use forward slashes: {path!r}")
    if path.startswith("/"):
        raise ValueError(f"path must be relative: {path!r}")
    if "\x00" in path:
        raise ValueError(f"path must not contain NUL: {path!r}")
    try:
        path.encode("utf-8")
    except UnicodeEncodeError:
        raise ValueError(f"path is not valid UTF-8: {path!r}") from None
    for segment in path.split("/"):
        if segment in ("", ".", ".."):
            raise ValueError(f"path has an empty, '.' or '..' segment: {path!r}")
    return path


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class SymlinkPolicy(str, Enum):
    """What the manifest builder does when it meets a symbolic link."""

    reject = "reject"
    follow = "follow"
    skip = "skip"


class ManifestConfig(BaseModel):
    """Options for :class:`~aumai_pkgseal.manifest.ManifestBuilder`."""

    symlinks: SymlinkPolicy = SymlinkPolicy.reject
    exclude: list[str] = Field(default_factory=list)
    chunk_size: int = Field(default=65536, gt=0)


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


class FileEntry(BaseModel):
    """Path, SHA-256 digest and size of one packaged file."""

    model_config = ConfigDict(frozen=True)

    path: str
    hash: str = Field(pattern=_HEX256)
    size: int = Field(ge=0)

    @field_validator("path")
    @classmethod
    def _valid_path(cls, value: str) -> str:
        return check_relative_path(value)

    @property
    def digest(self) -> bytes:
        return bytes.fromhex(self.hash)


class Manifest(BaseModel):
    """Content-addressed listing of a package's files, sorted by path."""

    model_config = ConfigDict(frozen=True)

    version: int = MANIFEST_FORMAT_VERSION
    files: tuple[FileEntry, ...] = ()

    @model_validator(mode="after")
    def _sorted_unique_paths(self) -> Manifest:
        paths = [entry.path for entry in self.files]
        for previous, current in zip(paths, paths[1:]):
            if current <= previous:
                raise ValueError(
                    f"manifest paths must be unique and sorted: {previous!r} >= {current!r}"
                )
        return self

    @property
    def total_size(self) -> int:
        return sum(entry.size for entry in self.files)

    def get(self, path: str) -> FileEntry | None:
        for entry in self.files:
            if entry.path == path:
                return entry
        return None

    def to_canonical_value(self) -> CanonicalValue:
        return {
            b"version": self.version,
            b"files": {
                entry.path.encode("utf-8"): {
                    b"hash": entry.digest,
                    b"size": entry.size,
                }
                for entry in self.files
            },
        }

    @classmethod
    def from_canonical_value(cls, value: CanonicalValue) -> Manifest:
        mapping = as_map(value, "manifest")
        version = as_int(
            field(mapping, b"version", "manifest", _MANIFEST_FIELDS), "manifest version"
        )
        files = as_map(field(mapping, b"files", "manifest"), "manifest files")
        entries = []
        for raw_path, raw_entry in files.items():
            path = as_text(raw_path, "file path")
            entry_map = as_map(raw_entry, f"file entry {path!r}")
            digest = as_bytes(
                field(entry_map, b"hash", path, _FILE_FIELDS), f"{path} hash"
            )
            size = as_int(field(entry_map, b"size", path), f"{path} size")
            entries.append({"path": path, "hash": digest.hex(), "size": size})
        try:
            return cls(version=version, files=entries)
        except ValidationError as exc:
            raise MalformedEncoding(f"Invalid manifest: {exc}") from exc


# ---------------------------------------------------------------------------
# Keys and registry
# ---------------------------------------------------------------------------


class PublicKeyRecord(BaseModel):
    """A trusted public key and the KeyId derived from it."""

    model_config = ConfigDict(frozen=True)

    keyid: str = Field(pattern=_HEX256)
    key: str

    @classmethod
    def from_pem(cls, pem: bytes | str) -> PublicKeyRecord:
        """Build a record from any PEM export of a supported public key."""
        normalized = normalize_public_pem(pem)
        keyid = hashlib.sha256(normalized.encode("ascii")).hexdigest()
        return cls(keyid=keyid, key=normalized)

    @property
    def algorithm(self) -> SignatureAlgorithm:
        return key_algorithm(self.key)

    def to_canonical_value(self) -> CanonicalValue:
        return {b"keyid": bytes.fromhex(self.keyid), b"key": self.key.encode("utf-8")}

    @classmethod
    def from_canonical_value(cls, value: CanonicalValue) -> PublicKeyRecord:
        mapping = as_map(value, "public key record")
        keyid = as_bytes(
            field(mapping, b"keyid", "public key record", _KEY_FIELDS), "keyid"
        )
        key = as_text(field(mapping, b"key", "public key record"), "key")
        try:
            return cls(keyid=keyid.hex(), key=key)
        except ValidationError as exc:
            raise MalformedEncoding(f"Invalid public key record: {exc}") from exc


class TrustRegistry(BaseModel):
    """The set of authorized keys and the number of signatures required.

    ``keys`` behaves as a set: records are kept sorted by keyid so two
    registries with the same members compare equal.  Invariants are not
    enforced on construction; call :meth:`check` before relying on one.
    """

    model_config = ConfigDict(frozen=True)

    threshold: int
    keys: tuple[PublicKeyRecord, ...] = ()
    version: int = Field(default=1, ge=1)
    expires: datetime | None = None

    @field_validator("keys")
    @classmethod
    def _sort_keys(cls, value: tuple[PublicKeyRecord, ...]) -> tuple[PublicKeyRecord, ...]:
        return tuple(sorted(value, key=lambda record: record.keyid))

    @field_validator("expires")
    @classmethod
    def _utc_seconds(cls, value: datetime | None) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("expires must be timezone-aware")
        return value.astimezone(UTC).replace(microsecond=0)

    def keyids(self) -> frozenset[str]:
        return frozenset(record.keyid for record in self.keys)

    def get_key(self, keyid: str) -> PublicKeyRecord | None:
        for record in self.keys:
            if record.keyid == keyid:
                return record
        return None

    def check(self) -> None:
        """Validate the registry invariants.

        Raises:
            InvalidRegistry: for a non-positive threshold, duplicate keyids,
                a keyid that does not match its key, an unsupported key, or
                fewer keys than the threshold.
        """
        if self.threshold < 1:
            raise InvalidRegistry(f"Threshold must be positive, got {self.threshold}")
        seen: set[str] = set()
        for record in self.keys:
            if record.keyid in seen:
                raise InvalidRegistry(f"Duplicate keyid in registry: {record.keyid}")
            seen.add(record.keyid)
            try:
                normalized = normalize_public_pem(record.key)
            except ValueError as exc:
                raise InvalidRegistry(
                    f"Key {record.keyid} is not a supported public key: {exc}"
                ) from exc
            if hashlib.sha256(normalized.encode("ascii")).hexdigest() != record.keyid:
                raise InvalidRegistry(f"Keyid {record.keyid} does not match its key")
        if self.threshold > len(self.keys):
            raise InvalidRegistry(
                f"Threshold {self.threshold} exceeds the {len(self.keys)} registered key(s)"
            )

    def check_expiry(self, now: datetime | None = None) -> None:
        """Raise :class:`RegistryExpired` if the registry is past ``expires``."""
        if self.expires is None:
            return
        now = now or datetime.now(tz=UTC)
        if now >= self.expires:
            raise RegistryExpired(
                f"Registry version {self.version} expired at {self.expires.isoformat()}"
            )

    def to_canonical_value(self) -> CanonicalValue:
        value: dict[bytes, CanonicalValue] = {
            b"threshold": self.threshold,
            b"keys": [record.to_canonical_value() for record in self.keys],
            b"version": self.version,
        }
        if self.expires is not None:
            value[b"expires"] = int(self.expires.timestamp())
        return value

    @classmethod
    def from_canonical_value(cls, value: CanonicalValue) -> TrustRegistry:
        mapping = as_map(value, "registry")
        threshold = as_int(
            field(mapping, b"threshold", "registry", _REGISTRY_FIELDS), "threshold"
        )
        keys = [
            PublicKeyRecord.from_canonical_value(item)
            for item in as_list(field(mapping, b"keys", "registry"), "registry keys")
        ]
        version = as_int(field(mapping, b"version", "registry"), "registry version")
        expires_at = None
        if b"expires" in mapping:
            expires_at = as_int(mapping[b"expires"], "expires")
        try:
            expires = (
                datetime.fromtimestamp(expires_at, tz=UTC)
                if expires_at is not None
                else None
            )
            return cls(threshold=threshold, keys=keys, version=version, expires=expires)
        except (ValueError, OverflowError, OSError) as exc:
            raise MalformedEncoding(f"Invalid registry: {exc}") from exc


# ---------------------------------------------------------------------------
# Signatures and signed statements
# ---------------------------------------------------------------------------


class Signature(BaseModel):
    """A signature by the key *keyid* over a canonical signing payload."""

    model_config = ConfigDict(frozen=True)

    keyid: str = Field(pattern=_HEX256)
    sig: str = Field(pattern=_HEX)

    @property
    def signature(self) -> bytes:
        return bytes.fromhex(self.sig)


PayloadT = TypeVar("PayloadT")


class SignedStatement(BaseModel, Generic[PayloadT]):
    """A signed payload (manifest or registry) and its detached signatures.

    Serialises to the JSON envelope
    ``{"signed": {...}, "signatures": [{"keyid": ..., "sig": ...}]}``.
    Signature order carries no meaning.
    """

    model_config = ConfigDict(frozen=True)

    signed: PayloadT
    signatures: tuple[Signature, ...] = ()

    def signer_keyids(self) -> frozenset[str]:
        return frozenset(sig.keyid for sig in self.signatures)

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(indent=indent)

    @classmethod
    def from_json(cls, raw: str | bytes) -> SignedStatement[PayloadT]:
        return cls.model_validate_json(raw)


SignedManifest = SignedStatement[Manifest]
SignedRegistry = SignedStatement[TrustRegistry]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class VerificationResult(BaseModel):
    """Details of a successful threshold verification."""

    required: int
    valid_keyids: list[str] = Field(default_factory=list)
    invalid_keyids: list[str] = Field(default_factory=list)
    ignored_keyids: list[str] = Field(default_factory=list)

    @property
    def got(self) -> int:
        return len(self.valid_keyids)


class FileStatus(str, Enum):
    """Result of comparing one manifest entry with the file on disk."""

    ok = "ok"
    modified = "modified"
    missing = "missing"
    unexpected = "unexpected"


class FileCheck(BaseModel):
    """On-disk status of a single path."""

    path: str
    status: FileStatus


__all__ = [
    "MANIFEST_FORMAT_VERSION",
    "FileCheck",
    "FileEntry",
    "FileStatus",
    "Manifest",
    "ManifestConfig",
    "PublicKeyRecord",
    "Signature",
    "SignatureAlgorithm",
    "SignedManifest",
    "SignedRegistry",
    "SignedStatement",
    "SymlinkPolicy",
    "TrustRegistry",
    "VerificationResult",
    "check_relative_path",
]
