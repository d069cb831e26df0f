"""Tests for aumai_pkgseal.models: Pydantic model validation."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from aumai_pkgseal.canonical import decode, encode
from aumai_pkgseal.errors import InvalidRegistry, MalformedEncoding, RegistryExpired
from aumai_pkgseal.keys import SignatureAlgorithm, SigningKey
from aumai_pkgseal.models import (
    FileEntry,
    Manifest,
    ManifestConfig,
    PublicKeyRecord,
    Signature,
    SignedManifest,
    SignedRegistry,
    SymlinkPolicy,
    TrustRegistry,
    VerificationResult,
    check_relative_path,
)

_HASH = "ab" * 32


def _entry(path: str, size: int = 1) -> FileEntry:
    return FileEntry(path=path, hash=_HASH, size=size)


# ===========================================================================
# Paths and file entries
# ===========================================================================


class TestCheckRelativePath:
    @pytest.mark.parametrize("path", ["a", "src/Lib.php", ".hidden", "a/..b/c", "ünï.txt"])
    def test_accepts(self, path: str) -> None:
        assert check_relative_path(path) == path

    @pytest.mark.parametrize(
        "path",
        [
            "",
            "/etc/passwd",
            "a\\b",
            "a//b",
            "a/",
            "./a",
            "a/./b",
            "../a",
            "a/..",
            "a\x00b",
            "bad\udcffname",
        ],
    )
    def test_rejects(self, path: str) -> None:
        with pytest.raises(ValueError):
            check_relative_path(path)


class TestFileEntry:
    def test_valid(self) -> None:
        entry = _entry("src/a.php", size=10)
        assert entry.digest == bytes.fromhex(_HASH)

    def test_uppercase_hash_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FileEntry(path="a", hash=_HASH.upper(), size=1)

    def test_short_hash_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FileEntry(path="a", hash="ab", size=1)

    def test_negative_size_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FileEntry(path="a", hash=_HASH, size=-1)

    def test_unsafe_path_rejected(self) -> None:
        with pytest.raises(ValidationError):
            FileEntry(path="../a", hash=_HASH, size=1)

    def test_is_frozen(self) -> None:
        entry = _entry("a")
        with pytest.raises(ValidationError):
            entry.size = 2  # type: ignore[misc]


class TestManifestConfig:
    def test_defaults(self) -> None:
        config = ManifestConfig()
        assert config.symlinks == SymlinkPolicy.reject
        assert config.exclude == []
        assert config.chunk_size == 65536

    def test_zero_chunk_size_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ManifestConfig(chunk_size=0)

    def test_symlink_policy_from_string(self) -> None:
        assert ManifestConfig(symlinks="skip").symlinks == SymlinkPolicy.skip  # type: ignore[arg-type]


# ===========================================================================
# Manifest
# ===========================================================================


class TestManifestModel:
    def test_empty_manifest(self) -> None:
        manifest = Manifest()
        assert manifest.version == 1
        assert manifest.files == ()
        assert manifest.total_size == 0

    def test_sorted_paths_accepted(self) -> None:
        manifest = Manifest(files=[_entry("a", 2), _entry("b/c", 3)])
        assert manifest.total_size == 5

    def test_unsorted_paths_rejected(self) -> None:
        with pytest.raises(ValidationError, match="unique and sorted"):
            Manifest(files=[_entry("b"), _entry("a")])

    def test_duplicate_paths_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Manifest(files=[_entry("a"), _entry("a")])

    def test_order_is_by_code_point(self) -> None:
        Manifest(files=[_entry("B"), _entry("a")])
        with pytest.raises(ValidationError):
            Manifest(files=[_entry("a"), _entry("B")])

    def test_get(self) -> None:
        manifest = Manifest(files=[_entry("a"), _entry("b")])
        assert manifest.get("b") == _entry("b")
        assert manifest.get("c") is None

    def test_from_canonical_rejects_non_map(self) -> None:
        with pytest.raises(MalformedEncoding, match="must be a map"):
            Manifest.from_canonical_value([])


# ===========================================================================
# PublicKeyRecord and TrustRegistry
# ===========================================================================


class TestPublicKeyRecord:
    def test_from_pem(self, key_a: SigningKey) -> None:
        record = PublicKeyRecord.from_pem(key_a.public_pem + "\n")
        assert record.keyid == key_a.keyid
        assert record.key == key_a.public_pem
        assert record.algorithm == SignatureAlgorithm.ed25519

    def test_canonical_keyid_is_raw_bytes(self, key_a: SigningKey) -> None:
        value = PublicKeyRecord.from_pem(key_a.public_pem).to_canonical_value()
        assert isinstance(value, dict)
        assert value[b"keyid"] == bytes.fromhex(key_a.keyid)

    def test_canonical_round_trip(self, rsa_key: SigningKey) -> None:
        record = PublicKeyRecord.from_pem(rsa_key.public_pem)
        assert PublicKeyRecord.from_canonical_value(decode(encode(record.to_canonical_value()))) == record

    def test_short_keyid_rejected(self) -> None:
        with pytest.raises(MalformedEncoding):
            PublicKeyRecord.from_canonical_value({b"keyid": b"\x01", b"key": b"pem"})


class TestTrustRegistryModel:
    def test_keys_sorted_by_keyid(self, registry_abc: TrustRegistry) -> None:
        keyids = [record.keyid for record in registry_abc.keys]
        assert keyids == sorted(keyids)

    def test_key_order_does_not_affect_equality(
        self, key_a: SigningKey, key_b: SigningKey
    ) -> None:
        a = PublicKeyRecord.from_pem(key_a.public_pem)
        b = PublicKeyRecord.from_pem(key_b.public_pem)
        assert TrustRegistry(threshold=1, keys=[a, b]) == TrustRegistry(threshold=1, keys=[b, a])

    def test_keyids_and_get_key(self, registry_ab: TrustRegistry, key_a: SigningKey) -> None:
        assert key_a.keyid in registry_ab.keyids()
        record = registry_ab.get_key(key_a.keyid)
        assert record is not None
        assert record.key == key_a.public_pem
        assert registry_ab.get_key("00" * 32) is None

    def test_version_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            TrustRegistry(threshold=1, version=0)

    def test_naive_expiry_rejected(self) -> None:
        with pytest.raises(ValidationError, match="timezone-aware"):
            TrustRegistry(threshold=1, expires=datetime(2030, 1, 1))

    def test_expiry_normalized_to_utc_seconds(self) -> None:
        local = timezone(timedelta(hours=2))
        registry = TrustRegistry(
            threshold=1, expires=datetime(2030, 1, 1, 12, 0, 0, 999, tzinfo=local)
        )
        assert registry.expires == datetime(2030, 1, 1, 10, 0, 0, tzinfo=UTC)
        assert registry.expires is not None
        assert registry.expires.microsecond == 0


class TestTrustRegistryCheck:
    def test_valid_registry_passes(self, registry_abc: TrustRegistry) -> None:
        registry_abc.check()

    def test_zero_threshold(self, key_a: SigningKey) -> None:
        registry = TrustRegistry(threshold=0, keys=[PublicKeyRecord.from_pem(key_a.public_pem)])
        with pytest.raises(InvalidRegistry, match="positive"):
            registry.check()

    def test_threshold_above_key_count(self, registry_ab: TrustRegistry) -> None:
        registry = registry_ab.model_copy(update={"threshold": 3})
        with pytest.raises(InvalidRegistry, match="exceeds"):
            registry.check()

    def test_empty_registry(self) -> None:
        with pytest.raises(InvalidRegistry):
            TrustRegistry(threshold=1).check()

    def test_duplicate_keyid(self, key_a: SigningKey) -> None:
        record = PublicKeyRecord.from_pem(key_a.public_pem)
        with pytest.raises(InvalidRegistry, match="Duplicate"):
            TrustRegistry(threshold=1, keys=[record, record]).check()

    def test_keyid_mismatch(self, key_a: SigningKey, key_b: SigningKey) -> None:
        forged = PublicKeyRecord(keyid=key_a.keyid, key=key_b.public_pem)
        with pytest.raises(InvalidRegistry, match="does not match"):
            TrustRegistry(threshold=1, keys=[forged]).check()

    def test_unparseable_key(self) -> None:
        broken = PublicKeyRecord(keyid="00" * 32, key="not a key")
        with pytest.raises(InvalidRegistry, match="not a supported public key"):
            TrustRegistry(threshold=1, keys=[broken]).check()

    def test_invalid_registry_is_value_error(self) -> None:
        with pytest.raises(ValueError):
            TrustRegistry(threshold=1).check()


class TestTrustRegistryExpiry:
    def test_no_expiry_never_expires(self, registry_ab: TrustRegistry) -> None:
        registry_ab.check_expiry(datetime(9999, 1, 1, tzinfo=UTC))

    def test_before_expiry(self, registry_ab: TrustRegistry) -> None:
        registry = registry_ab.model_copy(
            update={"expires": datetime(2030, 1, 1, tzinfo=UTC)}
        )
        registry.check_expiry(datetime(2029, 12, 31, tzinfo=UTC))

    def test_at_expiry(self, registry_ab: TrustRegistry) -> None:
        registry = registry_ab.model_copy(
            update={"expires": datetime(2030, 1, 1, tzinfo=UTC)}
        )
        with pytest.raises(RegistryExpired):
            registry.check_expiry(datetime(2030, 1, 1, tzinfo=UTC))

    def test_expired_is_invalid_registry(self) -> None:
        registry = TrustRegistry(threshold=1, expires=datetime(2000, 1, 1, tzinfo=UTC))
        with pytest.raises(InvalidRegistry):
            registry.check_expiry()


class TestTrustRegistryCanonicalValue:
    def test_round_trip(self, registry_abc: TrustRegistry) -> None:
        restored = TrustRegistry.from_canonical_value(decode(encode(registry_abc.to_canonical_value())))
        assert restored == registry_abc

    def test_expiry_as_unix_seconds(self, registry_ab: TrustRegistry) -> None:
        registry = TrustRegistry(
            threshold=registry_ab.threshold,
            keys=registry_ab.keys,
            expires=datetime(2030, 1, 1, tzinfo=UTC),
        )
        value = registry.to_canonical_value()
        assert isinstance(value, dict)
        assert value[b"expires"] == 1893456000
        assert TrustRegistry.from_canonical_value(value) == registry

    def test_no_expiry_field_when_unset(self, registry_ab: TrustRegistry) -> None:
        value = registry_ab.to_canonical_value()
        assert isinstance(value, dict)
        assert b"expires" not in value

    def test_unknown_field_rejected(self, registry_ab: TrustRegistry) -> None:
        value = registry_ab.to_canonical_value()
        assert isinstance(value, dict)
        value[b"owner"] = b"me"
        with pytest.raises(MalformedEncoding, match="unexpected fields"):
            TrustRegistry.from_canonical_value(value)

    def test_keys_must_be_list(self) -> None:
        with pytest.raises(MalformedEncoding, match="must be a list"):
            TrustRegistry.from_canonical_value({b"threshold": 1, b"keys": {}, b"version": 1})


# ===========================================================================
# Signatures and envelopes
# ===========================================================================


class TestSignature:
    def test_signature_bytes(self) -> None:
        sig = Signature(keyid="00" * 32, sig="deadbeef")
        assert sig.signature == b"\xde\xad\xbe\xef"

    def test_odd_length_hex_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Signature(keyid="00" * 32, sig="abc")

    def test_non_hex_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Signature(keyid="00" * 32, sig="zz")


class TestSignedStatementEnvelope:
    def test_json_shape(self) -> None:
        statement = SignedManifest(
            signed=Manifest(files=[_entry("a")]),
            signatures=[Signature(keyid="11" * 32, sig="00")],
        )
        data = json.loads(statement.to_json())
        assert set(data) == {"signed", "signatures"}
        assert data["signatures"] == [{"keyid": "11" * 32, "sig": "00"}]
        assert data["signed"]["files"][0]["path"] == "a"

    def test_json_round_trip(self, registry_abc: TrustRegistry) -> None:
        statement = SignedRegistry(signed=registry_abc)
        assert SignedRegistry.from_json(statement.to_json()) == statement

    def test_signer_keyids(self) -> None:
        statement = SignedManifest(
            signed=Manifest(),
            signatures=[
                Signature(keyid="11" * 32, sig="00"),
                Signature(keyid="11" * 32, sig="01"),
                Signature(keyid="22" * 32, sig="02"),
            ],
        )
        assert statement.signer_keyids() == {"11" * 32, "22" * 32}

    def test_malformed_json_rejected(self) -> None:
        with pytest.raises(ValidationError):
            SignedManifest.from_json('{"signed": {"files": "nope"}}')


class TestVerificationResult:
    def test_got_counts_valid_keyids(self) -> None:
        result = VerificationResult(required=2, valid_keyids=["a", "b"], ignored_keyids=["c"])
        assert result.got == 2
