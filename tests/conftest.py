"""Shared test fixtures for aumai-pkgseal."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from aumai_pkgseal.keys import KeyManager, SignatureAlgorithm, SigningKey
from aumai_pkgseal.manifest import ManifestBuilder
from aumai_pkgseal.models import Manifest, TrustRegistry
from aumai_pkgseal.registry import bootstrap

# ---------------------------------------------------------------------------
# Key fixtures
# ---------------------------------------------------------------------------


def _new_key(algorithm: SignatureAlgorithm = SignatureAlgorithm.ed25519) -> SigningKey:
    private_pem, _ = KeyManager().generate_keypair(algorithm)
    return SigningKey.from_pem(private_pem)


@pytest.fixture(scope="session")
def key_manager() -> KeyManager:
    """A shared KeyManager instance (stateless, safe to share)."""
    return KeyManager()


@pytest.fixture(scope="session")
def key_a() -> SigningKey:
    return _new_key()


@pytest.fixture(scope="session")
def key_b() -> SigningKey:
    return _new_key()


@pytest.fixture(scope="session")
def key_c() -> SigningKey:
    return _new_key()


@pytest.fixture(scope="session")
def key_d() -> SigningKey:
    """A key that is never registered anywhere."""
    return _new_key()


@pytest.fixture(scope="session")
def ecdsa_key() -> SigningKey:
    return _new_key(SignatureAlgorithm.ecdsa_p256)


@pytest.fixture(scope="session")
def rsa_key() -> SigningKey:
    return _new_key(SignatureAlgorithm.rsa)


# ---------------------------------------------------------------------------
# Registry fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def registry_abc(key_a: SigningKey, key_b: SigningKey, key_c: SigningKey) -> TrustRegistry:
    """threshold=2 over keys {A, B, C}."""
    return bootstrap([key_a.public_pem, key_b.public_pem, key_c.public_pem], threshold=2)


@pytest.fixture()
def registry_ab(key_a: SigningKey, key_b: SigningKey) -> TrustRegistry:
    """threshold=2 over keys {A, B}."""
    return bootstrap([key_a.public_pem, key_b.public_pem], threshold=2)


# ---------------------------------------------------------------------------
# Package-directory fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def package_dir(tmp_path: Path) -> Path:
    """A temporary directory that looks like a small package.

    Structure:
        composer.json: minimal JSON metadata
        src/Lib.php: 256 bytes
        src/util/a.bin: 128 bytes
    """
    root = tmp_path / "package"
    root.mkdir()
    (root / "composer.json").write_text(
        json.dumps({"name": "acme/lib", "version": "1.0.0"}), encoding="utf-8"
    )
    src = root / "src"
    src.mkdir()
    (src / "Lib.php").write_bytes(bytes(range(256)))
    util = src / "util"
    util.mkdir()
    (util / "a.bin").write_bytes(bytes(range(128)))
    return root


@pytest.fixture()
def empty_package_dir(tmp_path: Path) -> Path:
    """A package directory with no files (edge case)."""
    empty = tmp_path / "empty"
    empty.mkdir()
    return empty


@pytest.fixture()
def manifest(package_dir: Path) -> Manifest:
    return ManifestBuilder().build(package_dir)
