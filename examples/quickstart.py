"""aumai-pkgseal quickstart: threshold signing, verification and key rotation.

Run this file directly to see the library in action:

    python examples/quickstart.py

Each demo creates its own temporary directory and cleans up after itself.
"""

from __future__ import annotations

import json
import tempfile
from pathlib import Path

from aumai_pkgseal import (
    KeyManager,
    ManifestBuilder,
    SignatureAlgorithm,
    SigningKey,
    ThresholdNotMet,
    add_signatures,
    apply_rotation,
    bootstrap,
    propose_rotation,
    sign,
    verify,
    verify_files,
)


def _make_package(root: Path) -> Path:
    package = root / "acme-lib"
    (package / "src").mkdir(parents=True)
    (package / "composer.json").write_text(
        json.dumps({"name": "acme/lib", "version": "1.0.0"}), encoding="utf-8"
    )
    (package / "src" / "Lib.php").write_text("<?php\nclass Lib {}\n", encoding="utf-8")
    return package


def _new_key(algorithm: SignatureAlgorithm = SignatureAlgorithm.ed25519) -> SigningKey:
    private_pem, _ = KeyManager().generate_keypair(algorithm)
    return SigningKey.from_pem(private_pem)


# ---------------------------------------------------------------------------
# Demo 1: 2-of-3 threshold signing
# ---------------------------------------------------------------------------

def demo_threshold_signing() -> None:
    """Sign a package with two of three maintainer keys and verify it."""

    print("\n=== Demo 1: 2-of-3 Threshold Signing ===")

    with tempfile.TemporaryDirectory() as tmpdir:
        package = _make_package(Path(tmpdir))
        alice, bob, carol = _new_key(), _new_key(SignatureAlgorithm.ecdsa_p256), _new_key()

        registry = bootstrap([k.public_pem for k in (alice, bob, carol)], threshold=2)
        print(f"  Registry v{registry.version}: {len(registry.keys)} keys, "
              f"threshold {registry.threshold}")

        manifest = ManifestBuilder().build(package)
        print(f"  Manifest: {len(manifest.files)} files, {manifest.total_size} bytes")

        statement = sign(manifest, registry, [alice])
        try:
            verify(statement, registry)
        except ThresholdNotMet as exc:
            print(f"  With one signature : {exc}")

        statement = add_signatures(statement, registry, [bob])
        result = verify(statement, registry)
        print(f"  With two signatures: {result.got} of {result.required} valid")


# ---------------------------------------------------------------------------
# Demo 2: Tamper detection
# ---------------------------------------------------------------------------

def demo_tamper_detection() -> None:
    """Show that on-disk changes are reported file by file."""

    print("\n=== Demo 2: Tamper Detection ===")

    with tempfile.TemporaryDirectory() as tmpdir:
        package = _make_package(Path(tmpdir))
        maintainer = _new_key()
        registry = bootstrap([maintainer.public_pem], threshold=1)
        statement = sign(ManifestBuilder().build(package), registry, [maintainer])

        (package / "src" / "Lib.php").write_text("<?php evil();\n", encoding="utf-8")
        (package / "src" / "Backdoor.php").write_text("<?php\n", encoding="utf-8")

        verify(statement, registry)
        print("  Signature still valid; comparing with files on disk:")
        for check in verify_files(package, statement.signed):
            print(f"    [{check.status.value.upper():10}] {check.path}")


# ---------------------------------------------------------------------------
# Demo 3: Key rotation
# ---------------------------------------------------------------------------

def demo_key_rotation() -> None:
    """Rotate a compromised key out; the old threshold must approve."""

    print("\n=== Demo 3: Key Rotation ===")

    alice, bob, carol, dave = _new_key(), _new_key(), _new_key(), _new_key()
    registry = bootstrap([k.public_pem for k in (alice, bob, carol)], threshold=2)

    proposal = propose_rotation(registry, add=[dave.public_pem], remove=[carol.keyid])
    print(f"  Proposed v{proposal.version}: drop carol, add dave")

    try:
        apply_rotation(registry, sign(proposal, registry, [dave]))
    except ThresholdNotMet as exc:
        print(f"  Signed only by the new key: rejected ({exc})")

    rotated = apply_rotation(registry, sign(proposal, registry, [alice, bob]))
    print(f"  Signed by alice and bob: registry is now v{rotated.version}")
    print(f"  Carol still trusted? {carol.keyid in rotated.keyids()}")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    """Run all demos."""
    print("aumai-pkgseal quickstart")
    print("=" * 40)

    demo_threshold_signing()
    demo_tamper_detection()
    demo_key_rotation()

    print("\nAll demos completed successfully.")


if __name__ == "__main__":
    main()
