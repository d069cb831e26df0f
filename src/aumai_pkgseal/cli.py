"""CLI entry point for aumai-pkgseal."""

from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

import click

from aumai_pkgseal.errors import (
    InvalidRegistry,
    MalformedEncoding,
    ThresholdNotMet,
    VerificationError,
)
from aumai_pkgseal.keys import KeyManager, SignatureAlgorithm, derive_keyid
from aumai_pkgseal.manifest import ManifestBuilder, verify_files
from aumai_pkgseal.models import (
    FileStatus,
    ManifestConfig,
    SignedManifest,
    SignedRegistry,
    SymlinkPolicy,
    TrustRegistry,
)
from aumai_pkgseal.registry import RegistryStore, bootstrap, propose_rotation
from aumai_pkgseal.signing import add_signatures, sign, verify

DEFAULT_EXCLUDES = [".git"]
_TRUST_FAILURES = (VerificationError, InvalidRegistry, MalformedEncoding)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _passphrase_bytes(passphrase: str | None) -> bytes | None:
    return passphrase.encode("utf-8") if passphrase else None


def _load_signed_manifest(path: str) -> SignedManifest:
    raw = Path(path).read_text(encoding="utf-8")
    return SignedManifest.model_validate_json(raw)


def _load_signed_registry(path: str) -> SignedRegistry:
    raw = Path(path).read_text(encoding="utf-8")
    return SignedRegistry.model_validate_json(raw)


def _load_registry(path: str) -> TrustRegistry:
    if not Path(path).exists():
        raise FileNotFoundError(f"Registry file not found: {path}")
    return RegistryStore(path).current


def _manifest_config(
    exclude: tuple[str, ...], symlinks: str, extra: list[str] | None = None
) -> ManifestConfig:
    return ManifestConfig(
        symlinks=SymlinkPolicy(symlinks),
        exclude=[*DEFAULT_EXCLUDES, *exclude, *(extra or [])],
    )


def _threshold_status(
    statement: SignedManifest | SignedRegistry, registry: TrustRegistry
) -> None:
    try:
        result = verify(statement, registry)
    except ThresholdNotMet as exc:
        click.echo(f"  Valid    : {exc.got} of {exc.required} required signature(s)")
        click.echo(
            "Warning: the signature threshold is not yet met; "
            "collect more signatures before publishing.",
            err=True,
        )
        return
    click.echo(f"  Valid    : {result.got} of {result.required} required signature(s)")


def _symlink_option(func):  # type: ignore[no-untyped-def]
    return click.option(
        "--symlinks",
        type=click.Choice([policy.value for policy in SymlinkPolicy]),
        default=SymlinkPolicy.reject.value,
        show_default=True,
        help="How to treat symbolic links inside the package.",
    )(func)


def _exclude_option(func):  # type: ignore[no-untyped-def]
    return click.option(
        "--exclude",
        multiple=True,
        metavar="GLOB",
        help="Relative path pattern to leave out of the manifest (repeatable).",
    )(func)


def _passphrase_option(func):  # type: ignore[no-untyped-def]
    return click.option(
        "--passphrase",
        envvar="PKGSEAL_PASSPHRASE",
        default=None,
        help="Passphrase of an encrypted private key (env: PKGSEAL_PASSPHRASE).",
    )(func)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


@click.group()
@click.version_option()
@click.option("-v", "--verbose", count=True, help="Increase log verbosity.")
def main(verbose: int) -> None:
    """AumAI PkgSeal: threshold signing for distributable packages."""
    level = logging.WARNING - 10 * min(verbose, 2)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


@main.command("keygen")
@click.option(
    "--output",
    default="keys",
    show_default=True,
    metavar="DIR",
    help="Directory to write the PEM key pair.",
)
@click.option(
    "--algorithm",
    type=click.Choice([algo.value for algo in SignatureAlgorithm], case_sensitive=False),
    default="ed25519",
    show_default=True,
    help="Signing algorithm.",
)
@click.option("--prefix", default="", help="File prefix, e.g. 'dev' for dev-private.pem.")
@_passphrase_option
def keygen_command(output: str, algorithm: str, prefix: str, passphrase: str | None) -> None:
    """Generate a developer key pair for signing packages."""
    algo = SignatureAlgorithm(algorithm.lower())
    km = KeyManager()
    private_pem, public_pem = km.generate_keypair(algo, _passphrase_bytes(passphrase))
    private_path, public_path = km.save_keypair(private_pem, public_pem, output, prefix)
    click.echo(f"Key pair ({algo.value}) written to '{output}/'")
    click.echo(f"  Private: {private_path}")
    click.echo(f"  Public : {public_path}")
    click.echo(f"  KeyId  : {derive_keyid(public_pem)}")
    if passphrase is None:
        click.echo(
            "Warning: the private key is not encrypted; "
            "set a passphrase and keep the key offline.",
            err=True,
        )


@main.command("keyid")
@click.argument("public_key", metavar="PUBLIC_KEY")
def keyid_command(public_key: str) -> None:
    """Print the KeyId of a PEM public key file."""
    try:
        click.echo(derive_keyid(Path(public_key).read_bytes()))
    except Exception as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)


@main.command("manifest")
@click.option("--package-dir", required=True, metavar="DIR", help="Package root.")
@_exclude_option
@_symlink_option
def manifest_command(package_dir: str, exclude: tuple[str, ...], symlinks: str) -> None:
    """Print the manifest of a package directory as JSON."""
    try:
        manifest = ManifestBuilder(_manifest_config(exclude, symlinks)).build(package_dir)
    except Exception as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(manifest.model_dump_json(indent=2))


@main.command("sign")
@click.option("--package-dir", required=True, metavar="DIR", help="Package root.")
@click.option("--registry", "registry_path", required=True, metavar="PATH",
              help="Signed key registry JSON.")
@click.option("--key", required=True, metavar="PATH", help="Private PEM key file.")
@click.option(
    "--output",
    default=None,
    metavar="PATH",
    help="Signed manifest path (default: <package-dir>/manifest.json).",
)
@_exclude_option
@_symlink_option
@_passphrase_option
def sign_command(
    package_dir: str,
    registry_path: str,
    key: str,
    output: str | None,
    exclude: tuple[str, ...],
    symlinks: str,
    passphrase: str | None,
) -> None:
    """Sign a package directory, adding to any existing signatures."""
    out_path = Path(output) if output else Path(package_dir) / "manifest.json"
    extra: list[str] = []
    try:
        extra.append(out_path.resolve().relative_to(Path(package_dir).resolve()).as_posix())
    except ValueError:
        pass  # output lives outside the package

    try:
        registry = _load_registry(registry_path)
        handle = KeyManager().load_private_key(key, _passphrase_bytes(passphrase))
        manifest = ManifestBuilder(_manifest_config(exclude, symlinks, extra)).build(
            package_dir
        )
        existing = _load_signed_manifest(str(out_path)) if out_path.exists() else None
        if existing is not None and existing.signed == manifest:
            signed = add_signatures(existing, registry, [handle])
        else:
            if existing is not None:
                click.echo("Package contents changed; discarding earlier signatures.")
            signed = sign(manifest, registry, [handle])
    except Exception as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    out_path.write_text(signed.to_json(), encoding="utf-8")
    click.echo(f"Signed manifest written to: {out_path}")
    click.echo(f"  Files    : {len(manifest.files)}")
    click.echo(f"  Total    : {manifest.total_size:,} bytes")
    click.echo(f"  Signer   : {handle.keyid}")
    click.echo(f"  Signers  : {len(signed.signatures)}")
    _threshold_status(signed, registry)


@main.command("verify")
@click.option("--manifest", "manifest_path", required=True, metavar="PATH",
              help="Signed manifest JSON.")
@click.option("--registry", "registry_path", required=True, metavar="PATH",
              help="Signed key registry JSON.")
@click.option(
    "--package-dir",
    default=None,
    metavar="DIR",
    help="If supplied, also compare the manifest with the files on disk.",
)
@_exclude_option
@_symlink_option
def verify_command(
    manifest_path: str,
    registry_path: str,
    package_dir: str | None,
    exclude: tuple[str, ...],
    symlinks: str,
) -> None:
    """Verify a signed manifest against the key registry's threshold."""
    try:
        signed = _load_signed_manifest(manifest_path)
        registry = _load_registry(registry_path)
    except Exception as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    try:
        result = verify(signed, registry)
    except _TRUST_FAILURES as exc:
        click.echo(f"Signature: INVALID — {exc}")
        sys.exit(2)

    click.echo("Signature: VALID")
    click.echo(f"  Signers  : {result.got} of {result.required} required")
    for keyid in result.valid_keyids:
        click.echo(f"    {keyid}")
    if result.ignored_keyids:
        click.echo(f"  Ignored  : {len(result.ignored_keyids)} untrusted signature(s)")

    if package_dir is None:
        return

    click.echo("\nVerifying on-disk files...")
    extra: list[str] = []
    try:
        extra.append(
            Path(manifest_path).resolve().relative_to(Path(package_dir).resolve()).as_posix()
        )
    except ValueError:
        pass  # manifest lives outside the package
    try:
        checks = verify_files(
            package_dir, signed.signed, _manifest_config(exclude, symlinks, extra)
        )
    except Exception as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    all_ok = True
    for check in checks:
        click.echo(f"  [{check.status.value.upper()}] {check.path}")
        if check.status != FileStatus.ok:
            all_ok = False
    if all_ok:
        click.echo("All files verified successfully.")
    else:
        click.echo("One or more files failed verification.", err=True)
        sys.exit(2)


@main.command("inspect")
@click.option("--manifest", "manifest_path", required=True, metavar="PATH",
              help="Signed manifest JSON.")
@click.option("--json-output", is_flag=True, help="Emit raw JSON.")
def inspect_command(manifest_path: str, json_output: bool) -> None:
    """Display the contents of a signed manifest."""
    try:
        signed = _load_signed_manifest(manifest_path)
    except Exception as exc:
        click.echo(f"Error loading manifest: {exc}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(signed.to_json())
        return

    m = signed.signed
    click.echo(f"Format       : {m.version}")
    click.echo(f"Total Size   : {m.total_size:,} bytes")
    click.echo(f"Files        : {len(m.files)}")
    click.echo(f"Signatures   : {len(signed.signatures)}")
    for sig in signed.signatures:
        click.echo(f"  {sig.keyid}")
    click.echo("\nFiles in manifest:")
    for entry in m.files:
        click.echo(f"  {entry.path}  ({entry.size:,} bytes)  sha256:{entry.hash[:16]}...")


# ---------------------------------------------------------------------------
# Registry commands
# ---------------------------------------------------------------------------


@main.group("registry")
def registry_group() -> None:
    """Manage the threshold-signed key registry."""


@registry_group.command("init")
@click.option("--key", "keys", multiple=True, required=True, metavar="PATH",
              help="Public PEM key to trust (repeatable).")
@click.option("--threshold", default=1, show_default=True, type=int,
              help="Signatures required for manifests and registry changes.")
@click.option("--expires", type=click.DateTime(), default=None,
              help="UTC time after which the registry is no longer trusted.")
@click.option("--output", default="keys.json", show_default=True, metavar="PATH")
def registry_init_command(
    keys: tuple[str, ...], threshold: int, expires: datetime | None, output: str
) -> None:
    """Create the bootstrap registry (the trust anchor)."""
    try:
        store = RegistryStore(output)
        if store.initialized:
            raise click.ClickException(f"{output} already exists; use 'registry propose'")
        registry = bootstrap(
            [Path(path).read_bytes() for path in keys],
            threshold,
            expires=expires.replace(tzinfo=UTC) if expires else None,
        )
        store.initialize(registry)
    except click.ClickException:
        raise
    except Exception as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    click.echo(f"Registry written to: {output}")
    click.echo(f"  Keys     : {len(registry.keys)}")
    click.echo(f"  Threshold: {registry.threshold}")
    click.echo("Distribute this file to verifiers through a trusted channel.")


@registry_group.command("propose")
@click.option("--registry", "registry_path", required=True, metavar="PATH")
@click.option("--add", "add_keys", multiple=True, metavar="PATH",
              help="Public PEM key to add (repeatable).")
@click.option("--remove", "remove_keyids", multiple=True, metavar="KEYID",
              help="KeyId to remove (repeatable).")
@click.option("--threshold", default=None, type=int, help="New threshold.")
@click.option("--output", default="rotation.json", show_default=True, metavar="PATH")
def registry_propose_command(
    registry_path: str,
    add_keys: tuple[str, ...],
    remove_keyids: tuple[str, ...],
    threshold: int | None,
    output: str,
) -> None:
    """Write an unsigned rotation proposal for the registry."""
    try:
        current = _load_registry(registry_path)
        proposed = propose_rotation(
            current,
            add=[Path(path).read_bytes() for path in add_keys],
            remove=remove_keyids,
            threshold=threshold,
        )
    except Exception as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    Path(output).write_text(SignedRegistry(signed=proposed).to_json(), encoding="utf-8")
    click.echo(f"Rotation to version {proposed.version} written to: {output}")
    click.echo(
        f"  Needs {current.threshold} signature(s) from the current registry's keys."
    )


@registry_group.command("sign")
@click.option("--rotation", "rotation_path", required=True, metavar="PATH")
@click.option("--registry", "registry_path", required=True, metavar="PATH")
@click.option("--key", required=True, metavar="PATH", help="Private PEM key file.")
@_passphrase_option
def registry_sign_command(
    rotation_path: str, registry_path: str, key: str, passphrase: str | None
) -> None:
    """Add a signature to a rotation proposal."""
    try:
        current = _load_registry(registry_path)
        handle = KeyManager().load_private_key(key, _passphrase_bytes(passphrase))
        if handle.keyid not in current.keyids():
            raise ValueError(
                "The matching public key is not registered in the current registry; "
                "only registered keys may approve changes."
            )
        statement = _load_signed_registry(rotation_path)
        signed = add_signatures(statement, current, [handle])
    except Exception as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)
    Path(rotation_path).write_text(signed.to_json(), encoding="utf-8")
    click.echo(f"Rotation signed by: {handle.keyid}")
    _threshold_status(signed, current)


@registry_group.command("apply")
@click.option("--rotation", "rotation_path", required=True, metavar="PATH")
@click.option("--registry", "registry_path", required=True, metavar="PATH")
def registry_apply_command(rotation_path: str, registry_path: str) -> None:
    """Verify a signed rotation and make it the current registry."""
    try:
        if not Path(registry_path).exists():
            raise FileNotFoundError(f"Registry file not found: {registry_path}")
        store = RegistryStore(registry_path)
        statement = _load_signed_registry(rotation_path)
    except Exception as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    try:
        registry = store.rotate(statement)
    except Exception as exc:
        click.echo(f"Rotation: REJECTED — {exc}")
        sys.exit(2)
    click.echo(f"Registry rotated to version {registry.version}")
    click.echo(f"  Keys     : {len(registry.keys)}")
    click.echo(f"  Threshold: {registry.threshold}")


if __name__ == "__main__":
    main()
