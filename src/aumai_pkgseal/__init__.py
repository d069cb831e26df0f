"""aumai-pkgseal: Threshold signing and verification for distributable packages."""

from aumai_pkgseal.canonical import CanonicalValue, decode, encode
from aumai_pkgseal.errors import (
    BuildCancelled,
    InvalidRegistry,
    MalformedEncoding,
    ManifestIOError,
    PackageSealError,
    RegistryExpired,
    RotationConflict,
    RotationError,
    ThresholdNotMet,
    UnknownSignatureFormat,
    UnsafePath,
    VerificationError,
)
from aumai_pkgseal.keys import (
    KeyManager,
    SignatureAlgorithm,
    SigningKey,
    SigningKeyHandle,
    derive_keyid,
)
from aumai_pkgseal.manifest import (
    FilesystemSource,
    ManifestBuilder,
    MemorySource,
    verify_files,
)
from aumai_pkgseal.models import (
    FileCheck,
    FileEntry,
    FileStatus,
    Manifest,
    ManifestConfig,
    PublicKeyRecord,
    Signature,
    SignedManifest,
    SignedRegistry,
    SignedStatement,
    SymlinkPolicy,
    TrustRegistry,
    VerificationResult,
)
from aumai_pkgseal.registry import (
    RegistryStore,
    apply_rotation,
    bootstrap,
    follow_rotations,
    propose_rotation,
)
from aumai_pkgseal.signing import add_signatures, sign, signing_payload, verify

__version__ = "0.1.0"

__all__ = [
    "BuildCancelled",
    "CanonicalValue",
    "FileCheck",
    "FileEntry",
    "FileStatus",
    "FilesystemSource",
    "InvalidRegistry",
    "KeyManager",
    "MalformedEncoding",
    "Manifest",
    "ManifestBuilder",
    "ManifestConfig",
    "ManifestIOError",
    "MemorySource",
    "PackageSealError",
    "PublicKeyRecord",
    "RegistryExpired",
    "RegistryStore",
    "RotationConflict",
    "RotationError",
    "Signature",
    "SignatureAlgorithm",
    "SignedManifest",
    "SignedRegistry",
    "SignedStatement",
    "SigningKey",
    "SigningKeyHandle",
    "SymlinkPolicy",
    "ThresholdNotMet",
    "TrustRegistry",
    "UnknownSignatureFormat",
    "UnsafePath",
    "VerificationError",
    "VerificationResult",
    "add_signatures",
    "apply_rotation",
    "bootstrap",
    "decode",
    "derive_keyid",
    "encode",
    "follow_rotations",
    "propose_rotation",
    "sign",
    "signing_payload",
    "verify",
    "verify_files",
]
