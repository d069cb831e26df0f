"""Exception hierarchy for aumai-pkgseal.

Every failure surfaced by the library derives from :class:`PackageSealError`
so callers can catch the whole family or one precise case.  Where a builtin
exception already describes the category (``ValueError`` for bad input,
``OSError`` for I/O) the subclass inherits from it as well.
"""

from __future__ import annotations


class PackageSealError(Exception):
    """Base exception for aumai-pkgseal."""


class MalformedEncoding(PackageSealError, ValueError):
    """Bytes or a logical object could not be read as a canonical value."""

    def __init__(self, message: str, offset: int | None = None) -> None:
        if offset is not None:
            message = f"{message} (at byte {offset})"
        super().__init__(message)
        self.offset = offset


class ManifestIOError(PackageSealError, OSError):
    """A file could not be read while building a manifest."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class BuildCancelled(ManifestIOError):
    """The caller cancelled a manifest build; no partial manifest exists."""


class UnsafePath(ManifestIOError):
    """A path was rejected because it leaves the package root or is a symlink."""


class InvalidRegistry(PackageSealError, ValueError):
    """A trust registry violates its own invariants and cannot be used."""


class RegistryExpired(InvalidRegistry):
    """A trust registry is past its ``expires`` timestamp."""


class VerificationError(PackageSealError):
    """Base class for failures reported by signature verification."""


class UnknownSignatureFormat(VerificationError):
    """Signature bytes cannot be interpreted by the claimed key's algorithm."""

    def __init__(self, message: str, keyid: str | None = None) -> None:
        super().__init__(message)
        self.keyid = keyid


class ThresholdNotMet(VerificationError):
    """Too few valid, distinct, trusted signatures were present."""

    def __init__(self, required: int, got: int) -> None:
        super().__init__(
            f"Signature threshold not met: required {required}, got {got}"
        )
        self.required = required
        self.got = got


class RotationError(PackageSealError):
    """A proposed registry rotation is structurally unacceptable."""


class RotationConflict(RotationError):
    """A rotation was computed against a registry version that is no longer current."""

    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Registry version conflict: rotation expects version {expected}, "
            f"current version is {actual}"
        )
        self.expected = expected
        self.actual = actual


__all__ = [
    "BuildCancelled",
    "InvalidRegistry",
    "MalformedEncoding",
    "ManifestIOError",
    "PackageSealError",
    "RegistryExpired",
    "RotationConflict",
    "RotationError",
    "ThresholdNotMet",
    "UnknownSignatureFormat",
    "UnsafePath",
    "VerificationError",
]
