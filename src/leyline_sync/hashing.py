"""Hashing utilities for content addressing.

Every cached object and every synced file is identified by the SHA256 of its
exact bytes, rendered as ``sha256:<64 hex chars>``.
"""

from pathlib import Path
from typing import Union
import hashlib
import re

DIGEST_PREFIX = "sha256:"

_HEX64 = re.compile(r"^[0-9a-f]{64}$")


def compute_digest(data: bytes) -> str:
    """Compute SHA256 digest of a byte sequence.

    Args:
        data: Bytes to hash

    Returns:
        SHA256 digest in format "sha256:xxxx"
    """
    return f"{DIGEST_PREFIX}{hashlib.sha256(data).hexdigest()}"


def compute_file_digest(path: Path) -> str:
    """Compute SHA256 hash of file contents.

    Simple byte-for-byte hashing - any change invalidates the digest.

    Args:
        path: Path to file to hash

    Returns:
        SHA256 digest in format "sha256:xxxx"
    """
    sha256 = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return f"{DIGEST_PREFIX}{sha256.hexdigest()}"


def validate_digest(digest: str) -> str:
    """Validate and extract SHA256 hex from digest string.

    Args:
        digest: Digest string in format "sha256:hexvalue"

    Returns:
        The 64-character hex string

    Raises:
        ValueError: If digest format is invalid

    Security:
        Prevents path traversal by validating hex format before using in paths.
    """
    if not isinstance(digest, str) or not digest.startswith(DIGEST_PREFIX):
        raise ValueError(f"Invalid digest scheme: {digest!r}")

    hex_part = digest.split(":", 1)[1]
    if not _HEX64.fullmatch(hex_part):
        raise ValueError(f"Invalid sha256 hex (must be 64 hex chars): {hex_part!r}")

    return hex_part


def is_valid_digest(digest: Union[str, None]) -> bool:
    """True if ``digest`` is a well-formed ``sha256:`` digest."""
    try:
        validate_digest(digest)
    except ValueError:
        return False
    return True


__all__ = [
    "DIGEST_PREFIX",
    "compute_digest",
    "compute_file_digest",
    "validate_digest",
    "is_valid_digest",
]
