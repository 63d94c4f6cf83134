import hashlib
import re
from typing import Optional, Tuple

from .errors import HashFormatError

HEX64_RE = re.compile(r'^[0-9a-f]{64}$')


# ---------- HASHING ----------
def sha256_hex(data) -> str:
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


# ---------- HASH FORMATS ----------
def strip_0x(value: str) -> str:
    value = value.strip()
    if value[:2].lower() == '0x':
        return value[2:]
    return value


def normalize_hash(value: Optional[str]) -> str:
    """Returns the bare lowercase 64-hex form, raising HashFormatError otherwise."""
    if not isinstance(value, str):
        raise HashFormatError('Certificate hash must be a string')
    bare = strip_0x(value).lower()
    if not HEX64_RE.match(bare):
        raise HashFormatError(f"Malformed certificate hash: '{value[:80]}'")
    return bare


def is_valid_hash(value: Optional[str]) -> bool:
    try:
        normalize_hash(value)
    except HashFormatError:
        return False
    return True


def add_0x_prefix(value: str) -> str:
    """bytes32 form expected by the contract. Applying it twice is a no-op."""
    return '0x' + normalize_hash(value)


def hash_variants(value: str) -> Tuple[str, str]:
    bare = normalize_hash(value)
    return bare, '0x' + bare
