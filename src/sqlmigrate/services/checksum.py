"""Content fingerprints for migration files and statements."""

import hashlib
from typing import Union


def fingerprint(data: Union[bytes, str]) -> str:
    """Return the MD5 hex digest of ``data``.

    Strings are encoded as UTF-8 first, so a statement and the bytes it was
    read from fingerprint identically.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.md5(data).hexdigest()
