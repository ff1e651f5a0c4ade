"""
Module: signing.py
Description: Default payload signer.

The coordinator treats signers as opaque functions of (payload, secret)
returning signature bytes; verification is the remote endpoint's job.
"""

import hashlib
import hmac
from typing import Callable, Union

Signer = Callable[[bytes, str], bytes]


def hmac_sha256_signer(payload: bytes, secret: Union[str, bytes]) -> bytes:
    """HMAC-SHA256 of payload keyed by secret."""
    key = secret.encode('utf-8') if isinstance(secret, str) else secret
    return hmac.new(key, payload, hashlib.sha256).digest()
