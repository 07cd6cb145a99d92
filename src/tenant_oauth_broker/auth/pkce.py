"""PKCE (RFC 7636) helpers."""

from __future__ import annotations

import base64
import hashlib
import re
import secrets

SUPPORTED_METHODS = ("S256", "plain")

_MIN_LENGTH = 43
_MAX_LENGTH = 128
_VERIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]+$")
_S256_CHALLENGE_PATTERN = re.compile(r"^[A-Za-z0-9_-]{43}$")


def is_valid_code_verifier(value: str) -> bool:
    if not (_MIN_LENGTH <= len(value) <= _MAX_LENGTH):
        return False
    return bool(_VERIFIER_PATTERN.fullmatch(value))


def is_valid_code_challenge(value: str, method: str) -> bool:
    """Check the shape of an incoming challenge.

    An S256 challenge is always an unpadded base64url SHA-256 digest. A plain
    challenge is the verifier itself, so it follows the verifier rules.
    """
    if method == "S256":
        return bool(_S256_CHALLENGE_PATTERN.fullmatch(value))
    if method == "plain":
        return is_valid_code_verifier(value)
    return False


def compute_challenge(method: str, code_verifier: str) -> str:
    if method == "S256":
        digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    if method == "plain":
        return code_verifier
    raise ValueError(f"Unsupported code_challenge_method: {method}")


def verify(method: str, code_verifier: str, code_challenge: str) -> bool:
    if method not in SUPPORTED_METHODS:
        return False
    if not is_valid_code_verifier(code_verifier):
        return False
    computed = compute_challenge(method, code_verifier)
    return secrets.compare_digest(computed.encode("ascii"), code_challenge.encode("ascii"))
