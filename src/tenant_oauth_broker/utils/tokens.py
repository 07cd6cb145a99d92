"""Identifier generation and the inner-leg state envelope."""

from __future__ import annotations

import base64
import binascii
import json
import re
import secrets
import time
import uuid
from dataclasses import dataclass

from tenant_oauth_broker.utils.time import Clock

BROKER_TOKEN_PREFIX = "mcp_"
BROKER_REFRESH_TOKEN_PREFIX = "mcpr_"

_HEX64_PATTERN = re.compile(r"^[0-9a-f]{64}$")
_BROKER_TOKEN_PATTERN = re.compile(r"^mcp_[0-9a-f]{64}$")

INNER_STATE_VERSION = "v1"
_MAX_INNER_STATE_LENGTH = 2048


def generate_session_id() -> str:
    return str(uuid.uuid4())


def generate_authorization_code() -> str:
    """32 random bytes as 64 lowercase hex characters."""
    return secrets.token_hex(32)


def generate_broker_token() -> str:
    return f"{BROKER_TOKEN_PREFIX}{secrets.token_hex(32)}"


def generate_broker_refresh_token() -> str:
    return f"{BROKER_REFRESH_TOKEN_PREFIX}{secrets.token_hex(32)}"


def generate_client_id() -> str:
    return f"mcp-{secrets.token_urlsafe(10)}"


def is_well_formed_authorization_code(value: str) -> bool:
    return bool(_HEX64_PATTERN.fullmatch(value))


def is_well_formed_broker_token(value: str) -> bool:
    return bool(_BROKER_TOKEN_PATTERN.fullmatch(value))


class InnerStateError(ValueError):
    """Raised when an inner state token cannot be decoded."""


@dataclass(frozen=True)
class InnerState:
    """Payload carried through the third-party authorization round trip.

    On the wire it is ``v1.<base64url(json)>``. The nonce makes every token
    unique even when the same outer state is retried.
    """

    outer_state: str
    session_id: str
    issued_at: float
    nonce: str

    @classmethod
    def create(
        cls, outer_state: str, session_id: str, clock: Clock = time.time
    ) -> "InnerState":
        return cls(
            outer_state=outer_state,
            session_id=session_id,
            issued_at=clock(),
            nonce=secrets.token_hex(8),
        )

    def encode(self) -> str:
        payload = {
            "o": self.outer_state,
            "s": self.session_id,
            "t": int(self.issued_at),
            "n": self.nonce,
        }
        raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=True).encode("utf-8")
        body = base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")
        return f"{INNER_STATE_VERSION}.{body}"

    @classmethod
    def decode(cls, token: str) -> "InnerState":
        if not token or len(token) > _MAX_INNER_STATE_LENGTH:
            raise InnerStateError("inner state is empty or too long")
        version, sep, body = token.partition(".")
        if not sep:
            raise InnerStateError("inner state has no version prefix")
        if version != INNER_STATE_VERSION:
            raise InnerStateError(f"unsupported inner state version: {version[:16]}")

        padded = body + "=" * (-len(body) % 4)
        try:
            raw = base64.urlsafe_b64decode(padded.encode("ascii"))
            payload = json.loads(raw.decode("utf-8"))
        except (binascii.Error, UnicodeError, ValueError) as exc:
            raise InnerStateError("inner state is not valid base64url JSON") from exc

        if not isinstance(payload, dict):
            raise InnerStateError("inner state payload must be an object")
        outer_state = payload.get("o")
        session_id = payload.get("s")
        issued_at = payload.get("t")
        nonce = payload.get("n")
        if not isinstance(outer_state, str) or not outer_state:
            raise InnerStateError("inner state is missing the outer state")
        if not isinstance(session_id, str) or not session_id:
            raise InnerStateError("inner state is missing the session id")
        if not isinstance(issued_at, (int, float)) or not isinstance(nonce, str):
            raise InnerStateError("inner state is missing issue metadata")
        return cls(
            outer_state=outer_state,
            session_id=session_id,
            issued_at=float(issued_at),
            nonce=nonce,
        )
