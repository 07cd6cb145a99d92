"""Outer /token leg: redeem an authorization code for a broker token."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from tenant_oauth_broker.auth import pkce
from tenant_oauth_broker.errors import OAuthError
from tenant_oauth_broker.logging_utils import preview
from tenant_oauth_broker.storage.broker_tokens import BrokerToken, BrokerTokenStore
from tenant_oauth_broker.storage.short_lived import AuthorizationCodeStore, ChallengeStore
from tenant_oauth_broker.utils.tokens import is_well_formed_authorization_code

logger = logging.getLogger(__name__)

_MAX_CLIENT_ID_LENGTH = 256


def _check_exchange_params(code_verifier: str, client_id: str) -> OAuthError | None:
    if not code_verifier:
        return OAuthError("invalid_request", "Missing required parameter: code_verifier")
    if not client_id:
        return OAuthError("invalid_request", "Missing required parameter: client_id")
    if len(client_id) > _MAX_CLIENT_ID_LENGTH:
        return OAuthError("invalid_request", "Invalid client_id: too long")
    if not pkce.is_valid_code_verifier(code_verifier):
        return OAuthError(
            "invalid_request",
            "Invalid code_verifier: must be 43-128 characters of [A-Za-z0-9-._~]",
        )
    return None


def _dead_code_error(code: str) -> OAuthError:
    logger.warning("Token exchange with unknown, expired or used code %s", preview(code))
    return OAuthError("invalid_grant", "Invalid, expired, or already used authorization code")


class TokenExchangeOrchestrator:
    """Validates a code exchange in a fixed order.

    The code is marked used before the PKCE and client checks, so a failed
    attempt still burns the code and a replay always gets invalid_grant.
    Parameter errors on a code that is still live are reported as
    invalid_request without consuming it.
    """

    def __init__(
        self,
        *,
        codes: AuthorizationCodeStore,
        challenges: ChallengeStore,
        broker_tokens: BrokerTokenStore,
        refresh_enabled: bool = False,
    ) -> None:
        self._codes = codes
        self._challenges = challenges
        self._broker_tokens = broker_tokens
        self._refresh_enabled = refresh_enabled

    @property
    def refresh_enabled(self) -> bool:
        return self._refresh_enabled

    async def handle(self, form: Mapping[str, str]) -> dict[str, Any]:
        grant_type = (form.get("grant_type") or "").strip()
        if not grant_type:
            raise OAuthError("invalid_request", "Missing required parameter: grant_type")
        if grant_type == "authorization_code":
            return await self.exchange_code(form)
        if grant_type == "refresh_token" and self._refresh_enabled:
            return await self.refresh(form)
        raise OAuthError(
            "unsupported_grant_type",
            f"Unsupported grant_type: {grant_type[:64]}",
        )

    async def exchange_code(self, form: Mapping[str, str]) -> dict[str, Any]:
        code = (form.get("code") or "").strip()
        code_verifier = (form.get("code_verifier") or "").strip()
        client_id = (form.get("client_id") or "").strip()
        redirect_uri = (form.get("redirect_uri") or "").strip()

        if not code:
            raise OAuthError("invalid_request", "Missing required parameter: code")
        if not is_well_formed_authorization_code(code):
            raise _dead_code_error(code)

        param_error = _check_exchange_params(code_verifier, client_id)
        if param_error is not None:
            # A dead code wins over a bad parameter; a live one is left unburnt.
            if not await self._codes.is_redeemable(code):
                raise _dead_code_error(code)
            raise param_error

        record = await self._codes.consume(code)
        if record is None:
            raise _dead_code_error(code)

        challenge = await self._challenges.get(record.outer_state)
        if challenge is None:
            logger.warning("No PKCE challenge for code %s", preview(code))
            raise OAuthError("invalid_grant", "PKCE challenge not found or expired")

        if not pkce.verify(challenge.method, code_verifier, challenge.code_challenge):
            logger.warning(
                "SECURITY: PKCE verification failed for client %s (code %s)",
                client_id,
                preview(code),
            )
            raise OAuthError("invalid_grant", "PKCE verification failed")

        if client_id != challenge.client_id:
            logger.warning(
                "SECURITY: client_id mismatch on code %s: expected %s, got %s",
                preview(code),
                challenge.client_id,
                client_id,
            )
            raise OAuthError(
                "invalid_grant", "client_id does not match authorization request"
            )

        if redirect_uri and redirect_uri != challenge.redirect_uri:
            logger.warning("SECURITY: redirect_uri mismatch on code %s", preview(code))
            raise OAuthError(
                "invalid_grant", "redirect_uri does not match authorization request"
            )

        await self._challenges.delete(record.outer_state)
        token = await self._broker_tokens.issue(
            record.session_id,
            client_id=client_id,
            with_refresh_token=self._refresh_enabled,
        )
        return self._token_response(token)

    async def refresh(self, form: Mapping[str, str]) -> dict[str, Any]:
        refresh_token = (form.get("refresh_token") or "").strip()
        client_id = (form.get("client_id") or "").strip() or None
        if not refresh_token:
            raise OAuthError("invalid_request", "Missing required parameter: refresh_token")

        token = await self._broker_tokens.rotate(refresh_token, client_id=client_id)
        if token is None:
            logger.warning("Broker refresh rejected for %s", preview(refresh_token))
            raise OAuthError("invalid_grant", "Invalid or expired refresh token")
        return self._token_response(token)

    def _token_response(self, token: BrokerToken) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "access_token": token.token,
            "token_type": "Bearer",
            "expires_in": int(token.expires_at - token.issued_at),
        }
        if token.refresh_token:
            payload["refresh_token"] = token.refresh_token
        return payload
