"""OAuth2 authorization-code and refresh flows with OIDC ID tokens."""

from __future__ import annotations

import base64
import binascii
import html
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, unquote_plus, urlencode, urlsplit, urlunsplit

from adminauth.config import Settings
from adminauth.logging import get_logger
from adminauth.service.accounts import AccountService
from adminauth.service.auth_codes import AuthCodeCache
from adminauth.service.errors import DependencyError, OAuthError
from adminauth.service.oidc import DEFAULT_SCOPE, id_token_claims, profile_claims
from adminauth.service.refresh_tokens import RefreshTokenStore
from adminauth.service.revocation import RevocationCache
from adminauth.service.signer import TokenError, TokenSigner
from adminauth.service.tokens import hash_token
from adminauth.storage.models import User

logger = get_logger(__name__)

AUTHORIZATION_CODE = "authorization_code"
REFRESH_TOKEN = "refresh_token"
ACCESS_TOKEN = "access_token"

_LOGIN_FORM = """<!DOCTYPE html>
<html>
<head>
    <title>Admin Service - Login</title>
    <meta charset="utf-8">
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>
        body {{ font-family: Arial, sans-serif; max-width: 400px; margin: 50px auto; padding: 20px; background: #f5f5f5; }}
        .login-form {{ background: white; padding: 30px; border-radius: 8px; box-shadow: 0 2px 10px rgba(0,0,0,0.1); }}
        label {{ display: block; margin-bottom: 5px; font-weight: bold; }}
        input {{ width: 100%; padding: 10px; margin-bottom: 20px; border: 1px solid #ddd; border-radius: 4px; box-sizing: border-box; }}
        button {{ width: 100%; padding: 12px; background: #007bff; color: white; border: none; border-radius: 4px; font-size: 16px; }}
    </style>
</head>
<body>
    <div class="login-form">
        <h2>Login to Admin Service</h2>
        <form action="{action}" method="POST">
            <label for="email">Email:</label>
            <input type="email" id="email" name="email" required>
            <label for="password">Password:</label>
            <input type="password" id="password" name="password" required>
            <button type="submit">Login</button>
        </form>
    </div>
</body>
</html>
"""


def _append_query(uri: str, params: Mapping[str, Optional[str]]) -> str:
    parts = urlsplit(uri)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit(parts._replace(query=urlencode(query)))


def _param(params: Mapping[str, Any], name: str) -> Optional[str]:
    value = params.get(name)
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def parse_basic_credentials(authorization: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Decode ``Authorization: Basic`` into ``(client_id, client_secret)``."""
    if not authorization:
        return None, None
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None, None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        logger.warning("basic_auth_decode_failed")
        return None, None
    client_id, _, client_secret = decoded.partition(":")
    return unquote_plus(client_id) or None, unquote_plus(client_secret) or None


class OAuthFlow:
    def __init__(
        self,
        store: Any,
        accounts: AccountService,
        signer: TokenSigner,
        refresh_tokens: RefreshTokenStore,
        revocation: RevocationCache,
        auth_codes: AuthCodeCache,
        settings: Settings,
    ) -> None:
        self.store = store
        self.accounts = accounts
        self.signer = signer
        self.refresh_tokens = refresh_tokens
        self.revocation = revocation
        self.auth_codes = auth_codes
        self.settings = settings

    # authorization endpoint
    def authorization_request(self, params: Mapping[str, Any]) -> None:
        if _param(params, "response_type") != "code":
            raise OAuthError(
                "unsupported_response_type", "Only 'code' response_type is supported"
            )
        if not _param(params, "client_id"):
            raise OAuthError("invalid_request", "client_id is required")
        if not _param(params, "redirect_uri"):
            raise OAuthError("invalid_request", "redirect_uri is required")

    def login_form(self, params: Mapping[str, Any]) -> str:
        self.authorization_request(params)
        action = "/oauth2/login"
        query = urlencode([(k, v) for k, v in params.items() if v is not None])
        if query:
            action = f"{action}?{query}"
        return _LOGIN_FORM.format(action=html.escape(action, quote=True))

    async def login(
        self, email: Optional[str], password: Optional[str], params: Mapping[str, Any]
    ) -> str:
        """Authenticate and return the client redirect URL."""
        client_id = _param(params, "client_id")
        redirect_uri = _param(params, "redirect_uri")
        state = _param(params, "state")
        if not client_id or not redirect_uri:
            raise OAuthError("invalid_request", "client_id and redirect_uri are required")

        user = self.accounts.authenticate(email, password) if email and password else None
        if not user:
            return _append_query(
                redirect_uri,
                {
                    "error": "access_denied",
                    "error_description": "Invalid credentials",
                    "state": state,
                },
            )

        code = self.auth_codes.generate_code()
        grant = self.auth_codes.new_grant(
            user.id,
            client_id,
            redirect_uri,
            state=state,
            scope=_param(params, "scope"),
            nonce=_param(params, "nonce"),
        )
        try:
            await self.auth_codes.store(code, grant)
        except DependencyError as exc:
            raise OAuthError("server_error", "Failed to issue authorization code", status_code=500) from exc
        logger.info("authorization_code_issued", user_id=user.id, client_id=client_id)
        return _append_query(redirect_uri, {"code": code, "state": state})

    # token endpoint
    async def token(self, params: Mapping[str, Any], authorization: Optional[str] = None) -> Dict[str, Any]:
        grant_type = _param(params, "grant_type")
        if grant_type == AUTHORIZATION_CODE:
            return await self.exchange_code(params, authorization)
        if grant_type == REFRESH_TOKEN:
            return await self.refresh(params, authorization)
        raise OAuthError(
            "unsupported_grant_type",
            "Only authorization_code and refresh_token are supported",
        )

    def _token_response(
        self,
        user: User,
        refresh_token: str,
        audience: str,
        *,
        access_audience: Optional[str] = None,
        nonce: Optional[str] = None,
        scope: Optional[str] = None,
    ) -> Dict[str, Any]:
        return {
            "access_token": self.signer.sign_access_token(user.id, audience=access_audience),
            "token_type": "Bearer",
            "expires_in": self.signer.access_ttl_seconds,
            "refresh_token": refresh_token,
            "id_token": self.signer.sign_id_token(id_token_claims(user, nonce=nonce), audience),
            "scope": scope or DEFAULT_SCOPE,
        }

    async def exchange_code(
        self, params: Mapping[str, Any], authorization: Optional[str] = None
    ) -> Dict[str, Any]:
        if _param(params, "grant_type") != AUTHORIZATION_CODE:
            raise OAuthError(
                "unsupported_grant_type", "Only authorization_code grant type is supported"
            )
        code = _param(params, "code")
        client_id = _param(params, "client_id")
        if not client_id:
            # Body values win; Basic credentials only fill the gaps
            client_id, _ = parse_basic_credentials(authorization)
        if not code:
            raise OAuthError("invalid_request", "Authorization code is required")
        if not client_id:
            raise OAuthError("invalid_request", "client_id is required")

        try:
            grant = await self.auth_codes.consume(code)
        except DependencyError as exc:
            raise OAuthError("server_error", "Failed to read authorization code", status_code=500) from exc
        if not grant:
            raise OAuthError("invalid_grant", "Invalid or expired authorization code")
        if grant.expired:
            raise OAuthError("invalid_grant", "Authorization code has expired")
        if grant.client_id != client_id:
            raise OAuthError(
                "invalid_grant", "Authorization code was issued to a different client"
            )
        redirect_uri = _param(params, "redirect_uri")
        if redirect_uri and redirect_uri != grant.redirect_uri:
            raise OAuthError("invalid_grant", "redirect_uri does not match")

        user = self.store.get_user(grant.user_id)
        if not user or not user.is_active:
            raise OAuthError("invalid_grant", "User associated with code no longer exists")

        try:
            refresh_token = self.refresh_tokens.create(user.id)
            response = self._token_response(
                user,
                refresh_token,
                client_id,
                access_audience=client_id,
                nonce=grant.nonce,
                scope=grant.scope,
            )
        except Exception as exc:
            logger.exception("token_issue_failed", user_id=user.id, error=str(exc))
            raise OAuthError("server_error", "Failed to generate tokens", status_code=500) from exc
        logger.info("authorization_code_exchanged", user_id=user.id, client_id=client_id)
        return response

    async def refresh(
        self, params: Mapping[str, Any], authorization: Optional[str] = None
    ) -> Dict[str, Any]:
        if _param(params, "grant_type") != REFRESH_TOKEN:
            raise OAuthError(
                "unsupported_grant_type", "Only refresh_token grant type is supported"
            )
        presented = _param(params, "refresh_token")
        if not presented:
            raise OAuthError("invalid_request", "refresh_token is required")
        client_id = _param(params, "client_id") or parse_basic_credentials(authorization)[0]

        rotation = self.refresh_tokens.rotate(presented)
        if not rotation.rotated:
            raise OAuthError(
                "invalid_grant", "Invalid or expired refresh token", status_code=401
            )
        user = self.store.get_user(rotation.user_id)
        if not user or not user.is_active:
            self.refresh_tokens.revoke(rotation.user_id)
            raise OAuthError("invalid_grant", "User no longer exists", status_code=401)

        try:
            return self._token_response(
                user,
                rotation.token,
                client_id or self.signer.issuer,
                access_audience=client_id,
            )
        except Exception as exc:
            logger.exception("token_issue_failed", user_id=user.id, error=str(exc))
            raise OAuthError("server_error", "Failed to generate tokens", status_code=500) from exc

    # userinfo endpoint
    async def userinfo(self, authorization: Optional[str]) -> Dict[str, Any]:
        scheme, _, token = (authorization or "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise OAuthError("invalid_token", "Bearer token required", status_code=401)
        if await self.revocation.is_blacklisted(token):
            raise OAuthError("invalid_token", "Token has been revoked", status_code=401)
        try:
            claims = self.signer.verify_access_token(token)
        except TokenError:
            raise OAuthError("invalid_token", "Token verification failed", status_code=401)
        user = self.store.get_user(str(claims.get("sub")))
        if not user or not user.is_active:
            raise OAuthError("invalid_token", "User not found", status_code=401)
        return profile_claims(user)

    # revocation endpoint
    def _revoke_refresh(self, token: str) -> bool:
        user = self.store.get_user_by_refresh_token(hash_token(token))
        if not user:
            return False
        self.refresh_tokens.revoke(user.id)
        return True

    async def _revoke_access(self, token: str) -> bool:
        try:
            claims = self.signer.verify_access_token(token)
        except TokenError:
            return False
        await self.revocation.blacklist(token, self.signer.remaining_seconds(claims))
        self.refresh_tokens.revoke(str(claims.get("sub")))
        return True

    async def revoke(self, token: Optional[str], token_type_hint: Optional[str] = None) -> None:
        """Revoke ``token`` if it is recognised; never raises."""
        if not token:
            return
        if token_type_hint == ACCESS_TOKEN:
            order = (ACCESS_TOKEN, REFRESH_TOKEN)
        else:
            order = (REFRESH_TOKEN, ACCESS_TOKEN)
        for kind in order:
            try:
                if kind == REFRESH_TOKEN:
                    revoked = self._revoke_refresh(token)
                else:
                    revoked = await self._revoke_access(token)
            except Exception as exc:
                logger.warning("token_revoke_failed", kind=kind, error=str(exc))
                continue
            if revoked:
                logger.info("token_revoked", kind=kind)
                return
