from __future__ import annotations

import time
from typing import Any, Dict, Optional

from adminauth.storage.models import User

DEFAULT_SCOPE = "openid profile email"

CLAIMS_SUPPORTED = [
    "iss",
    "sub",
    "aud",
    "exp",
    "iat",
    "auth_time",
    "nonce",
    "name",
    "email",
    "email_verified",
    "preferred_username",
    "groups",
    "roles",
]


def discovery_document(issuer: str) -> Dict[str, Any]:
    """OpenID provider metadata served at ``/.well-known/openid-configuration``."""
    return {
        "issuer": issuer,
        "authorization_endpoint": f"{issuer}/oauth2/authorize",
        "token_endpoint": f"{issuer}/oauth2/token",
        "userinfo_endpoint": f"{issuer}/oauth2/userinfo",
        "revocation_endpoint": f"{issuer}/oauth2/revoke",
        "jwks_uri": f"{issuer}/.well-known/jwks.json",
        "response_types_supported": ["code"],
        "scopes_supported": ["openid", "profile", "email"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_methods_supported": [
            "client_secret_basic",
            "client_secret_post",
            "none",
        ],
        "id_token_signing_alg_values_supported": ["RS256"],
        "subject_types_supported": ["public"],
        "claims_supported": CLAIMS_SUPPORTED,
    }


def profile_claims(user: User) -> Dict[str, Any]:
    return {
        "sub": user.id,
        "name": user.username,
        "email": user.email,
        "preferred_username": user.username,
        "email_verified": True,
        "roles": [user.role],
        "groups": [user.role],
    }


def id_token_claims(
    user: User, *, nonce: Optional[str] = None, auth_time: Optional[int] = None
) -> Dict[str, Any]:
    claims = profile_claims(user)
    claims["auth_time"] = auth_time if auth_time is not None else int(time.time())
    if nonce:
        claims["nonce"] = nonce
    return claims
