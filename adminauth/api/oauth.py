from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from adminauth.logging import get_logger
from adminauth.service.errors import OAuthError
from adminauth.service.oidc import discovery_document
from adminauth.service.runtime import get_runtime

logger = get_logger(__name__)

oauth_router = APIRouter(prefix="/oauth2", tags=["oauth2"])
well_known_router = APIRouter(prefix="/.well-known", tags=["oidc"])

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


async def _read_params(request: Request) -> Dict[str, Any]:
    """Accept both form-encoded and JSON bodies, as OAuth clients vary."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError:
            raise OAuthError("invalid_request", "Malformed JSON body")
        if not isinstance(body, dict):
            raise OAuthError("invalid_request", "Request body must be an object")
        return body
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@oauth_router.get("/authorize", response_class=HTMLResponse)
async def authorize(request: Request):
    runtime = get_runtime()
    return HTMLResponse(runtime.oauth.login_form(dict(request.query_params)))


@oauth_router.post("/login")
async def login(request: Request):
    runtime = get_runtime()
    form = await request.form()
    location = await runtime.oauth.login(
        form.get("email"), form.get("password"), dict(request.query_params)
    )
    return RedirectResponse(location, status_code=302)


@oauth_router.post("/token")
async def token(request: Request):
    runtime = get_runtime()
    params = await _read_params(request)
    payload = await runtime.oauth.token(params, request.headers.get("authorization"))
    return JSONResponse(content=payload, headers=_NO_STORE)


@oauth_router.get("/userinfo")
async def userinfo(request: Request):
    runtime = get_runtime()
    return await runtime.oauth.userinfo(request.headers.get("authorization"))


@oauth_router.post("/revoke")
async def revoke(request: Request):
    runtime = get_runtime()
    try:
        params = await _read_params(request)
    except OAuthError:
        params = {}
    await runtime.oauth.revoke(params.get("token"), params.get("token_type_hint"))
    # RFC 7009: unknown or invalid tokens still get a 200
    return {"success": True}


@well_known_router.get("/openid-configuration")
async def openid_configuration():
    runtime = get_runtime()
    return JSONResponse(
        content=discovery_document(runtime.settings.issuer_url),
        headers={"Cache-Control": "public, max-age=3600"},
    )


@well_known_router.get("/jwks.json")
async def jwks():
    runtime = get_runtime()
    return JSONResponse(
        content=runtime.signer.jwks(),
        headers={"Cache-Control": "public, max-age=86400"},
    )
