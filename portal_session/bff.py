"""
BFF session endpoints.

The portal front end holds its identity in the broker; the BFF keeps its own
session per signed-in principal. This app establishes those sessions from a
bearer token, revokes them on user logout, and drops the cookie session when
the IdP's front-channel logout reaches it.

Run with: uvicorn portal_session.bff:app
"""
import asyncio
import logging
import os
import secrets
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError
from pydantic import BaseModel, field_validator

from portal_session.logout import log_http_error

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("portal_session.bff")

COOKIE_BFF = "mn_bff_session"
JWKS_CACHE_SECONDS = 3600
DEFAULT_ALGORITHM = "RS256"
MAX_REASON_LENGTH = 200


# ==============================
# Config
# ==============================
class BffSettings(BaseModel):
    issuer: str = ""
    audience: str = ""
    jwks_url: str = ""
    session_ttl: int = 8 * 3600
    cors_origins: list[str] = []
    prefix: str = "/api"

    @field_validator("session_ttl")
    @classmethod
    def validate_ttl(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("session_ttl must be positive")
        return v

    @field_validator("prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        v = "/" + (v or "").strip().strip("/")
        return "" if v == "/" else v

    @classmethod
    def from_env(cls) -> "BffSettings":
        origins = [o.strip() for o in os.environ.get("BFF_CORS_ORIGINS", "").split(",") if o.strip()]
        return cls(
            issuer=os.environ.get("BFF_ISSUER", ""),
            audience=os.environ.get("BFF_AUDIENCE", ""),
            jwks_url=os.environ.get("BFF_JWKS_URL", ""),
            session_ttl=os.environ.get("BFF_SESSION_TTL", str(8 * 3600)),
            cors_origins=origins,
            prefix=os.environ.get("BFF_PREFIX", "/api"),
        )


# ==============================
# Session registry
# ==============================
@dataclass
class BffSession:
    id: str
    subject: str
    tenant_id: str | None
    created_at: float
    expires_at: float
    revoked_at: float | None = None
    revoke_reason: str | None = None

    def is_active(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return self.revoked_at is None and now < self.expires_at


class SessionRegistry:
    """In-memory BFF sessions, keyed by id. All mutation happens under one lock."""

    def __init__(self, ttl: int):
        self.ttl = ttl
        self._sessions: dict[str, BffSession] = {}
        self._lock = asyncio.Lock()

    async def create(self, subject: str, tenant_id: str | None = None) -> BffSession:
        now = time.time()
        session = BffSession(
            id=secrets.token_urlsafe(24),
            subject=subject,
            tenant_id=tenant_id,
            created_at=now,
            expires_at=now + self.ttl,
        )
        async with self._lock:
            self._purge_expired(now)
            self._sessions[session.id] = session
        return session

    async def get(self, session_id: str | None) -> BffSession | None:
        if not session_id:
            return None
        async with self._lock:
            session = self._sessions.get(session_id)
        if session is None or not session.is_active():
            return None
        return session

    async def revoke(self, session_id: str | None, reason: str) -> bool:
        if not session_id:
            return False
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or not session.is_active():
                return False
            session.revoked_at = time.time()
            session.revoke_reason = reason
        return True

    async def revoke_subject(self, subject: str, reason: str) -> int:
        now = time.time()
        revoked = 0
        async with self._lock:
            for session in self._sessions.values():
                if session.subject == subject and session.is_active(now):
                    session.revoked_at = now
                    session.revoke_reason = reason
                    revoked += 1
        return revoked

    def active_count(self) -> int:
        now = time.time()
        return sum(1 for s in self._sessions.values() if s.is_active(now))

    def _purge_expired(self, now: float) -> None:
        expired = [sid for sid, s in self._sessions.items() if now >= s.expires_at]
        for sid in expired:
            self._sessions.pop(sid, None)


# ==============================
# Token validation
# ==============================
JwksProvider = Callable[[], Awaitable[dict]]


def make_jwks_provider(settings: BffSettings) -> JwksProvider:
    """JWKS fetcher with a simple time-based cache."""
    cached: dict = {}

    async def fetch_jwks() -> dict:
        if cached and time.time() - cached["at"] < JWKS_CACHE_SECONDS:
            return cached["jwks"]
        async with httpx.AsyncClient(timeout=10.0) as client:
            try:
                jwks_uri = settings.jwks_url
                if not jwks_uri:
                    resp = await client.get(f"{settings.issuer.rstrip('/')}/.well-known/openid-configuration")
                    resp.raise_for_status()
                    jwks_uri = resp.json()["jwks_uri"]
                jwk_resp = await client.get(jwks_uri)
                jwk_resp.raise_for_status()
                jwks = jwk_resp.json()
            except httpx.HTTPStatusError as e:
                log_http_error("fetch_jwks", e, "Failed to fetch JWKS from identity provider")
                raise
        cached.update(jwks=jwks, at=time.time())
        return jwks

    return fetch_jwks


def decode_bearer(token: str, jwks: dict, audience: str = "", issuer: str = "") -> dict:
    header = jwt.get_unverified_header(token)
    key = next((k for k in jwks.get("keys", []) if k.get("kid") == header.get("kid")), None)
    if key is None:
        raise JWTError(f"No signing key for kid {header.get('kid')!r}")
    options = {} if audience else {"verify_aud": False}
    # The unverified header never picks the algorithm
    return jwt.decode(
        token,
        key,
        algorithms=[key.get("alg") or DEFAULT_ALGORITHM],
        audience=audience or None,
        issuer=issuer or None,
        options=options,
    )


def subject_of(claims: dict) -> str | None:
    return claims.get("oid") or claims.get("sub")


class RevokeRequest(BaseModel):
    reason: str = "user_initiated"
    ts: int | None = None

    @field_validator("reason")
    @classmethod
    def validate_reason(cls, v: str) -> str:
        v = (v or "").strip()
        if not v:
            raise ValueError("reason is required")
        return v[:MAX_REASON_LENGTH]


# ==============================
# App
# ==============================
SSO_LOGOUT_HTML = """<!DOCTYPE html>
<html>
<head><title>Signed out</title></head>
<body><div style="display: none">SSO logout handled</div></body>
</html>
"""


def create_app(settings: BffSettings | None = None, jwks_provider: JwksProvider | None = None) -> FastAPI:
    settings = settings or BffSettings.from_env()
    registry = SessionRegistry(settings.session_ttl)
    fetch_jwks = jwks_provider or make_jwks_provider(settings)

    app = FastAPI(title="Portal BFF")
    app.state.settings = settings
    app.state.sessions = registry

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        response = await call_next(request)
        logger.info(f"{request.method} {request.url.path} -> {response.status_code}")
        return response

    async def _verify_bearer(authorization: str | None = Header(None)) -> dict:
        if not authorization or not authorization.startswith("Bearer "):
            raise HTTPException(status_code=401, detail="Missing or invalid Authorization header")
        token = authorization[7:].strip()
        try:
            jwks = await fetch_jwks()
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"JWKS unavailable: {e}")
            raise HTTPException(status_code=503, detail="Identity provider keys unavailable")
        try:
            claims = decode_bearer(token, jwks, audience=settings.audience, issuer=settings.issuer)
        except ExpiredSignatureError:
            raise HTTPException(status_code=401, detail="Token expired")
        except JWTError as e:
            logger.warning(f"Rejected bearer token: {e}")
            raise HTTPException(status_code=401, detail="Invalid token")
        if not subject_of(claims):
            raise HTTPException(status_code=401, detail="Token has no subject")
        return claims

    def _set_cookie(request: Request, response, value: str, max_age: int) -> None:
        is_https = request.url.scheme == "https"
        response.set_cookie(
            key=COOKIE_BFF,
            value=value,
            path="/",
            max_age=max_age,
            httponly=True,
            secure=is_https,
            samesite="lax",
        )

    @app.post(f"{settings.prefix}/session")
    async def establish_session(request: Request, claims: dict = Depends(_verify_bearer)):
        """Create a BFF session for the token's principal and hand back its cookie."""
        session = await registry.create(subject_of(claims), tenant_id=claims.get("tid"))
        logger.info(f"BFF session created for tenant {session.tenant_id}")
        response = JSONResponse({"session_id": session.id, "expires_at": int(session.expires_at)})
        _set_cookie(request, response, session.id, settings.session_ttl)
        return response

    @app.get(f"{settings.prefix}/session")
    async def read_session(request: Request):
        session = await registry.get(request.cookies.get(COOKIE_BFF))
        if session is None:
            raise HTTPException(status_code=401, detail="No active session")
        return {"subject": session.subject, "tenant_id": session.tenant_id, "expires_at": int(session.expires_at)}

    @app.post(f"{settings.prefix}/user/logout")
    async def revoke_user_sessions(
        request: Request,
        body: RevokeRequest,
        claims: dict = Depends(_verify_bearer),
    ):
        """
        Revoke every BFF session of the caller.
        Body: { "reason": "user_initiated", "ts": 1700000000000 }
        """
        revoked = await registry.revoke_subject(subject_of(claims), body.reason)
        logger.info(f"Revoked {revoked} BFF session(s), reason={body.reason}")
        response = JSONResponse({"ok": True, "revoked": revoked})
        _set_cookie(request, response, "", 0)
        return response

    @app.get(f"{settings.prefix}/sso-logout", response_class=HTMLResponse)
    async def front_channel_logout(request: Request):
        """Front-channel logout: the IdP loads this (usually framed), no parameters."""
        revoked = await registry.revoke(request.cookies.get(COOKIE_BFF), "idp_front_channel")
        logger.info(f"Front-channel logout handled (cookie session revoked={revoked})")
        response = HTMLResponse(content=SSO_LOGOUT_HTML)
        response.headers["Cache-Control"] = "no-store"
        _set_cookie(request, response, "", 0)
        return response

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "sessions": registry.active_count()}

    return app


app = create_app()


def main() -> None:
    import uvicorn

    uvicorn.run(
        "portal_session.bff:app",
        host=os.environ.get("BFF_HOST", "0.0.0.0"),
        port=int(os.environ.get("BFF_PORT", "3001")),
    )


if __name__ == "__main__":
    main()
