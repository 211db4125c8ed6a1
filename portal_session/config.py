"""
Portal session configuration.

Values come from the environment (see ``PortalSettings.from_env``). Nothing here
is cached at import time; callers build a settings object once at bootstrap and
pass it down.
"""
import os
from enum import Enum
from typing import Mapping

from pydantic import BaseModel, field_validator

# ==============================
# Defaults
# ==============================
DEFAULT_CIAM_HOST = "kltdexternaliddev.ciamlogin.com"
DEFAULT_KPS_URL = "https://login-uat.komatsu.com/spa"
DEFAULT_SCOPES = ["User.Read"]

# Storage keys shared by the tenant resolver, login guard and logout path
TENANT_ID_KEY = "tenantId"
EMAIL_KEY = "email"
LOGIN_MARKER_KEY = "mn_login_attempted"
SIGNED_OUT_PATH = "/?signedOut=1"


class LogoutMode(str, Enum):
    """Which side effects a logout performs. Each mode adds to the previous one."""

    CLIENT_ONLY = "client-only"
    MSAL_ONLY = "msal-only"
    MSAL_PLUS_BFF = "msal-plus-bff"
    FULL = "full"

    @property
    def redirects_to_broker(self) -> bool:
        return self is not LogoutMode.CLIENT_ONLY

    @property
    def revokes_bff_session(self) -> bool:
        return self in (LogoutMode.MSAL_PLUS_BFF, LogoutMode.FULL)

    @property
    def runs_third_party_slo(self) -> bool:
        return self is LogoutMode.FULL


def parse_scopes(raw: str | None, default: list[str] | None = None) -> list[str]:
    """Split a comma-separated scope string, dropping blanks."""
    scopes = [s.strip() for s in (raw or "").split(",") if s.strip()]
    if scopes:
        return scopes
    return list(default if default is not None else DEFAULT_SCOPES)


def _flag(value: str | None) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


class PortalSettings(BaseModel):
    client_id: str = ""
    external_tenant_id: str = ""
    workforce_tenant_id: str = ""
    ciam_host: str = DEFAULT_CIAM_HOST
    api_base: str = "/api"
    api_scopes: list[str] = DEFAULT_SCOPES
    login_scopes: list[str] = DEFAULT_SCOPES
    logout_mode: LogoutMode = LogoutMode.MSAL_PLUS_BFF
    kps_url: str = DEFAULT_KPS_URL
    third_party_logout_url: str = ""
    base_url: str = ""
    public_home_page: bool = False
    default_tenant_id: str = "common"
    keep_tenant_on_logout: bool = False
    slo_frame_timeout: float = 2.0
    revoke_timeout: float = 10.0
    sso_logout_path: str = "/sso-logout"

    @field_validator("logout_mode", mode="before")
    @classmethod
    def validate_logout_mode(cls, v):
        if isinstance(v, LogoutMode):
            return v
        v = (v or "").strip().lower()
        if not v:
            return LogoutMode.MSAL_PLUS_BFF
        try:
            return LogoutMode(v)
        except ValueError:
            allowed = ", ".join(m.value for m in LogoutMode)
            raise ValueError(f"logout_mode must be one of: {allowed}")

    @field_validator("slo_frame_timeout", "revoke_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v

    @field_validator("kps_url", "third_party_logout_url", "base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return (v or "").strip().rstrip("/")

    @field_validator("sso_logout_path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        v = (v or "").strip()
        if not v.startswith("/"):
            raise ValueError("sso_logout_path must start with '/'")
        return v

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "PortalSettings":
        """
        Build settings from environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)

        Returns:
            Validated settings
        """
        env = os.environ if environ is None else environ

        third_party = env.get("THIRD_PARTY_LOGOUT_URL", "")
        if not third_party:
            # AEM-style CDN exposes its logout page under the icon base URL
            cdn = env.get("CDN_ICON", "").strip()
            third_party = f"{cdn.rstrip('/')}/logout" if cdn else ""

        return cls(
            client_id=env.get("ENTRA_CLIENT_ID", ""),
            external_tenant_id=env.get("EXTERNAL_TENANT_ID", ""),
            workforce_tenant_id=env.get("WORKFORCE_TENANT_ID", ""),
            ciam_host=env.get("CIAM_HOST", DEFAULT_CIAM_HOST),
            api_base=env.get("PORTAL_API_BASE", "/api"),
            api_scopes=parse_scopes(env.get("PORTAL_API_SCOPE")),
            login_scopes=parse_scopes(env.get("LOGIN_SCOPES")),
            logout_mode=env.get("LOGOUT_MODE", LogoutMode.MSAL_PLUS_BFF.value),
            kps_url=env.get("KPS_URL", DEFAULT_KPS_URL),
            third_party_logout_url=third_party,
            base_url=env.get("BASE_URL", ""),
            public_home_page=_flag(env.get("PUBLIC_HOME_PAGE")),
            default_tenant_id=env.get("DEFAULT_TENANT_ID", "common") or "common",
            keep_tenant_on_logout=_flag(env.get("KEEP_TENANT_ON_LOGOUT")),
            slo_frame_timeout=env.get("SLO_FRAME_TIMEOUT", "2.0"),
            revoke_timeout=env.get("BFF_REVOKE_TIMEOUT", "10.0"),
            sso_logout_path=env.get("SSO_LOGOUT_PATH", "/sso-logout"),
        )
