"""
Tenant resolution and per-tenant broker configuration.

The resolver decides which identity tenant governs this browser profile:
persisted state first, then ``tenantId``/``email`` handed back by the
tenant-selection service (query string or fragment), and finally a redirect to
that service. The factory turns a tenant id into the broker configuration for
that tenant's authority.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import parse_qsl, quote, urlencode, urlsplit, urlunsplit

from portal_session.browser import Tab
from portal_session.config import EMAIL_KEY, TENANT_ID_KEY, PortalSettings

logger = logging.getLogger("portal_session.tenant")

WORKFORCE_AUTHORITY_HOST = "login.microsoftonline.com"
COMMON_TENANT = "common"

# Query markers left behind by logout flows; never forwarded to tenant selection
TRANSIENT_LOGOUT_PARAMS = ("action", "signedOut")


class TenantResolver:
    def __init__(self, tab: Tab, kps_url: str):
        self.tab = tab
        self.kps_url = kps_url

    def peek(self) -> str | None:
        """
        Return the persisted tenant, absorbing incoming URL parameters first.

        Incoming ``tenantId``/``email`` are only honoured when no tenant is
        persisted yet. When either is present it is stored and the address bar
        is rewritten to ``origin + path`` so it is not read again.
        """
        storage = self.tab.local_storage
        tenant_id = storage.get_item(TENANT_ID_KEY)
        if tenant_id:
            return tenant_id

        incoming_tenant = self.tab.query_param(TENANT_ID_KEY) or self.tab.fragment_param(TENANT_ID_KEY)
        incoming_email = self.tab.query_param(EMAIL_KEY) or self.tab.fragment_param(EMAIL_KEY)

        if incoming_tenant or incoming_email:
            if incoming_tenant:
                storage.set_item(TENANT_ID_KEY, incoming_tenant)
                tenant_id = incoming_tenant
                logger.info(f"Tenant {incoming_tenant} received from tenant selection")
            if incoming_email:
                storage.set_item(EMAIL_KEY, incoming_email)
                logger.debug(f"Login hint received: {incoming_email}")
            self.tab.replace_history(self.tab.origin + self.tab.path)

        return tenant_id

    def resolve(self) -> str | None:
        """
        Resolve the tenant or send the browser to tenant selection.

        Returns:
            The tenant id, or None when the tab is being redirected and the
            caller should stop rendering.
        """
        tenant_id = self.peek()
        if tenant_id:
            return tenant_id

        target = self.selection_url()
        logger.info("No tenant context, redirecting to tenant selection")
        self.tab.navigate(target)
        return None

    def selection_url(self) -> str:
        parts = urlsplit(self.tab.url)
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in TRANSIENT_LOGOUT_PARAMS]
        redirect_uri = urlunsplit((parts.scheme, parts.netloc, "/", urlencode(query), ""))
        return f"{self.kps_url}?redirectUri={quote(redirect_uri, safe='')}"


class TenantRole(str, Enum):
    EXTERNAL = "external"
    WORKFORCE = "workforce"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class BrokerConfig:
    client_id: str
    authority: str
    redirect_uri: str
    post_logout_redirect_uri: str
    role: TenantRole
    fallback_authority: str


def workforce_authority(tenant_id: str) -> str:
    return f"https://{WORKFORCE_AUTHORITY_HOST}/{tenant_id}"


class BrokerConfigFactory:
    """Maps a tenant id to the broker configuration for its authority."""

    def __init__(self, settings: PortalSettings, origin: str):
        self.settings = settings
        self.origin = origin.rstrip("/")

    @property
    def fallback_authority(self) -> str:
        if self.settings.workforce_tenant_id:
            return workforce_authority(self.settings.workforce_tenant_id)
        return workforce_authority(COMMON_TENANT)

    def classify(self, tenant_id: str | None) -> TenantRole:
        if not tenant_id:
            return TenantRole.UNKNOWN
        if self.settings.external_tenant_id and tenant_id == self.settings.external_tenant_id:
            return TenantRole.EXTERNAL
        if self.settings.workforce_tenant_id and tenant_id == self.settings.workforce_tenant_id:
            return TenantRole.WORKFORCE
        return TenantRole.UNKNOWN

    def build(self, tenant_id: str | None) -> BrokerConfig:
        role = self.classify(tenant_id)
        if role is TenantRole.EXTERNAL:
            authority = f"https://{self.settings.ciam_host}/{tenant_id}"
        elif role is TenantRole.WORKFORCE:
            authority = workforce_authority(tenant_id)
        else:
            authority = self.fallback_authority
            logger.warning(f"Unrecognized tenant {tenant_id!r}, using fallback authority {authority}")

        return BrokerConfig(
            client_id=self.settings.client_id,
            authority=authority,
            redirect_uri=self.origin,
            post_logout_redirect_uri=f"{self.origin}/",
            role=role,
            fallback_authority=self.fallback_authority,
        )
