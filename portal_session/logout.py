"""
Multi-step logout and the cross-tab reaction to it.

A logout runs, in order: guard, resolve the subject account, broadcast, clear
local state, revoke the BFF session, third-party single logout, broker logout
redirect. Every step is best-effort; a failure is logged and the next step
still runs. Which of the network steps run is decided by ``LogoutMode``.
"""
import asyncio
import logging
from enum import Enum
from typing import Callable
from urllib.parse import urlsplit

import httpx

from portal_session.broker import Account, IdentityBroker, Silent
from portal_session.browser import HiddenFrame, Tab
from portal_session.bus import CrossTabBus, LogoutEvent, LogoutSource, now_ms
from portal_session.config import EMAIL_KEY, SIGNED_OUT_PATH, TENANT_ID_KEY, PortalSettings
from portal_session.tenant import workforce_authority

logger = logging.getLogger("portal_session.logout")

BROKER_KEY_MARKER = "msal"
EXTERNAL_AUTHORITY_DOMAIN = "ciamlogin.com"


class LogoutOutcome(str, Enum):
    ALREADY_IN_PROGRESS = "already_in_progress"
    BROKER_REDIRECTING = "broker_redirecting"
    CLIENT_CLEARED = "client_cleared"


def clear_app_state(tab: Tab, keep_keys: tuple[str, ...] = ()) -> int:
    """
    Remove application keys from durable and per-tab storage.

    Broker keys (anything containing ``msal``) are left for the broker to
    clean up itself.

    Returns:
        Number of keys removed
    """
    removed = 0
    for storage in (tab.local_storage, tab.session_storage):
        try:
            for key in storage.keys():
                if BROKER_KEY_MARKER in key.lower() or key in keep_keys:
                    continue
                storage.remove_item(key)
                removed += 1
        except Exception as e:
            logger.warning(f"Local state cleanup incomplete: {e}")
    return removed


def kept_keys(settings: PortalSettings) -> tuple[str, ...]:
    """Keys that survive a logout; the tenant context only if configured so."""
    return (TENANT_ID_KEY, EMAIL_KEY) if settings.keep_tenant_on_logout else ()


def log_http_error(operation: str, error: httpx.HTTPStatusError, context: str = "", expected: bool = False):
    """
    Log an HTTP error response from a best-effort call.

    Args:
        operation: What was being attempted
        error: The HTTPStatusError exception
        context: Extra detail for the debug log
        expected: Log as warning instead of error
    """
    response = error.response
    log_level = logger.warning if expected else logger.error
    log_level(f"HTTP Error in {operation} (Status {response.status_code})")
    if context:
        logger.debug(f"  Context: {context}")
    logger.debug(f"  URL: {response.url}")
    try:
        logger.debug(f"  Response Body: {response.text[:500]}")
    except Exception:
        logger.debug("  Response Body: <unreadable>")


def is_external_authority(authority: str | None, ciam_host: str = "") -> bool:
    if not authority:
        return False
    try:
        host = (urlsplit(authority).hostname or "").lower()
    except ValueError:
        return False
    if ciam_host and host == ciam_host.lower():
        return True
    return host == EXTERNAL_AUTHORITY_DOMAIN or host.endswith("." + EXTERNAL_AUTHORITY_DOMAIN)


class LogoutCoordinator:
    """
    Runs the logout sequence for one tab and reacts to logouts from other tabs.

    Args:
        tab: Host tab
        broker: Initialized identity broker
        settings: Portal settings (logout mode, URLs, timeouts)
        bus: Cross-tab bus; one bound to this coordinator is created if omitted
        transport: httpx transport for the BFF revoke call (tests)
    """

    def __init__(
        self,
        tab: Tab,
        broker: IdentityBroker,
        settings: PortalSettings,
        bus: CrossTabBus | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.tab = tab
        self.broker = broker
        self.settings = settings
        self.bus = bus or CrossTabBus(tab, in_progress=lambda: self.in_progress)
        self._transport = transport
        self._in_progress = False
        self._cleared = False

    @property
    def in_progress(self) -> bool:
        return self._in_progress

    # ------------------------------
    # Steps
    # ------------------------------
    def resolve_subject(self, email: str | None) -> Account | None:
        try:
            active = self.broker.get_active_account()
            if active is not None:
                return active
            accounts = self.broker.get_all_accounts()
        except Exception as e:
            logger.warning(f"Could not read broker accounts: {e}")
            return None
        if email:
            for account in accounts:
                if (account.username or "").lower() == email.lower():
                    return account
        return accounts[0] if accounts else None

    def logout_authority(self, tenant_id: str | None, account: Account | None) -> str | None:
        configured = getattr(self.broker.config, "authority", None)
        if is_external_authority(configured, self.settings.ciam_host):
            return configured
        tid = tenant_id or (account.claims.get("tid") if account else None)
        return workforce_authority(tid) if tid else configured

    def _broadcast(self) -> None:
        try:
            self.bus.publish(LogoutEvent(sender=self.bus.tab_id, source=LogoutSource.USER))
        except Exception as e:
            logger.warning(f"Logout broadcast failed: {e}")

    def _revoke_url(self) -> str:
        base = self.settings.api_base.rstrip("/")
        if not base.startswith(("http://", "https://")):
            base = self.tab.origin + "/" + base.lstrip("/")
        return f"{base.rstrip('/')}/user/logout"

    async def _revoke_bff_session(self, account: Account | None) -> bool:
        if account is None:
            logger.info("No account to revoke a BFF session for")
            return False
        try:
            outcome = self.broker.acquire_token_silent(self.settings.api_scopes, account)
        except Exception as e:
            logger.warning(f"Token for BFF revoke unavailable: {e}")
            return False
        if not isinstance(outcome, Silent):
            logger.info("No token for BFF revoke, skipping")
            return False

        url = self._revoke_url()
        async with httpx.AsyncClient(timeout=self.settings.revoke_timeout, transport=self._transport) as client:
            try:
                resp = await client.post(
                    url,
                    json={"reason": "user_initiated", "ts": now_ms()},
                    headers={"Authorization": f"Bearer {outcome.access_token}"},
                )
                resp.raise_for_status()
                logger.info("BFF session revoked")
                return True
            except httpx.HTTPStatusError as e:
                log_http_error("BFF revoke", e, f"POST {url}", expected=True)
            except httpx.HTTPError as e:
                logger.warning(f"BFF revoke failed: {e}")
        return False

    def _remove_frame(self, frame: HiddenFrame) -> None:
        try:
            self.tab.remove_frame(frame)
        except Exception as e:
            logger.debug(f"SLO frame already gone: {e}")

    def _third_party_slo(self) -> None:
        url = self.settings.third_party_logout_url
        if not url:
            return
        try:
            frame = self.tab.open_hidden_frame(url)
            asyncio.get_running_loop().call_later(self.settings.slo_frame_timeout, self._remove_frame, frame)
        except Exception as e:
            logger.warning(f"Third-party logout failed: {e}")

    def _signed_out_fallback(self) -> None:
        try:
            self.tab.replace(SIGNED_OUT_PATH)
        except Exception as e:
            logger.error(f"Signed-out navigation failed: {e}")

    # ------------------------------
    # Entry points
    # ------------------------------
    async def logout(self) -> LogoutOutcome:
        if self._in_progress:
            return LogoutOutcome.ALREADY_IN_PROGRESS
        self._in_progress = True
        mode = self.settings.logout_mode
        logger.info(f"Logging out user (mode {mode.value})")

        storage = self.tab.local_storage
        email = storage.get_item(EMAIL_KEY)
        tenant_id = storage.get_item(TENANT_ID_KEY)
        account = self.resolve_subject(email)
        authority = self.logout_authority(tenant_id, account)

        self._broadcast()
        clear_app_state(self.tab, kept_keys(self.settings))
        try:
            self.broker.set_active_account(None)
        except Exception as e:
            logger.warning(f"Could not clear active account: {e}")

        if mode.revokes_bff_session:
            try:
                await self._revoke_bff_session(account)
            except Exception as e:
                logger.error(f"Unexpected BFF revoke error: {e}")

        if mode.runs_third_party_slo:
            self._third_party_slo()

        if not mode.redirects_to_broker:
            self._signed_out_fallback()
            return LogoutOutcome.CLIENT_CLEARED

        post_logout = f"{self.settings.base_url or self.tab.origin}/"
        try:
            self.broker.logout_redirect(
                account,
                authority,
                post_logout,
                logout_hint=account.preferred_username if account else None,
            )
        except Exception as e:
            logger.error(f"Broker logout redirect failed, falling back to local sign-out: {e}")
            self._signed_out_fallback()
            return LogoutOutcome.CLIENT_CLEARED
        return LogoutOutcome.BROKER_REDIRECTING

    def listen(self, on_cleared: Callable[[LogoutEvent], None] | None = None) -> Callable[[], None]:
        """
        React to logouts published by other tabs or the IdP receiver.

        The reaction runs once per tab even when both the channel message and
        the storage event arrive for the same logout.
        """

        def _handle(event: LogoutEvent) -> None:
            if self._cleared:
                return
            self._cleared = True
            logger.info(f"Logout received from another context (source {event.source.value})")
            clear_app_state(self.tab, kept_keys(self.settings))
            self._signed_out_fallback()
            if on_cleared is not None:
                on_cleared(event)

        return self.bus.subscribe(_handle)
