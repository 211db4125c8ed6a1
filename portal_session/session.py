"""
Explicit per-tab session object and the bootstrap sequence that builds it.

Bootstrap order is fixed: resolve tenant -> build broker config -> initialize
broker -> consume any redirect return leg -> clear the login marker -> mount.
Mounting either runs the front-channel logout receiver (on its route) or
attaches the cross-tab logout listener and the login guard.
"""
import logging
from enum import Enum
from typing import Callable

import httpx

from portal_session.broker import Account, IdentityBroker, MsalBroker
from portal_session.browser import Tab
from portal_session.bus import CrossTabBus, LogoutEvent
from portal_session.config import LOGIN_MARKER_KEY, PortalSettings
from portal_session.login import LoginCoordinator
from portal_session.logout import LogoutCoordinator, LogoutOutcome, kept_keys
from portal_session.sso import IdpLogoutReceiver
from portal_session.tenant import BrokerConfig, BrokerConfigFactory, TenantResolver
from portal_session.tokens import SessionTokenProvider

logger = logging.getLogger("portal_session.session")

BrokerFactory = Callable[[Tab, BrokerConfig], IdentityBroker]


class SessionPhase(str, Enum):
    BOOTSTRAPPING = "bootstrapping"
    TENANT_RESOLVING = "tenant_resolving"
    REDIRECTING_TO_TENANT_SELECTION = "redirecting_to_tenant_selection"
    CONFIG_READY = "config_ready"
    AUTHENTICATED = "authenticated"
    LOGIN_REDIRECTING = "login_redirecting"
    LOGGING_OUT = "logging_out"
    BROKER_REDIRECTING = "broker_redirecting"
    IDP_LOGOUT_RECEIVED = "idp_logout_received"
    CLIENT_CLEARED = "client_cleared"


TERMINAL_PHASES = frozenset({
    SessionPhase.REDIRECTING_TO_TENANT_SELECTION,
    SessionPhase.LOGIN_REDIRECTING,
    SessionPhase.BROKER_REDIRECTING,
    SessionPhase.CLIENT_CLEARED,
})


class PortalSession:
    """Everything the rest of the app needs from auth, for one tab."""

    def __init__(
        self,
        tab: Tab,
        settings: PortalSettings,
        broker: IdentityBroker,
        tenant_id: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.tab = tab
        self.settings = settings
        self.broker = broker
        self.tenant_id = tenant_id
        self.phase = SessionPhase.CONFIG_READY
        self.logout_coordinator = LogoutCoordinator(tab, broker, settings, transport=transport)
        self.tokens = SessionTokenProvider(broker, settings.api_scopes)
        self.login = LoginCoordinator(tab, broker, settings.login_scopes)
        self._unsubscribe: Callable[[], None] | None = None

    @property
    def bus(self) -> CrossTabBus:
        return self.logout_coordinator.bus

    @property
    def account(self) -> Account | None:
        return self.tokens.account

    @property
    def roles(self) -> list[str]:
        return self.tokens.roles

    @property
    def is_authenticated(self) -> bool:
        return self.phase is SessionPhase.AUTHENTICATED and self.tokens.is_authenticated

    def mount(self) -> SessionPhase:
        if self.tab.path == self.settings.sso_logout_path:
            self.phase = SessionPhase.IDP_LOGOUT_RECEIVED
            IdpLogoutReceiver(self.tab, self.broker, bus=self.bus, keep_keys=kept_keys(self.settings)).mount()
            self.phase = SessionPhase.CLIENT_CLEARED
            return self.phase

        self._unsubscribe = self.logout_coordinator.listen(self._on_remote_logout)
        if self.tokens.is_authenticated:
            self.phase = SessionPhase.AUTHENTICATED
        elif self.login.ensure_logged_in():
            self.phase = SessionPhase.LOGIN_REDIRECTING
        return self.phase

    def _on_remote_logout(self, event: LogoutEvent) -> None:
        if self.phase in TERMINAL_PHASES:
            return
        self.phase = SessionPhase.CLIENT_CLEARED

    async def get_access_token(self) -> str | None:
        if self.phase in TERMINAL_PHASES or self.phase is SessionPhase.LOGGING_OUT:
            return None
        return await self.tokens.get_access_token()

    async def logout(self) -> LogoutOutcome:
        if self.phase not in TERMINAL_PHASES:
            self.phase = SessionPhase.LOGGING_OUT
        outcome = await self.logout_coordinator.logout()
        if outcome is LogoutOutcome.BROKER_REDIRECTING:
            self.phase = SessionPhase.BROKER_REDIRECTING
        elif outcome is LogoutOutcome.CLIENT_CLEARED:
            self.phase = SessionPhase.CLIENT_CLEARED
        return outcome

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.bus.close()


def bootstrap(
    tab: Tab,
    settings: PortalSettings,
    broker_factory: BrokerFactory = MsalBroker,
    transport: httpx.AsyncBaseTransport | None = None,
) -> PortalSession | None:
    """
    Build and mount the session for a freshly loaded tab.

    Args:
        tab: Host tab
        settings: Portal settings
        broker_factory: Builds the broker for a tenant configuration
        transport: httpx transport for the BFF revoke call (tests)

    Returns:
        The mounted session, or None when the tab is being sent to tenant
        selection and the caller should render nothing.
    """
    resolver = TenantResolver(tab, settings.kps_url)
    anonymous_ok = settings.public_home_page or tab.path == settings.sso_logout_path
    if anonymous_ok:
        tenant_id = resolver.peek() or settings.default_tenant_id
    else:
        tenant_id = resolver.resolve()
        if tenant_id is None:
            return None

    config = BrokerConfigFactory(settings, tab.origin).build(tenant_id)
    broker = broker_factory(tab, config)
    broker.initialize()

    try:
        account = broker.handle_redirect_promise()
        if account is not None:
            broker.set_active_account(account)
    except Exception as e:
        logger.warning(f"Ignoring redirect handling error, login guard will retry: {e}")

    tab.session_storage.remove_item(LOGIN_MARKER_KEY)

    session = PortalSession(tab, settings, broker, tenant_id, transport=transport)
    phase = session.mount()
    logger.info(f"Session mounted for tenant {tenant_id} ({phase.value})")
    return session
