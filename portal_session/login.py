"""Guarded start of the interactive sign-in redirect."""
import logging

from portal_session.broker import IdentityBroker
from portal_session.browser import Tab
from portal_session.config import EMAIL_KEY, LOGIN_MARKER_KEY

logger = logging.getLogger("portal_session.login")

LOGOUT_ACTIONS = ("userlogout", "frontchannellogout")


def is_logout_flow(tab: Tab) -> bool:
    """True on pages that exist to confirm a logout."""
    return tab.query_param("action") in LOGOUT_ACTIONS or tab.query_param("signedOut") == "1"


class LoginCoordinator:
    """
    Starts at most one sign-in redirect per tab per page load.

    The one-shot marker lives in per-tab storage, so two tabs never race on it,
    and bootstrap removes it once per page load after the redirect leg has
    been handled.
    """

    def __init__(self, tab: Tab, broker: IdentityBroker, scopes: list[str]):
        self.tab = tab
        self.broker = broker
        self.scopes = list(scopes)

    def ensure_logged_in(self) -> bool:
        """
        Returns:
            True if a sign-in redirect was started
        """
        if is_logout_flow(self.tab):
            return False

        try:
            if self.broker.get_active_account() is not None:
                return False
        except Exception as e:
            logger.error(f"Broker account lookup failed: {e}")
            return False

        storage = self.tab.session_storage
        if storage.get_item(LOGIN_MARKER_KEY):
            return False
        storage.set_item(LOGIN_MARKER_KEY, "1")

        if self.tab.is_framed:
            storage.remove_item(LOGIN_MARKER_KEY)
            return False

        login_hint = self.tab.local_storage.get_item(EMAIL_KEY)
        try:
            self.broker.login_redirect(self.scopes, login_hint, self.tab.origin)
        except Exception as e:
            logger.error(f"Sign-in redirect failed: {e}")
            storage.remove_item(LOGIN_MARKER_KEY)
            return False

        logger.info("Sign-in redirect started")
        return True
