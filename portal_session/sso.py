"""
Front-channel logout receiver.

The identity provider loads this route (often in a hidden frame) when a
session ends elsewhere. The receiver only cleans up locally and tells the
other tabs; it must not start a broker logout, since that would send the IdP
straight back into the same front-channel round.
"""
import logging

from portal_session.broker import IdentityBroker
from portal_session.browser import Tab
from portal_session.bus import CrossTabBus, LogoutEvent, LogoutSource
from portal_session.config import SIGNED_OUT_PATH
from portal_session.logout import clear_app_state

logger = logging.getLogger("portal_session.sso")


class IdpLogoutReceiver:
    def __init__(self, tab: Tab, broker: IdentityBroker, bus: CrossTabBus | None = None, keep_keys: tuple[str, ...] = ()):
        self.tab = tab
        self.broker = broker
        self.bus = bus or CrossTabBus(tab)
        self.keep_keys = keep_keys
        self.mounted = False

    def mount(self) -> None:
        if self.mounted:
            return
        self.mounted = True
        framed = self.tab.is_framed
        logger.info(f"Front-channel logout received (framed={framed})")

        try:
            self.broker.set_active_account(None)
        except Exception as e:
            logger.warning(f"Could not clear active account: {e}")

        try:
            self.bus.publish(LogoutEvent(sender=self.bus.tab_id, source=LogoutSource.IDP))
        except Exception as e:
            logger.warning(f"IdP logout broadcast failed: {e}")

        clear_app_state(self.tab, self.keep_keys)

        if not framed:
            try:
                self.tab.replace(SIGNED_OUT_PATH)
            except Exception as e:
                logger.error(f"Signed-out navigation failed: {e}")
