"""Access tokens for API callers: silent first, interactive redirect as fallback."""
import logging

from portal_session.broker import (
    Account,
    Failed,
    IdentityBroker,
    InteractionRequired,
    Silent,
)

logger = logging.getLogger("portal_session.tokens")


class SessionTokenProvider:
    """
    Hands out access tokens for the active account.

    ``get_access_token`` never raises. ``None`` means "not authenticated right
    now": either there is no account, a sign-in redirect was just started, or
    the broker failed and the caller should degrade.
    """

    def __init__(self, broker: IdentityBroker, scopes: list[str]):
        self.broker = broker
        self.scopes = list(scopes)
        self._redirect_in_flight = False

    @property
    def account(self) -> Account | None:
        # Only the active account counts; cached accounts survive logout in the broker cache
        try:
            return self.broker.get_active_account()
        except Exception as e:
            logger.error(f"Broker account lookup failed: {e}")
            return None

    @property
    def is_authenticated(self) -> bool:
        return self.account is not None

    @property
    def roles(self) -> list[str]:
        account = self.account
        return account.roles if account else []

    async def get_access_token(self) -> str | None:
        account = self.account
        if account is None:
            return None

        try:
            outcome = self.broker.acquire_token_silent(self.scopes, account)
        except Exception as e:
            outcome = Failed(str(e))

        match outcome:
            case Silent(access_token=token):
                return token
            case InteractionRequired(reason=reason):
                logger.info(f"Silent acquisition needs interaction ({reason}), redirecting")
                self._start_interactive(account)
                return None
            case Failed(reason=reason):
                logger.warning(f"Silent acquisition failed: {reason}")
                return None
        return None

    def _start_interactive(self, account: Account) -> None:
        if self._redirect_in_flight:
            return
        self._redirect_in_flight = True
        try:
            self.broker.acquire_token_redirect(self.scopes, account)
        except Exception as e:
            self._redirect_in_flight = False
            logger.error(f"Interactive acquisition could not start: {e}")
