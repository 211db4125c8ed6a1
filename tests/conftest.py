import asyncio
import inspect
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from portal_session.broker import (  # noqa: E402
    ACTIVE_ACCOUNT_KEY,
    Account,
    IdentityBroker,
    RedirectError,
    Silent,
)
from portal_session.browser import BrowserProfile  # noqa: E402
from portal_session.config import PortalSettings  # noqa: E402

ORIGIN = "https://portal.example.com"
EXTERNAL_TENANT = "0f8d1c2e-ext0-4a5b-9c6d-111111111111"
WORKFORCE_TENANT = "58be8688-6625-4e52-80d8-c17f3a9ae08a"


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")


class FakeBroker(IdentityBroker):
    """Broker double; the active-account pointer lives in durable storage like MSAL's."""

    def __init__(self, tab, config, accounts=None, silent_outcome=None):
        self.tab = tab
        self.config = config
        self.accounts = list(accounts or [])
        self.silent_outcome = silent_outcome or Silent("access-token")
        self.redirect_account = None
        self.fail_login_redirect = False
        self.fail_logout_redirect = False
        self.initialized = False
        self.silent_calls = []
        self.login_redirects = []
        self.token_redirects = []
        self.logout_redirects = []

    def initialize(self):
        self.initialized = True

    def handle_redirect_promise(self):
        return self.redirect_account

    def get_active_account(self):
        home_id = self.tab.local_storage.get_item(ACTIVE_ACCOUNT_KEY)
        for account in self.accounts:
            if account.home_account_id == home_id:
                return account
        return None

    def set_active_account(self, account):
        if account is None:
            self.tab.local_storage.remove_item(ACTIVE_ACCOUNT_KEY)
        else:
            self.tab.local_storage.set_item(ACTIVE_ACCOUNT_KEY, account.home_account_id)

    def get_all_accounts(self):
        return list(self.accounts)

    def acquire_token_silent(self, scopes, account):
        self.silent_calls.append((list(scopes), account))
        return self.silent_outcome

    def acquire_token_redirect(self, scopes, account):
        self.token_redirects.append((list(scopes), account))
        self.tab.navigate(f"{self.config.authority}/oauth2/v2.0/authorize?prompt=consent")

    def login_redirect(self, scopes, login_hint, redirect_uri):
        if self.fail_login_redirect:
            raise RedirectError("popup blocked")
        self.login_redirects.append({"scopes": list(scopes), "login_hint": login_hint, "redirect_uri": redirect_uri})
        self.tab.navigate(f"{self.config.authority}/oauth2/v2.0/authorize")

    def logout_redirect(self, account, authority, post_logout_redirect_uri, logout_hint=None):
        if self.fail_logout_redirect:
            raise RedirectError("navigation blocked")
        self.logout_redirects.append({
            "account": account,
            "authority": authority,
            "post_logout_redirect_uri": post_logout_redirect_uri,
            "logout_hint": logout_hint,
        })
        self.set_active_account(None)
        self.tab.navigate(f"{authority}/oauth2/v2.0/logout")


def make_account(username="dev@contoso.com", tenant_id=WORKFORCE_TENANT, **claims):
    base_claims = {"preferred_username": username, "tid": tenant_id, "name": "Dev User"}
    base_claims.update(claims)
    return Account(
        home_account_id=f"{username}.{tenant_id}",
        username=username,
        name=base_claims["name"],
        tenant_id=tenant_id,
        claims=base_claims,
    )


@pytest.fixture
def settings():
    return PortalSettings(
        client_id="portal-client",
        external_tenant_id=EXTERNAL_TENANT,
        workforce_tenant_id=WORKFORCE_TENANT,
        api_scopes=["api://portal/.default"],
        login_scopes=["User.Read"],
        kps_url="https://kps.example.com/spa",
        slo_frame_timeout=0.01,
    )


@pytest.fixture
def profile():
    return BrowserProfile()


@pytest.fixture
def account():
    return make_account()
