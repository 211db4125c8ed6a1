import asyncio
import json

import httpx
import pytest

from conftest import EXTERNAL_TENANT, ORIGIN, WORKFORCE_TENANT, FakeBroker, make_account
from portal_session.broker import InteractionRequired
from portal_session.config import LogoutMode
from portal_session.logout import LogoutCoordinator, LogoutOutcome, clear_app_state, is_external_authority
from portal_session.tenant import BrokerConfigFactory

SIGNED_OUT = ("replace", f"{ORIGIN}/?signedOut=1")


class Recorder:
    def __init__(self, status=204, exc=None):
        self.requests = []
        self.status = status
        self.exc = exc
        self.on_request = None

    def __call__(self, request):
        self.requests.append(request)
        if self.on_request:
            self.on_request(request)
        if self.exc:
            raise self.exc
        return httpx.Response(self.status, json={"ok": True})


def _tab_with_state(profile, tenant=WORKFORCE_TENANT, email="dev@contoso.com"):
    tab = profile.open_tab(f"{ORIGIN}/apis")
    tab.local_storage.set_item("tenantId", tenant)
    tab.local_storage.set_item("email", email)
    tab.local_storage.set_item("msal.token_cache", "{}")
    tab.local_storage.set_item("catalog.filters", "{}")
    tab.session_storage.set_item("draft", "x")
    return tab


def _coordinator(tab, settings, mode, accounts, recorder=None, tenant=WORKFORCE_TENANT):
    settings = settings.model_copy(update={"logout_mode": mode, "third_party_logout_url": "https://aem.example.com/logout"})
    config = BrokerConfigFactory(settings, ORIGIN).build(tenant)
    broker = FakeBroker(tab, config, accounts=accounts)
    if accounts:
        broker.set_active_account(accounts[0])
    transport = httpx.MockTransport(recorder or Recorder())
    return broker, LogoutCoordinator(tab, broker, settings, transport=transport)


def _sibling(profile, settings, accounts):
    tab = profile.open_tab(f"{ORIGIN}/news")
    config = BrokerConfigFactory(settings, ORIGIN).build(WORKFORCE_TENANT)
    coordinator = LogoutCoordinator(tab, FakeBroker(tab, config, accounts=accounts), settings)
    cleared = []
    coordinator.listen(cleared.append)
    return tab, cleared


async def test_client_only_clears_and_broadcasts_without_network(profile, settings, account):
    tab = _tab_with_state(profile)
    sibling, cleared = _sibling(profile, settings, [account])
    recorder = Recorder()
    broker, coordinator = _coordinator(tab, settings, LogoutMode.CLIENT_ONLY, [account], recorder)

    outcome = await coordinator.logout()

    assert outcome is LogoutOutcome.CLIENT_CLEARED
    assert recorder.requests == []
    assert broker.logout_redirects == []
    assert tab.last_navigation == SIGNED_OUT
    assert sibling.last_navigation == SIGNED_OUT
    assert len(cleared) == 1
    assert tab.frames == []


async def test_msal_plus_bff_revokes_then_redirects(profile, settings, account):
    tab = _tab_with_state(profile)
    recorder = Recorder()
    broker, coordinator = _coordinator(tab, settings, LogoutMode.MSAL_PLUS_BFF, [account], recorder)

    outcome = await coordinator.logout()

    assert outcome is LogoutOutcome.BROKER_REDIRECTING
    assert len(recorder.requests) == 1
    request = recorder.requests[0]
    assert request.method == "POST"
    assert str(request.url) == f"{ORIGIN}/api/user/logout"
    assert request.headers["Authorization"] == "Bearer access-token"
    body = json.loads(request.content)
    assert body["reason"] == "user_initiated"
    assert isinstance(body["ts"], int)
    assert broker.silent_calls[-1] == (["api://portal/.default"], account)

    assert broker.logout_redirects == [{
        "account": account,
        "authority": f"https://login.microsoftonline.com/{WORKFORCE_TENANT}",
        "post_logout_redirect_uri": f"{ORIGIN}/",
        "logout_hint": "dev@contoso.com",
    }]
    assert tab.frames == []


async def test_msal_only_skips_backend(profile, settings, account):
    tab = _tab_with_state(profile)
    recorder = Recorder()
    broker, coordinator = _coordinator(tab, settings, LogoutMode.MSAL_ONLY, [account], recorder)
    assert await coordinator.logout() is LogoutOutcome.BROKER_REDIRECTING
    assert recorder.requests == []
    assert len(broker.logout_redirects) == 1


async def test_full_mode_loads_and_removes_slo_frame(profile, settings, account):
    tab = _tab_with_state(profile)
    recorder = Recorder()
    broker, coordinator = _coordinator(tab, settings, LogoutMode.FULL, [account], recorder)

    await coordinator.logout()

    assert [f.url for f in tab.frames] == ["https://aem.example.com/logout"]
    assert len(recorder.requests) == 1
    assert len(broker.logout_redirects) == 1
    await asyncio.sleep(0.05)
    assert tab.frames == []


async def test_logout_is_idempotent(profile, settings, account):
    tab = _tab_with_state(profile)
    sibling, cleared = _sibling(profile, settings, [account])
    recorder = Recorder()
    broker, coordinator = _coordinator(tab, settings, LogoutMode.MSAL_PLUS_BFF, [account], recorder)

    first, second = await asyncio.gather(coordinator.logout(), coordinator.logout())

    assert {first, second} == {LogoutOutcome.BROKER_REDIRECTING, LogoutOutcome.ALREADY_IN_PROGRESS}
    assert len(recorder.requests) == 1
    assert len(broker.logout_redirects) == 1
    assert len(cleared) == 1
    assert sibling.navigations == [SIGNED_OUT]


async def test_broadcast_happens_before_backend_call(profile, settings, account):
    tab = _tab_with_state(profile)
    sibling, _ = _sibling(profile, settings, [account])
    recorder = Recorder()
    seen = []
    recorder.on_request = lambda request: seen.append(sibling.last_navigation)
    _, coordinator = _coordinator(tab, settings, LogoutMode.MSAL_PLUS_BFF, [account], recorder)

    await coordinator.logout()

    assert seen == [SIGNED_OUT]


@pytest.mark.parametrize("recorder", [Recorder(status=500), Recorder(exc=httpx.ConnectError("refused"))])
async def test_backend_failure_does_not_change_outcome(profile, settings, account, recorder):
    tab = _tab_with_state(profile)
    broker, coordinator = _coordinator(tab, settings, LogoutMode.MSAL_PLUS_BFF, [account], recorder)
    assert await coordinator.logout() is LogoutOutcome.BROKER_REDIRECTING
    assert len(broker.logout_redirects) == 1


async def test_no_token_skips_backend_call(profile, settings, account):
    tab = _tab_with_state(profile)
    recorder = Recorder()
    broker, coordinator = _coordinator(tab, settings, LogoutMode.MSAL_PLUS_BFF, [account], recorder)
    broker.silent_outcome = InteractionRequired("login_required")
    await coordinator.logout()
    assert recorder.requests == []
    assert broker.token_redirects == []
    assert len(broker.logout_redirects) == 1


async def test_redirect_failure_falls_back_to_signed_out(profile, settings, account):
    tab = _tab_with_state(profile)
    broker, coordinator = _coordinator(tab, settings, LogoutMode.MSAL_ONLY, [account])
    broker.fail_logout_redirect = True
    assert await coordinator.logout() is LogoutOutcome.CLIENT_CLEARED
    assert tab.last_navigation == SIGNED_OUT


async def test_local_clear_keeps_broker_keys(profile, settings, account):
    tab = _tab_with_state(profile)
    broker, coordinator = _coordinator(tab, settings, LogoutMode.CLIENT_ONLY, [account])
    await coordinator.logout()
    assert tab.local_storage.keys() == ["msal.token_cache"]
    assert tab.session_storage.keys() == []
    assert broker.get_active_account() is None


async def test_tenant_context_kept_when_configured(profile, settings, account):
    tab = _tab_with_state(profile)
    keep = settings.model_copy(update={"keep_tenant_on_logout": True})
    _, coordinator = _coordinator(tab, keep, LogoutMode.CLIENT_ONLY, [account])
    await coordinator.logout()
    assert tab.local_storage.get_item("tenantId") == WORKFORCE_TENANT
    assert tab.local_storage.get_item("email") == "dev@contoso.com"
    assert tab.local_storage.get_item("catalog.filters") is None


def test_subject_prefers_active_then_email_then_first(profile, settings):
    a = make_account("a@contoso.com")
    b = make_account("B@contoso.com")
    tab = profile.open_tab(ORIGIN)
    broker, coordinator = _coordinator(tab, settings, LogoutMode.MSAL_ONLY, [a, b])
    assert coordinator.resolve_subject("b@contoso.com") == a

    broker.set_active_account(None)
    assert coordinator.resolve_subject("b@contoso.com") == b
    assert coordinator.resolve_subject("nobody@contoso.com") == a
    broker.accounts = []
    assert coordinator.resolve_subject(None) is None


def test_external_authority_is_kept_for_logout(profile, settings):
    acc = make_account(tenant_id=EXTERNAL_TENANT)
    tab = profile.open_tab(ORIGIN)
    _, coordinator = _coordinator(tab, settings, LogoutMode.MSAL_ONLY, [acc], tenant=EXTERNAL_TENANT)
    assert coordinator.logout_authority(EXTERNAL_TENANT, acc) == f"https://{settings.ciam_host}/{EXTERNAL_TENANT}"


def test_workforce_authority_from_account_claim(profile, settings):
    acc = make_account(tenant_id="tid-from-claims")
    tab = profile.open_tab(ORIGIN)
    _, coordinator = _coordinator(tab, settings, LogoutMode.MSAL_ONLY, [acc], tenant="unknown")
    assert coordinator.logout_authority(None, acc) == "https://login.microsoftonline.com/tid-from-claims"


def test_is_external_authority():
    assert is_external_authority("https://contoso.ciamlogin.com/tid")
    assert is_external_authority("https://ciamlogin.com/tid")
    assert is_external_authority("https://login.contoso.com/tid", ciam_host="login.contoso.com")
    assert not is_external_authority("https://evilciamlogin.com/tid")
    assert not is_external_authority("https://login.microsoftonline.com/tid")
    assert not is_external_authority(None)


async def test_sibling_reacts_once_to_both_delivery_paths(profile, settings, account):
    tab = _tab_with_state(profile)
    sibling, cleared = _sibling(profile, settings, [account])
    sibling.local_storage.set_item("catalog.filters", "{}")
    _, coordinator = _coordinator(tab, settings, LogoutMode.CLIENT_ONLY, [account])

    await coordinator.logout()

    assert len(cleared) == 1
    assert sibling.navigations == [SIGNED_OUT]


def test_clear_app_state_counts_removed(profile):
    tab = profile.open_tab(ORIGIN)
    tab.local_storage.set_item("MSAL.Something", "1")
    tab.local_storage.set_item("a", "1")
    tab.session_storage.set_item("b", "1")
    assert clear_app_state(tab) == 2
    assert tab.local_storage.keys() == ["MSAL.Something"]
