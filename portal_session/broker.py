"""
Identity broker capability surface and its MSAL adapter.

The session layer only needs a handful of broker operations: initialize,
handle the return leg of a redirect, read/clear the active account, silent and
redirect token acquisition, login redirect and logout redirect. ``MsalBroker``
implements them on top of ``msal.PublicClientApplication`` and keeps all of its
state in storage keys containing ``msal`` so application cleanup leaves them to
the broker.
"""
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit

import msal

from portal_session.browser import Tab
from portal_session.tenant import BrokerConfig

logger = logging.getLogger("portal_session.broker")

TOKEN_CACHE_KEY = "msal.token_cache"
ACTIVE_ACCOUNT_KEY = "msal.active_account"
ACCOUNT_CLAIMS_KEY = "msal.account_claims"
AUTH_CODE_FLOW_KEY = "msal.auth_code_flow"

# Silent failures the user can fix by signing in again
INTERACTION_REQUIRED_ERRORS = frozenset({
    "interaction_required",
    "login_required",
    "consent_required",
    "invalid_grant",
})


@dataclass(frozen=True)
class Account:
    home_account_id: str
    username: str
    name: str | None = None
    tenant_id: str | None = None
    claims: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def roles(self) -> list[str]:
        """App roles and group ids from the ID token, de-duplicated."""
        merged: list[str] = []
        for value in list(self.claims.get("roles") or []) + list(self.claims.get("groups") or []):
            if value not in merged:
                merged.append(value)
        return merged

    @property
    def preferred_username(self) -> str | None:
        return self.claims.get("preferred_username") or self.username or None


# ==============================
# Token acquisition outcomes
# ==============================
@dataclass(frozen=True)
class Silent:
    access_token: str


@dataclass(frozen=True)
class InteractionRequired:
    reason: str


@dataclass(frozen=True)
class Failed:
    reason: str


TokenOutcome = Silent | InteractionRequired | Failed


class RedirectError(Exception):
    """A broker redirect could not be started."""


class IdentityBroker(ABC):
    config: BrokerConfig

    @abstractmethod
    def initialize(self) -> None: ...

    @abstractmethod
    def handle_redirect_promise(self) -> Account | None:
        """Consume the return leg of a redirect, if this page load is one."""

    @abstractmethod
    def get_active_account(self) -> Account | None: ...

    @abstractmethod
    def set_active_account(self, account: Account | None) -> None: ...

    @abstractmethod
    def get_all_accounts(self) -> list[Account]: ...

    @abstractmethod
    def acquire_token_silent(self, scopes: list[str], account: Account) -> TokenOutcome: ...

    @abstractmethod
    def acquire_token_redirect(self, scopes: list[str], account: Account | None) -> None: ...

    @abstractmethod
    def login_redirect(self, scopes: list[str], login_hint: str | None, redirect_uri: str) -> None: ...

    @abstractmethod
    def logout_redirect(
        self,
        account: Account | None,
        authority: str | None,
        post_logout_redirect_uri: str,
        logout_hint: str | None = None,
    ) -> None: ...


class MsalBroker(IdentityBroker):
    """
    ``IdentityBroker`` backed by MSAL for Python.

    Args:
        tab: Host tab; durable storage holds the token cache and active account,
            per-tab storage holds the pending auth code flow
        config: Tenant-scoped broker configuration
        client: Pre-built MSAL application (tests); built in ``initialize`` otherwise
    """

    def __init__(self, tab: Tab, config: BrokerConfig, client: Any = None):
        self.tab = tab
        self.config = config
        self._client = client
        self._cache = msal.SerializableTokenCache()

    # ------------------------------
    # Storage helpers
    # ------------------------------
    def _load_json(self, key: str, default):
        raw = self.tab.local_storage.get_item(key)
        if not raw:
            return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding unreadable broker state under {key}")
            self.tab.local_storage.remove_item(key)
            return default

    def _persist_cache(self) -> None:
        if self._cache.has_state_changed:
            self.tab.local_storage.set_item(TOKEN_CACHE_KEY, self._cache.serialize())
            self._cache.has_state_changed = False

    def _remember_claims(self, home_account_id: str, claims: dict) -> None:
        known = self._load_json(ACCOUNT_CLAIMS_KEY, {})
        known[home_account_id] = claims
        self.tab.local_storage.set_item(ACCOUNT_CLAIMS_KEY, json.dumps(known))

    def _to_account(self, raw: dict) -> Account:
        home_id = raw.get("home_account_id", "")
        claims = self._load_json(ACCOUNT_CLAIMS_KEY, {}).get(home_id, {})
        return Account(
            home_account_id=home_id,
            username=raw.get("username", ""),
            name=claims.get("name"),
            tenant_id=raw.get("realm") or claims.get("tid"),
            claims=claims,
        )

    def _find_raw_account(self, home_account_id: str) -> dict | None:
        for raw in self._client.get_accounts():
            if raw.get("home_account_id") == home_account_id:
                return raw
        return None

    # ------------------------------
    # Capability surface
    # ------------------------------
    def initialize(self) -> None:
        cached = self.tab.local_storage.get_item(TOKEN_CACHE_KEY)
        if cached:
            try:
                self._cache.deserialize(cached)
            except ValueError:
                logger.warning("Token cache unreadable, starting empty")
        if self._client is None:
            self._client = msal.PublicClientApplication(
                self.config.client_id,
                authority=self.config.authority,
                token_cache=self._cache,
            )
        logger.info(f"Broker initialized for authority {self.config.authority}")

    def handle_redirect_promise(self) -> Account | None:
        storage = self.tab.session_storage
        raw_flow = storage.get_item(AUTH_CODE_FLOW_KEY)
        params = dict(parse_qsl(urlsplit(self.tab.url).query))
        if not raw_flow or not ("code" in params or "error" in params):
            return None

        storage.remove_item(AUTH_CODE_FLOW_KEY)
        self.tab.replace_history(self.tab.origin + self.tab.path)
        try:
            result = self._client.acquire_token_by_auth_code_flow(json.loads(raw_flow), params)
        except ValueError as e:
            logger.warning(f"Redirect response rejected: {e}")
            return None

        if "error" in result:
            logger.warning(f"Redirect sign-in failed: {result.get('error')} {result.get('error_description', '')}")
            return None

        self._persist_cache()
        claims = result.get("id_token_claims") or {}
        raw = None
        for candidate in self._client.get_accounts(username=claims.get("preferred_username")):
            raw = candidate
            break
        if raw is None:
            logger.warning("Redirect succeeded but no cached account was found")
            return None

        self._remember_claims(raw["home_account_id"], claims)
        account = self._to_account(raw)
        self.set_active_account(account)
        logger.info(f"Signed in via redirect, tenant {account.tenant_id}")
        return account

    def get_active_account(self) -> Account | None:
        home_id = self.tab.local_storage.get_item(ACTIVE_ACCOUNT_KEY)
        if not home_id:
            return None
        raw = self._find_raw_account(home_id)
        return self._to_account(raw) if raw else None

    def set_active_account(self, account: Account | None) -> None:
        if account is None:
            self.tab.local_storage.remove_item(ACTIVE_ACCOUNT_KEY)
        else:
            self.tab.local_storage.set_item(ACTIVE_ACCOUNT_KEY, account.home_account_id)

    def get_all_accounts(self) -> list[Account]:
        return [self._to_account(raw) for raw in self._client.get_accounts()]

    def acquire_token_silent(self, scopes: list[str], account: Account) -> TokenOutcome:
        try:
            raw = self._find_raw_account(account.home_account_id)
            if raw is None:
                return InteractionRequired("account_not_cached")
            result = self._client.acquire_token_silent_with_error(scopes, account=raw)
        except Exception as e:
            logger.error(f"Silent token acquisition raised: {e}")
            return Failed(str(e))

        self._persist_cache()
        if result is None:
            return InteractionRequired("no_cached_token")
        if "access_token" in result:
            return Silent(result["access_token"])
        error = result.get("error", "unknown_error")
        if error in INTERACTION_REQUIRED_ERRORS:
            return InteractionRequired(error)
        return Failed(error)

    def _start_auth_code_flow(self, scopes: list[str], login_hint: str | None, redirect_uri: str) -> None:
        try:
            flow = self._client.initiate_auth_code_flow(
                scopes,
                redirect_uri=redirect_uri,
                login_hint=login_hint,
            )
            self.tab.session_storage.set_item(AUTH_CODE_FLOW_KEY, json.dumps(flow))
            self.tab.navigate(flow["auth_uri"])
        except Exception as e:
            raise RedirectError(f"Could not start sign-in redirect: {e}") from e

    def acquire_token_redirect(self, scopes: list[str], account: Account | None) -> None:
        hint = account.preferred_username if account else None
        self._start_auth_code_flow(scopes, hint, self.config.redirect_uri)

    def login_redirect(self, scopes: list[str], login_hint: str | None, redirect_uri: str) -> None:
        self._start_auth_code_flow(scopes, login_hint, redirect_uri)

    def logout_redirect(
        self,
        account: Account | None,
        authority: str | None,
        post_logout_redirect_uri: str,
        logout_hint: str | None = None,
    ) -> None:
        base = (authority or self.config.authority).rstrip("/")
        query = {"post_logout_redirect_uri": post_logout_redirect_uri}
        if logout_hint:
            query["logout_hint"] = logout_hint
        try:
            if account is not None:
                raw = self._find_raw_account(account.home_account_id)
                if raw is not None:
                    self._client.remove_account(raw)
                    self._persist_cache()
            self.set_active_account(None)
            self.tab.navigate(f"{base}/oauth2/v2.0/logout?{urlencode(query)}")
        except Exception as e:
            raise RedirectError(f"Could not start logout redirect: {e}") from e
