#!/usr/bin/env python3
"""Session provider for mailbox-sweeper.

Two identities are supported:

* interactive (delegated): a public client that signs the operator in with the
  browser or a device code, caching tokens so later runs stay silent;
* service (application): a confidential client that authenticates with a
  certificate and may reach any mailbox its app roles allow.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlparse

from graph_client import DependencyError, GraphClient
from models import ItemKind, Session
from token_store import TokenStore, TokenStoreError

logger = logging.getLogger(__name__)

GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
PROFILE_SCOPE = "User.Read"
DEFAULT_TENANT = "organizations"
DEFAULT_REDIRECT_URI = "http://localhost:8765"


class ConfigError(RuntimeError):
    """Raised when required configuration is missing or invalid."""


class MissingCredentialError(ConfigError):
    """Raised when service mode lacks part of its credential set."""


class AuthError(RuntimeError):
    """Raised when authentication fails or lacks a permission."""


@dataclass
class AuthConfig:
    mode: str
    client_id: str
    tenant_id: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    profile: str = "default"
    token_store_mode: str = "auto"
    certificate_thumbprint: str = ""
    certificate_key_path: str = ""
    login_method: str = "browser"

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant_id}"

    @property
    def is_service(self) -> bool:
        return self.mode == "service"

    @classmethod
    def from_env(
        cls,
        mode: str = "interactive",
        client_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
        certificate_thumbprint: Optional[str] = None,
        certificate_key_path: Optional[str] = None,
        profile: Optional[str] = None,
        login_method: str = "browser",
    ) -> "AuthConfig":
        """Build a config from SWEEPER_* variables, letting explicit values win."""
        token_store_mode = os.environ.get("SWEEPER_TOKEN_STORE", "auto").strip().lower() or "auto"
        if token_store_mode not in {"auto", "keyring", "file"}:
            raise ConfigError("SWEEPER_TOKEN_STORE must be one of: auto, keyring, file")

        default_tenant = DEFAULT_TENANT if mode == "interactive" else ""
        return cls(
            mode=mode,
            client_id=_pick(client_id, "SWEEPER_CLIENT_ID"),
            tenant_id=_pick(tenant_id, "SWEEPER_TENANT_ID") or default_tenant,
            redirect_uri=_pick(None, "SWEEPER_REDIRECT_URI") or DEFAULT_REDIRECT_URI,
            profile=profile or os.environ.get("SWEEPER_PROFILE", "default"),
            token_store_mode=token_store_mode,
            certificate_thumbprint=_pick(certificate_thumbprint, "SWEEPER_CERT_THUMBPRINT"),
            certificate_key_path=_pick(certificate_key_path, "SWEEPER_CERT_KEY_PATH"),
            login_method=login_method,
        )

    def validate(self) -> None:
        if self.mode not in {"interactive", "service"}:
            raise ConfigError(f"Unknown auth mode '{self.mode}'")

        if self.is_service:
            missing = [
                flag
                for flag, value in (
                    ("--client-id", self.client_id),
                    ("--tenant-id", self.tenant_id),
                    ("--certificate-thumbprint", self.certificate_thumbprint),
                    ("--certificate-key", self.certificate_key_path),
                )
                if not value
            ]
            if missing:
                raise MissingCredentialError(
                    "Service identity is required when targeting other mailboxes; missing "
                    + ", ".join(missing)
                )
            return

        if not self.client_id:
            raise ConfigError("SWEEPER_CLIENT_ID is required for interactive sign-in")


def required_scopes(kind: ItemKind, mutating: bool) -> List[str]:
    """Smallest Graph permission covering the action on the item kind."""
    resource = "Calendars" if kind is ItemKind.MEETING else "Mail"
    return [f"{resource}.ReadWrite" if mutating else f"{resource}.Read"]


class AuthManager:
    def __init__(self, config: AuthConfig, scopes: Optional[List[str]] = None):
        self.config = config
        self.scopes = list(scopes or [])
        self._cache = None
        self._app = None
        self.store: Optional[TokenStore] = None
        if not config.is_service:
            self.store = TokenStore(profile=config.profile, mode=config.token_store_mode)

    @property
    def request_scopes(self) -> List[str]:
        if self.config.is_service:
            return [GRAPH_DEFAULT_SCOPE]
        scopes = list(self.scopes)
        if PROFILE_SCOPE not in scopes:
            scopes.append(PROFILE_SCOPE)
        return scopes

    def sign_in(self) -> Dict[str, Any]:
        """Return an MSAL token result, prompting only when nothing is cached."""
        app = self._ensure_app()
        if self.config.is_service:
            result = app.acquire_token_for_client(scopes=self.request_scopes)
            if not result or "access_token" not in result:
                raise AuthError(_extract_auth_error(result))
            return result

        result = self._acquire_silent(app)
        if result is not None:
            logger.info("Reusing cached sign-in for profile '%s'", self.config.profile)
            return result

        method = (self.config.login_method or "browser").strip().lower()
        if method == "browser":
            result = app.acquire_token_interactive(
                scopes=self.request_scopes,
                prompt="select_account",
                port=_extract_local_redirect_port(self.config.redirect_uri),
            )
        elif method == "device":
            flow = app.initiate_device_flow(scopes=self.request_scopes)
            if "user_code" not in flow:
                raise AuthError("Device code flow initialization failed")
            print(flow.get("message", ""), file=sys.stderr)
            result = app.acquire_token_by_device_flow(flow)
        else:
            raise AuthError("Auth method must be one of: browser, device")

        if not result or "access_token" not in result:
            raise AuthError(_extract_auth_error(result))
        self._persist_cache_if_changed()
        return result

    def get_access_token(self) -> str:
        app = self._ensure_app()
        if self.config.is_service:
            result = app.acquire_token_for_client(scopes=self.request_scopes)
        else:
            result = self._acquire_silent(app)
        if result and "access_token" in result:
            return result["access_token"]
        raise AuthError("Could not refresh the access token; sign in again")

    def status(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "mode": self.config.mode,
            "profile": self.config.profile,
            "tenant_id": self.config.tenant_id,
            "configured": bool(self.config.client_id),
            "authenticated": False,
        }
        if self.store is not None:
            payload["token_store_backend"] = self.store.backend_name()
        if not self.config.client_id:
            payload["message"] = "SWEEPER_CLIENT_ID is not set"
            return payload

        try:
            app = self._ensure_app()
        except (DependencyError, TokenStoreError, ConfigError) as err:
            payload["message"] = str(err)
            return payload

        if self.config.is_service:
            result = app.acquire_token_for_client(scopes=self.request_scopes)
        else:
            accounts = app.get_accounts()
            if not accounts:
                payload["message"] = "No cached account for this profile"
                return payload
            payload["account"] = accounts[0].get("username")
            result = self._acquire_silent(app)

        if result and "access_token" in result:
            payload["authenticated"] = True
            payload["scopes"] = sorted(granted_scopes(result, self.config.is_service, self.request_scopes))
            payload["expires_on"] = _epoch_to_iso8601(result.get("expires_on"))
        else:
            payload["message"] = _extract_auth_error(result)
        return payload

    def logout(self) -> Dict[str, Any]:
        if self.store is not None:
            self.store.clear()
        self._app = None
        self._cache = None
        return {"profile": self.config.profile, "mode": self.config.mode, "logged_out": True}

    def _acquire_silent(self, app) -> Optional[Dict[str, Any]]:
        accounts = app.get_accounts()
        if not accounts:
            return None
        result = app.acquire_token_silent(self.request_scopes, account=accounts[0])
        self._persist_cache_if_changed()
        if result and "access_token" in result:
            result.setdefault("_account_username", accounts[0].get("username"))
            return result
        return None

    def _ensure_app(self):
        if self._app is not None:
            return self._app

        self.config.validate()
        try:
            import msal  # type: ignore
        except ImportError as err:
            raise DependencyError(
                "Missing dependency 'msal'. Install with: python3 -m pip install msal"
            ) from err

        if self.config.is_service:
            self._app = msal.ConfidentialClientApplication(
                client_id=self.config.client_id,
                authority=self.config.authority,
                client_credential={
                    "thumbprint": self.config.certificate_thumbprint,
                    "private_key": _read_private_key(self.config.certificate_key_path),
                },
            )
            return self._app

        self._cache = msal.SerializableTokenCache()
        serialized = self.store.load() if self.store is not None else None
        if serialized:
            try:
                self._cache.deserialize(serialized)
            except ValueError:
                logger.warning("Discarding unreadable token cache for profile '%s'", self.config.profile)
                self._cache = msal.SerializableTokenCache()

        self._app = msal.PublicClientApplication(
            client_id=self.config.client_id,
            authority=self.config.authority,
            token_cache=self._cache,
        )
        return self._app

    def _persist_cache_if_changed(self) -> Optional[str]:
        if self._cache is None or self.store is None:
            return None
        if not self._cache.has_state_changed:
            return None
        return self.store.save(self._cache.serialize())


def acquire_session(
    config: AuthConfig,
    scopes: List[str],
    existing: Optional[Session] = None,
    client_factory: Callable[..., Any] = GraphClient,
) -> Session:
    """Authenticate once and return a Session holding the granted scopes.

    An ``existing`` session of the same identity that already grants every
    scope is handed back without signing in again.
    """
    identity = "application" if config.is_service else "delegated"
    if existing is not None and existing.identity == identity and existing.has_scopes(scopes):
        logger.debug("Session for %s already grants %s", existing.principal, ", ".join(scopes))
        return existing

    config.validate()
    try:
        manager = AuthManager(config, scopes=scopes)
        result = manager.sign_in()
    except TokenStoreError as err:
        raise AuthError(str(err)) from err

    client = client_factory(manager.get_access_token)
    if config.is_service:
        principal = config.client_id
    else:
        principal = _principal_from_result(result) or _principal_from_profile(client)
    if not principal:
        raise AuthError("Could not determine the signed-in account")

    session = Session(
        principal=principal,
        scopes=frozenset(granted_scopes(result, config.is_service, manager.request_scopes)),
        identity=identity,
        client=client,
        auth=manager,
    )
    if not session.has_scopes(scopes):
        missing = [scope for scope in scopes if not session.has_scopes([scope])]
        raise AuthError(
            f"{principal} was not granted the required permission(s): {', '.join(missing)}"
        )

    logger.info("Connected as %s (%s)", principal, identity)
    return session


def granted_scopes(
    result: Dict[str, Any],
    application: bool,
    requested: Sequence[str] = (),
) -> List[str]:
    """Scopes or app roles a token result carries.

    Results served from MSAL's cache have no ``scope`` key, so delegated
    scopes come from the token's ``scp`` claim and then from ``requested``.
    MSAL only returns a cached token that covers the requested scopes.
    """
    if application:
        return token_roles(result.get("access_token", ""))
    raw = result.get("scope") or token_claims(result.get("access_token", "")).get("scp")
    if not raw:
        return list(requested)
    return [scope.rsplit("/", 1)[-1] for scope in str(raw).split()]


def token_claims(access_token: str) -> Dict[str, Any]:
    """Decode the payload of a JWT-shaped token without verifying it."""
    parts = access_token.split(".")
    if len(parts) < 2:
        return {}
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except ValueError:
        return {}
    return claims if isinstance(claims, dict) else {}


def token_roles(access_token: str) -> List[str]:
    """Read the ``roles`` claim of an app-only token."""
    roles = token_claims(access_token).get("roles")
    return [str(role) for role in roles or []]


def _principal_from_result(result: Dict[str, Any]) -> str:
    claims = result.get("id_token_claims") or {}
    return (
        claims.get("preferred_username")
        or claims.get("email")
        or claims.get("upn")
        or result.get("_account_username")
        or ""
    )


def _principal_from_profile(client: Any) -> str:
    profile = client.get_me()
    return profile.get("mail") or profile.get("userPrincipalName") or ""


def _read_private_key(path: str) -> str:
    try:
        return Path(path).expanduser().read_text(encoding="utf-8")
    except OSError as err:
        raise ConfigError(f"Cannot read certificate key '{path}': {err}") from err


def _pick(explicit: Optional[str], env_name: str) -> str:
    if explicit:
        return explicit.strip()
    return os.environ.get(env_name, "").strip()


def _extract_local_redirect_port(redirect_uri: str) -> int:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"http", "https"}:
        raise ConfigError("SWEEPER_REDIRECT_URI must be an http(s) URL for browser auth")
    if parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise ConfigError("SWEEPER_REDIRECT_URI host must be localhost or 127.0.0.1")
    if parsed.port is not None:
        return parsed.port
    return 443 if parsed.scheme == "https" else 80


def _epoch_to_iso8601(value: Any) -> Optional[str]:
    try:
        epoch = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


def _extract_auth_error(result: Optional[Dict[str, Any]]) -> str:
    if not result:
        return "Authentication failed with an empty response"
    if "error_description" in result:
        return str(result["error_description"])
    if "error" in result:
        return str(result["error"])
    return "Authentication failed"
