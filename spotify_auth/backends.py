"""Token exchange strategies.

A backend knows *how* to turn an authorization code (or a refresh token)
into a CredentialStore. It holds only immutable configuration, talks to
the network exclusively through the injected transport, and never touches
the manager's state: it returns a new snapshot and the manager installs it.

Variants:
- ClientBackend: client id + secret, direct exchange with Spotify.
- PKCEBackend: client id + caller-supplied code verifier, no secret.
- ProxyBackend: delegates to a server that holds the secret.
- PKCEProxyBackend: PKCE exchange relayed through a proxy.
- ClientCredentialsBackend: app-only tokens, renewed without a refresh token.
"""

import dataclasses
import json
import logging
import urllib.parse
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, FrozenSet, Optional, Tuple, Type

from .authorization import SPOTIFY_TOKEN_URL
from .credentials import CredentialStore, parse_scopes
from .errors import (
    InvalidGrantError,
    MalformedResponseError,
    NetworkFailureError,
    TransportError,
)
from .transport import HTTPRequest, HTTPResponse, NetworkTransport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CodeGrant:
    """Input of an authorization-code exchange.

    ``redirect_uri`` is required by the client and PKCE backends,
    ``code_verifier`` by the PKCE ones. ``scopes`` are the scopes that were
    requested, used to validate (and fill in) the granted scope set.
    """

    code: str
    redirect_uri: Optional[str] = None
    code_verifier: Optional[str] = None
    scopes: Optional[FrozenSet[str]] = None


class ExchangeBackend(ABC):
    kind: ClassVar[str] = ""
    # Fields dropped from to_dict() unless include_secrets=True.
    secret_fields: ClassVar[Tuple[str, ...]] = ()
    requires_refresh_token: ClassVar[bool] = True
    supports_authorization_code: ClassVar[bool] = True
    uses_pkce: ClassVar[bool] = False

    client_id: str

    @abstractmethod
    def exchange(self, grant: Optional[CodeGrant], transport: NetworkTransport) -> CredentialStore:
        """Perform the initial exchange and return a fully populated store."""

    @abstractmethod
    def refresh(self, refresh_token: Optional[str], transport: NetworkTransport) -> CredentialStore:
        """Exchange ``refresh_token`` for a new store."""

    # -----------------
    # Serialization
    # -----------------

    def to_dict(self, *, include_secrets: bool = False) -> Dict[str, Any]:
        data: Dict[str, Any] = {"kind": self.kind}
        for f in dataclasses.fields(self):
            if f.name in self.secret_fields and not include_secrets:
                continue
            value = getattr(self, f.name)
            if isinstance(value, frozenset):
                value = sorted(value)
            data[f.name] = value
        return data

    @staticmethod
    def from_dict(data: Dict[str, Any], *, client_secret: Optional[str] = None) -> "ExchangeBackend":
        """Rebuild a backend from ``to_dict`` output.

        ``client_secret`` fills in a secret that was kept out of the
        persisted form; a persisted secret wins over it.
        """

        data = dict(data or {})
        kind = data.pop("kind", None)
        cls = BACKENDS.get(str(kind))
        if cls is None:
            raise ValueError(f"Unknown backend kind: {kind!r}")

        names = {f.name for f in dataclasses.fields(cls)}
        unknown = set(data) - names
        if unknown:
            raise ValueError(f"Unexpected fields for {kind} backend: {sorted(unknown)}")

        if client_secret is not None and "client_secret" in names and not data.get("client_secret"):
            data["client_secret"] = client_secret
        return cls(**data)

    # -----------------
    # HTTP helpers
    # -----------------

    def _post_form(self, transport: NetworkTransport, url: str, form: Dict[str, Any]) -> Tuple[Dict[str, Any], bytes]:
        data = {k: str(v) for k, v in (form or {}).items() if v is not None}
        request = HTTPRequest(
            method="POST",
            url=url,
            headers={
                "Content-Type": "application/x-www-form-urlencoded",
                "Accept": "application/json",
            },
            body=urllib.parse.urlencode(data).encode("utf-8"),
        )

        logger.debug("POST %s (grant_type=%s)", url, data.get("grant_type"))
        try:
            resp = transport(request)
        except (TransportError, OSError) as e:
            raise NetworkFailureError(f"Token request to {url} failed: {e}") from e

        return _parse_token_response(resp), resp.body

    def _store_from(self, transport: NetworkTransport, url: str, form: Dict[str, Any], **kwargs) -> CredentialStore:
        payload, body = self._post_form(transport, url, form)
        return CredentialStore.from_token_response(payload, body=body, **kwargs)


def _parse_token_response(resp: HTTPResponse) -> Dict[str, Any]:
    status = resp.status_code

    if status >= 500:
        raise NetworkFailureError(
            f"Token endpoint error (HTTP {status}): {resp.text}", status_code=status
        )

    try:
        payload = resp.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise MalformedResponseError(
            f"Token response was not JSON (HTTP {status}): {resp.text}",
            body=resp.body,
            status_code=status,
        ) from e

    if 400 <= status < 500:
        error = payload.get("error") if isinstance(payload, dict) else None
        # Spotify's regular API error shape: {"error": {"status": 400, "message": "..."}}
        if isinstance(error, dict):
            error = error.get("message") or error.get("status")
        if not error:
            raise MalformedResponseError(
                f"Token endpoint rejected the request (HTTP {status}) without an error code: {resp.text}",
                body=resp.body,
                status_code=status,
            )
        description = payload.get("error_description")
        raise InvalidGrantError(
            str(error),
            str(description) if description else None,
            status_code=status,
        )

    if not 200 <= status < 300:
        raise MalformedResponseError(
            f"Unexpected token endpoint status {status}: {resp.text}",
            body=resp.body,
            status_code=status,
        )

    if not isinstance(payload, dict):
        raise MalformedResponseError(
            f"Token response was not an object: {resp.text}", body=resp.body, status_code=status
        )
    return payload


def _require(value: Optional[str], name: str, backend: str) -> str:
    if not value:
        raise ValueError(f"{backend} requires {name}")
    return value


@dataclass(frozen=True)
class ClientBackend(ExchangeBackend):
    """Authorization Code flow; this process holds the client secret."""

    kind: ClassVar[str] = "client"
    secret_fields: ClassVar[Tuple[str, ...]] = ("client_secret",)

    client_id: str
    client_secret: Optional[str] = field(default=None, repr=False)
    token_url: str = SPOTIFY_TOKEN_URL

    def exchange(self, grant: Optional[CodeGrant], transport: NetworkTransport) -> CredentialStore:
        if grant is None:
            raise ValueError("ClientBackend requires an authorization code")
        form = {
            "grant_type": "authorization_code",
            "code": _require(grant.code, "code", "ClientBackend"),
            "redirect_uri": _require(grant.redirect_uri, "redirect_uri", "ClientBackend"),
            "client_id": self.client_id,
            "client_secret": _require(self.client_secret, "client_secret", "ClientBackend"),
        }
        return self._store_from(transport, self.token_url, form, scopes=grant.scopes)

    def refresh(self, refresh_token: Optional[str], transport: NetworkTransport) -> CredentialStore:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": _require(refresh_token, "refresh_token", "ClientBackend"),
            "client_id": self.client_id,
            "client_secret": _require(self.client_secret, "client_secret", "ClientBackend"),
        }
        return self._store_from(transport, self.token_url, form, refresh_token=refresh_token)


@dataclass(frozen=True)
class PKCEBackend(ExchangeBackend):
    """Authorization Code flow with PKCE; no secret is involved."""

    kind: ClassVar[str] = "pkce"
    uses_pkce: ClassVar[bool] = True

    client_id: str
    token_url: str = SPOTIFY_TOKEN_URL

    def exchange(self, grant: Optional[CodeGrant], transport: NetworkTransport) -> CredentialStore:
        if grant is None:
            raise ValueError("PKCEBackend requires an authorization code")
        form = {
            "grant_type": "authorization_code",
            "code": _require(grant.code, "code", "PKCEBackend"),
            "redirect_uri": _require(grant.redirect_uri, "redirect_uri", "PKCEBackend"),
            "client_id": self.client_id,
            "code_verifier": _require(grant.code_verifier, "code_verifier", "PKCEBackend"),
        }
        return self._store_from(transport, self.token_url, form, scopes=grant.scopes)

    def refresh(self, refresh_token: Optional[str], transport: NetworkTransport) -> CredentialStore:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": _require(refresh_token, "refresh_token", "PKCEBackend"),
            "client_id": self.client_id,
        }
        return self._store_from(transport, self.token_url, form, refresh_token=refresh_token)


@dataclass(frozen=True)
class ProxyBackend(ExchangeBackend):
    """Authorization Code flow relayed through a trusted proxy server.

    Only ``grant_type`` and the code (or refresh token) leave this process;
    the proxy adds the client id, secret and redirect URI and answers with
    Spotify's token JSON. ``client_id`` is kept for building authorization
    URLs.
    """

    kind: ClassVar[str] = "proxy"

    client_id: str
    token_url: str
    token_refresh_url: str

    def exchange(self, grant: Optional[CodeGrant], transport: NetworkTransport) -> CredentialStore:
        if grant is None:
            raise ValueError("ProxyBackend requires an authorization code")
        form = {
            "grant_type": "authorization_code",
            "code": _require(grant.code, "code", "ProxyBackend"),
        }
        return self._store_from(transport, self.token_url, form, scopes=grant.scopes)

    def refresh(self, refresh_token: Optional[str], transport: NetworkTransport) -> CredentialStore:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": _require(refresh_token, "refresh_token", "ProxyBackend"),
        }
        return self._store_from(transport, self.token_refresh_url, form, refresh_token=refresh_token)


@dataclass(frozen=True)
class PKCEProxyBackend(ExchangeBackend):
    """PKCE exchange relayed through a proxy (which may add a secret)."""

    kind: ClassVar[str] = "pkce_proxy"
    uses_pkce: ClassVar[bool] = True

    client_id: str
    token_url: str
    token_refresh_url: str

    def exchange(self, grant: Optional[CodeGrant], transport: NetworkTransport) -> CredentialStore:
        if grant is None:
            raise ValueError("PKCEProxyBackend requires an authorization code")
        form = {
            "grant_type": "authorization_code",
            "code": _require(grant.code, "code", "PKCEProxyBackend"),
            "redirect_uri": _require(grant.redirect_uri, "redirect_uri", "PKCEProxyBackend"),
            "client_id": self.client_id,
            "code_verifier": _require(grant.code_verifier, "code_verifier", "PKCEProxyBackend"),
        }
        return self._store_from(transport, self.token_url, form, scopes=grant.scopes)

    def refresh(self, refresh_token: Optional[str], transport: NetworkTransport) -> CredentialStore:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": _require(refresh_token, "refresh_token", "PKCEProxyBackend"),
        }
        return self._store_from(transport, self.token_refresh_url, form, refresh_token=refresh_token)


@dataclass(frozen=True)
class ClientCredentialsBackend(ExchangeBackend):
    """Client Credentials flow: app-only tokens, never a refresh token.

    ``refresh`` simply runs the exchange again.
    """

    kind: ClassVar[str] = "client_credentials"
    secret_fields: ClassVar[Tuple[str, ...]] = ("client_secret",)
    requires_refresh_token: ClassVar[bool] = False
    supports_authorization_code: ClassVar[bool] = False

    client_id: str
    client_secret: Optional[str] = field(default=None, repr=False)
    token_url: str = SPOTIFY_TOKEN_URL
    scopes: FrozenSet[str] = frozenset()

    def __post_init__(self):
        object.__setattr__(self, "scopes", parse_scopes(self.scopes))

    def exchange(self, grant: Optional[CodeGrant], transport: NetworkTransport) -> CredentialStore:
        form = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": _require(self.client_secret, "client_secret", "ClientCredentialsBackend"),
            "scope": " ".join(sorted(self.scopes)) or None,
        }
        return self._store_from(transport, self.token_url, form, scopes=self.scopes)

    def refresh(self, refresh_token: Optional[str], transport: NetworkTransport) -> CredentialStore:
        return self.exchange(None, transport)


BACKENDS: Dict[str, Type[ExchangeBackend]] = {
    cls.kind: cls
    for cls in (ClientBackend, PKCEBackend, ProxyBackend, PKCEProxyBackend, ClientCredentialsBackend)
}
