from typing import Any, Dict, Optional

from .authorization import SPOTIFY_TOKEN_URL
from .backends import (
    ClientBackend,
    ClientCredentialsBackend,
    ExchangeBackend,
    PKCEBackend,
    PKCEProxyBackend,
    ProxyBackend,
)
from .manager import DEFAULT_REFRESH_MARGIN, AuthorizationManager
from .signer import RequestSigner
from .token_cache import DEFAULT_TOKEN_CACHE_PATH, TokenCache
from .transport import HttpxTransport, NetworkTransport


def _str(config: Dict[str, Any], key: str, default: str = "") -> str:
    return str(config.get(key) or default).strip()


def backend_from_config(config: Dict[str, Any]) -> ExchangeBackend:
    """Build the exchange backend selected by ``spotify_backend``."""

    config = config or {}
    kind = _str(config, "spotify_backend", "pkce")
    client_id = _str(config, "spotify_client_id")
    if not client_id:
        raise ValueError("Missing spotify_client_id in config")

    token_url = _str(config, "spotify_token_url", SPOTIFY_TOKEN_URL)
    secret = _str(config, "spotify_client_secret") or None

    if kind == "client":
        return ClientBackend(client_id=client_id, client_secret=secret, token_url=token_url)
    if kind == "pkce":
        return PKCEBackend(client_id=client_id, token_url=token_url)
    if kind == "client_credentials":
        return ClientCredentialsBackend(
            client_id=client_id,
            client_secret=secret,
            token_url=token_url,
            scopes=frozenset(config.get("spotify_scopes") or []),
        )
    if kind in ("proxy", "pkce_proxy"):
        proxy_token_url = _str(config, "spotify_proxy_token_url")
        proxy_refresh_url = _str(config, "spotify_proxy_refresh_url")
        if not proxy_token_url or not proxy_refresh_url:
            raise ValueError("Proxy backends need spotify_proxy_token_url and spotify_proxy_refresh_url")
        cls = ProxyBackend if kind == "proxy" else PKCEProxyBackend
        return cls(client_id=client_id, token_url=proxy_token_url, token_refresh_url=proxy_refresh_url)

    raise ValueError(f"Unknown spotify_backend: {kind!r}")


def token_cache_from_config(config: Dict[str, Any]) -> Optional[TokenCache]:
    """The token cache, or None when ``spotify_cache_tokens`` is off."""

    config = config or {}
    if not bool(config.get("spotify_cache_tokens", True)):
        return None
    return TokenCache(
        _str(config, "spotify_token_cache_path", DEFAULT_TOKEN_CACHE_PATH),
        include_secrets=bool(config.get("spotify_persist_secrets", False)),
    )


def manager_from_config(
    config: Dict[str, Any],
    *,
    transport: Optional[NetworkTransport] = None,
    cache: Optional[TokenCache] = None,
) -> AuthorizationManager:
    """Build a manager from config, restoring cached credentials when possible.

    A cached snapshot is only used when its backend matches the configured
    one; otherwise the manager starts unauthorized. With a cache, the
    manager is attached to it so every change is persisted.
    """

    config = config or {}
    backend = backend_from_config(config)
    if transport is None:
        transport = HttpxTransport(timeout=float(config.get("spotify_http_timeout", 30)))
    refresh_margin = float(config.get("spotify_refresh_margin", DEFAULT_REFRESH_MARGIN))

    manager = None
    if cache is not None:
        cached = cache.load(
            transport=transport,
            client_secret=getattr(backend, "client_secret", None),
            refresh_margin=refresh_margin,
        )
        if cached is not None and cached.backend == backend:
            manager = cached

    if manager is None:
        manager = AuthorizationManager(backend, transport=transport, refresh_margin=refresh_margin)

    if cache is not None:
        cache.attach(manager)
    return manager


def signer_from_config(manager: AuthorizationManager, config: Dict[str, Any]) -> RequestSigner:
    return RequestSigner(manager, auto_refresh=bool((config or {}).get("spotify_auto_refresh", True)))
