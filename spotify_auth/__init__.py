"""Spotify Web API authorization manager.

Acquires, caches, refreshes and shares OAuth2 credentials between threads.
Which grant is used is decided by the exchange backend; which HTTP stack
runs the requests is decided by the injected transport.
"""

from .authorization import (
    PKCEPair,
    code_challenge_from_verifier,
    extract_code_from_redirect_url,
    generate_code_verifier,
    generate_pkce_pair,
    generate_state,
    make_authorization_url,
)
from .backends import (
    ClientBackend,
    ClientCredentialsBackend,
    CodeGrant,
    ExchangeBackend,
    PKCEBackend,
    PKCEProxyBackend,
    ProxyBackend,
)
from .credentials import CredentialStore
from .errors import (
    AuthError,
    AuthorizationDeniedError,
    InvalidGrantError,
    MalformedResponseError,
    NetworkFailureError,
    NoRefreshTokenError,
    StateMismatchError,
    TransportError,
)
from .manager import AuthorizationManager
from .signer import RequestSigner, SpotifyAPIError
from .token_cache import TokenCache
from .transport import HTTPRequest, HTTPResponse, HttpxTransport, NetworkTransport

__all__ = [
    "AuthError",
    "AuthorizationDeniedError",
    "AuthorizationManager",
    "ClientBackend",
    "ClientCredentialsBackend",
    "CodeGrant",
    "CredentialStore",
    "ExchangeBackend",
    "HTTPRequest",
    "HTTPResponse",
    "HttpxTransport",
    "InvalidGrantError",
    "MalformedResponseError",
    "NetworkFailureError",
    "NetworkTransport",
    "NoRefreshTokenError",
    "PKCEBackend",
    "PKCEPair",
    "PKCEProxyBackend",
    "ProxyBackend",
    "RequestSigner",
    "SpotifyAPIError",
    "StateMismatchError",
    "TokenCache",
    "TransportError",
    "code_challenge_from_verifier",
    "extract_code_from_redirect_url",
    "generate_code_verifier",
    "generate_pkce_pair",
    "generate_state",
    "make_authorization_url",
]
