import json
import logging
import threading
import time
from concurrent.futures import Future, wait
from typing import Any, Callable, Dict, Iterable, List, Optional

from .authorization import extract_code_from_redirect_url, make_authorization_url, strip_query
from .backends import CodeGrant, ExchangeBackend
from .credentials import EMPTY_CREDENTIALS, CredentialStore, parse_scopes
from .errors import AuthorizationDeniedError, NoRefreshTokenError, StateMismatchError
from .transport import HttpxTransport, NetworkTransport

logger = logging.getLogger(__name__)

# Refresh proactively when the token has this many seconds (or fewer) left.
DEFAULT_REFRESH_MARGIN = 300.0

Listener = Callable[[], None]


class AuthorizationManager:
    """Owns the Spotify credentials and keeps them fresh.

    The manager is safe to share between threads:

    - ``access_token()`` / ``is_authorized()`` are pure reads of the last
      installed CredentialStore and never wait for the network.
    - At most one exchange (authorize or refresh) runs at a time. A refresh
      requested while one is in flight attaches to it and gets the same
      result (or the same exception) instead of spending the refresh token
      a second time.
    - A new store is installed in a single assignment; listeners are called
      afterwards, with no arguments, once per install.

    The manager never retries on its own and never refreshes in the
    background; callers trigger refreshes through ``refresh_tokens`` or
    ``valid_access_token``.
    """

    def __init__(
        self,
        backend: ExchangeBackend,
        *,
        transport: Optional[NetworkTransport] = None,
        credentials: Optional[CredentialStore] = None,
        refresh_margin: float = DEFAULT_REFRESH_MARGIN,
        clock: Callable[[], float] = time.time,
    ):
        if not isinstance(backend, ExchangeBackend):
            raise TypeError(f"backend must be an ExchangeBackend, got {type(backend).__name__}")
        if refresh_margin < 0:
            raise ValueError("refresh_margin must be >= 0")

        self._backend = backend
        self._owns_transport = transport is None
        self._transport = transport if transport is not None else HttpxTransport()
        self._credentials = credentials or EMPTY_CREDENTIALS
        self.refresh_margin = float(refresh_margin)
        self._clock = clock

        # Guards _credentials, _pending and _generation. Never held during I/O.
        self._lock = threading.Lock()
        self._pending: Optional[Future] = None
        # Bumped by deauthorize() so an exchange that started earlier is not installed.
        self._generation = 0

        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()

    # -----------------
    # Reads
    # -----------------

    @property
    def backend(self) -> ExchangeBackend:
        return self._backend

    @property
    def transport(self) -> NetworkTransport:
        return self._transport

    @property
    def credentials(self) -> CredentialStore:
        """The current snapshot. Immutable, so safe to hand out."""

        with self._lock:
            return self._credentials

    def access_token(self) -> Optional[str]:
        token = self.credentials.access_token
        return token or None

    def is_authorized(self, scopes: Optional[Iterable[str]] = None) -> bool:
        """True when an access token is held (and, if given, all ``scopes`` were granted)."""

        creds = self.credentials
        if creds.is_empty:
            return False
        if scopes is None:
            return True
        return parse_scopes(scopes) <= creds.scopes

    def access_token_is_expired(self, tolerance: Optional[float] = None) -> bool:
        margin = self.refresh_margin if tolerance is None else float(tolerance)
        return self.credentials.expires_within(margin, now=self._clock())

    @property
    def is_exchange_in_flight(self) -> bool:
        with self._lock:
            return self._pending is not None

    # -----------------
    # Authorization URL / redirect handling
    # -----------------

    def make_authorization_url(
        self,
        *,
        redirect_uri: str,
        scopes: Optional[Iterable[str]] = None,
        state: Optional[str] = None,
        show_dialog: bool = False,
        code_challenge: Optional[str] = None,
    ) -> str:
        if not self._backend.supports_authorization_code:
            raise ValueError(f"{type(self._backend).__name__} does not use user authorization")
        if self._backend.uses_pkce and not code_challenge:
            raise ValueError("A PKCE backend requires code_challenge")

        return make_authorization_url(
            client_id=self._backend.client_id,
            redirect_uri=redirect_uri,
            scopes=scopes,
            state=state,
            show_dialog=show_dialog,
            code_challenge=code_challenge if self._backend.uses_pkce else None,
        )

    def authorize_from_redirect(
        self,
        redirect_uri_with_query: str,
        *,
        state: Optional[str] = None,
        code_verifier: Optional[str] = None,
        scopes: Optional[Iterable[str]] = None,
    ) -> CredentialStore:
        """Finish the authorization flow from the URL Spotify redirected to.

        ``state`` must match the value sent with the authorization URL when
        one was sent. The redirect URI passed to the token endpoint is the
        given URL without its query string.
        """

        params = extract_code_from_redirect_url(redirect_uri_with_query)
        if "error" in params:
            raise AuthorizationDeniedError(params["error"], params.get("state"))
        if params.get("state") != state:
            raise StateMismatchError(state, params.get("state"))
        if "code" not in params:
            raise ValueError(f"Redirect URL has no code: {redirect_uri_with_query}")

        return self.authorize(
            code=params["code"],
            redirect_uri=strip_query(redirect_uri_with_query),
            code_verifier=code_verifier,
            scopes=scopes,
        )

    # -----------------
    # Exchanges
    # -----------------

    def authorize(
        self,
        code: Optional[str] = None,
        *,
        redirect_uri: Optional[str] = None,
        code_verifier: Optional[str] = None,
        scopes: Optional[Iterable[str]] = None,
    ) -> CredentialStore:
        """Run the backend's initial exchange and install the result.

        ``code`` is required by every backend except the client-credentials
        one. Raises InvalidGrantError, NetworkFailureError or
        MalformedResponseError; the previous credentials stay in place on
        failure.
        """

        grant = None
        if code is not None:
            grant = CodeGrant(
                code=code,
                redirect_uri=redirect_uri,
                code_verifier=code_verifier,
                scopes=parse_scopes(scopes) if scopes is not None else None,
            )

        def run(_current: CredentialStore) -> CredentialStore:
            return self._backend.exchange(grant, self._transport)

        # Never attach: an authorize waits out whatever is in flight and runs its own exchange.
        while True:
            result = self._run_exchange("authorize", run, attach=False)
            if result is not None:
                return result

    def refresh_tokens(self, only_if_expired: bool = False) -> Optional[CredentialStore]:
        """Refresh the access token.

        With ``only_if_expired`` this is a no-op (returns None) while the
        token has more than ``refresh_margin`` seconds left. Concurrent
        callers share a single in-flight exchange.
        """

        now = self._clock()

        # Checked under the lock, against whatever is installed when no exchange is in flight.
        def is_fresh(current: CredentialStore) -> bool:
            return not current.is_empty and not current.expires_within(self.refresh_margin, now=now)

        def run(current: CredentialStore) -> CredentialStore:
            if self._backend.requires_refresh_token and not current.refresh_token:
                raise NoRefreshTokenError("No refresh token available; authorize first.")
            store = self._backend.refresh(current.refresh_token, self._transport)
            if not store.scopes and current.scopes:
                store = CredentialStore(
                    access_token=store.access_token,
                    refresh_token=store.refresh_token,
                    expires_at=store.expires_at,
                    scopes=current.scopes,
                )
            return store

        return self._run_exchange("refresh", run, attach=True, skip=is_fresh if only_if_expired else None)

    def valid_access_token(self) -> str:
        """Return an access token that is not about to expire, refreshing if needed."""

        self.refresh_tokens(only_if_expired=True)
        token = self.access_token()
        if not token:
            raise NoRefreshTokenError("Not authorized; authorize first.")
        return token

    def deauthorize(self) -> None:
        with self._lock:
            self._credentials = EMPTY_CREDENTIALS
            self._generation += 1
        logger.info("Deauthorized; credentials cleared")
        self._notify()

    def _run_exchange(
        self,
        name: str,
        run: Callable[[CredentialStore], CredentialStore],
        *,
        attach: bool,
        skip: Optional[Callable[[CredentialStore], bool]] = None,
    ) -> Optional[CredentialStore]:
        """Start an exchange or attach to the one in flight.

        Returns the installed store. Returns None when ``attach`` is False
        and another exchange was in flight (the caller then tries again after
        that exchange has settled), or when ``skip`` accepts the credentials
        found with nothing in flight.
        """

        with self._lock:
            pending = self._pending
            if pending is None:
                if skip is not None and skip(self._credentials):
                    return None
                future: Future = Future()
                self._pending = future
                current = self._credentials
                generation = self._generation

        if pending is not None:
            if attach:
                logger.debug("%s: attaching to in-flight exchange", name)
                return pending.result()
            logger.debug("%s: waiting for in-flight exchange to finish", name)
            wait([pending])
            return None

        try:
            store = run(current)
        except BaseException as e:
            with self._lock:
                self._pending = None
            future.set_exception(e)
            logger.warning("%s failed: %s", name, e)
            raise

        with self._lock:
            installed = generation == self._generation
            if installed:
                self._credentials = store
            self._pending = None
        future.set_result(store)

        if installed:
            logger.info("%s succeeded; token expires at %s", name, store.expires_at)
            self._notify()
        else:
            logger.warning("%s finished after deauthorize(); result discarded", name)
        return store

    # -----------------
    # Change notification
    # -----------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener``; returns a function that removes it again."""

        with self._listeners_lock:
            self._listeners.append(listener)

        def remove() -> None:
            self.remove_listener(listener)

        return remove

    def remove_listener(self, listener: Listener) -> None:
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _notify(self) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener()
            except Exception:
                logger.exception("Authorization listener %r raised", listener)

    # -----------------
    # Persistence
    # -----------------

    def to_dict(self, *, include_secrets: bool = False) -> Dict[str, Any]:
        return {
            "backend": self._backend.to_dict(include_secrets=include_secrets),
            "credentials": self.credentials.to_dict(),
        }

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        *,
        transport: Optional[NetworkTransport] = None,
        client_secret: Optional[str] = None,
        **kwargs,
    ) -> "AuthorizationManager":
        if not isinstance(data, dict) or "backend" not in data:
            raise ValueError("Encoded authorization manager must contain a 'backend' object")
        backend = ExchangeBackend.from_dict(data["backend"], client_secret=client_secret)
        return cls(
            backend,
            transport=transport,
            credentials=CredentialStore.from_dict(data.get("credentials")),
            **kwargs,
        )

    def to_json(self, *, include_secrets: bool = False) -> str:
        return json.dumps(self.to_dict(include_secrets=include_secrets), indent=2, sort_keys=True)

    @classmethod
    def from_json(cls, text: str, **kwargs) -> "AuthorizationManager":
        return cls.from_dict(json.loads(text), **kwargs)

    def close(self) -> None:
        """Close the transport if this manager created it."""

        if self._owns_transport:
            self._transport.close()

    def make_copy(self) -> "AuthorizationManager":
        """An equal manager with its own lock, no listeners and nothing in flight."""

        return type(self)(
            self._backend,
            transport=self._transport,
            credentials=self.credentials,
            refresh_margin=self.refresh_margin,
            clock=self._clock,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AuthorizationManager):
            return NotImplemented
        return self._backend == other._backend and self.credentials == other.credentials

    __hash__ = None  # mutable

    def __repr__(self) -> str:
        creds = self.credentials
        return (
            f"{type(self).__name__}(backend={self._backend!r}, authorized={not creds.is_empty}, "
            f"expires_at={creds.expires_at!r}, scopes={sorted(creds.scopes)!r})"
        )
