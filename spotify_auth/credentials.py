import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional

from .errors import MalformedResponseError


def parse_scopes(scope: Any) -> FrozenSet[str]:
    """Accept Spotify's space-delimited scope string or any iterable of scopes."""

    if not scope:
        return frozenset()
    if isinstance(scope, str):
        return frozenset(s for s in scope.split() if s)
    return frozenset(str(s).strip() for s in scope if str(s).strip())


@dataclass(frozen=True)
class CredentialStore:
    """Snapshot of the credentials held by an AuthorizationManager.

    Instances are immutable. A refresh produces a new snapshot which the
    manager swaps in as a whole, so readers never see a token paired with
    another token's expiry or scopes.
    """

    access_token: str = ""
    refresh_token: Optional[str] = None
    expires_at: Optional[float] = None  # Unix timestamp
    scopes: FrozenSet[str] = field(default_factory=frozenset)

    @property
    def is_empty(self) -> bool:
        return not self.access_token

    def expires_within(self, seconds: float, *, now: Optional[float] = None) -> bool:
        """True when the token is missing, has no expiry, or expires within ``seconds``."""

        if self.is_empty or self.expires_at is None:
            return True
        now_ts = float(time.time() if now is None else now)
        return self.expires_at - now_ts <= float(seconds)

    @staticmethod
    def from_token_response(
        payload: Dict[str, Any],
        *,
        now: Optional[float] = None,
        refresh_token: Optional[str] = None,
        scopes: Optional[Iterable[str]] = None,
        body: bytes = b"",
    ) -> "CredentialStore":
        """Convert a token endpoint JSON response into a CredentialStore.

        Spotify returns:
        - access_token
        - token_type ("Bearer")
        - expires_in (seconds)
        - refresh_token (optional, often omitted on refresh)
        - scope (space-delimited string, optional)

        ``refresh_token`` and ``scopes`` are used when the response omits
        them; when ``scopes`` is non-empty the granted scopes must be a
        subset of it. Missing ``access_token`` or ``expires_in`` is an error.
        """

        if not isinstance(payload, dict):
            raise MalformedResponseError(f"Token response was not an object: {payload!r}", body=body)

        access_token = payload.get("access_token")
        if not isinstance(access_token, str) or not access_token:
            raise MalformedResponseError("Token response has no access_token", body=body)

        token_type = payload.get("token_type", "Bearer")
        if str(token_type).lower() != "bearer":
            raise MalformedResponseError(f"Unsupported token_type: {token_type!r}", body=body)

        expires_in = payload.get("expires_in")
        if isinstance(expires_in, bool) or not isinstance(expires_in, (int, float)):
            raise MalformedResponseError("Token response has no numeric expires_in", body=body)

        now_ts = float(time.time() if now is None else now)
        granted = parse_scopes(payload.get("scope"))
        if scopes is not None:
            requested = parse_scopes(scopes)
            if not granted:
                granted = requested
            elif requested and not granted <= requested:
                extra = " ".join(sorted(granted - requested))
                raise MalformedResponseError(f"Token response granted unrequested scopes: {extra}", body=body)

        return CredentialStore(
            access_token=access_token,
            refresh_token=payload.get("refresh_token") or refresh_token,
            expires_at=now_ts + float(expires_in),
            scopes=granted,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "scopes": sorted(self.scopes),
        }

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> "CredentialStore":
        data = data or {}
        expires_at = data.get("expires_at")
        return CredentialStore(
            access_token=str(data.get("access_token") or ""),
            refresh_token=data.get("refresh_token"),
            expires_at=float(expires_at) if expires_at is not None else None,
            scopes=parse_scopes(data.get("scopes")),
        )


EMPTY_CREDENTIALS = CredentialStore()
