import base64
import hashlib
import secrets
import urllib.parse
from dataclasses import dataclass
from typing import Dict, Iterable, Optional

SPOTIFY_ACCOUNTS_BASE_URL = "https://accounts.spotify.com"
SPOTIFY_AUTHORIZE_URL = f"{SPOTIFY_ACCOUNTS_BASE_URL}/authorize"
SPOTIFY_TOKEN_URL = f"{SPOTIFY_ACCOUNTS_BASE_URL}/api/token"


def _base64url_no_pad(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("utf-8").rstrip("=")


def code_challenge_from_verifier(verifier: str) -> str:
    """Compute PKCE S256 code_challenge from code_verifier."""

    digest = hashlib.sha256((verifier or "").encode("utf-8")).digest()
    return _base64url_no_pad(digest)


def generate_code_verifier(length: int = 128) -> str:
    # RFC 7636: verifier length 43-128 chars, characters from ALPHA / DIGIT / "-" / "." / "_" / "~"
    if not 43 <= length <= 128:
        raise ValueError("code verifier length must be between 43 and 128")

    verifier = ""
    while len(verifier) < length:
        verifier += secrets.token_urlsafe(96).rstrip("=")
    return verifier[:length]


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str
    code_challenge: str


def generate_pkce_pair(length: int = 128) -> PKCEPair:
    """Generate a PKCE verifier + challenge."""

    verifier = generate_code_verifier(length)
    return PKCEPair(code_verifier=verifier, code_challenge=code_challenge_from_verifier(verifier))


def generate_state() -> str:
    return secrets.token_urlsafe(16).rstrip("=")


def make_authorization_url(
    *,
    client_id: str,
    redirect_uri: str,
    scopes: Optional[Iterable[str]] = None,
    state: Optional[str] = None,
    show_dialog: bool = False,
    code_challenge: Optional[str] = None,
    authorize_url: str = SPOTIFY_AUTHORIZE_URL,
) -> str:
    """Build the URL the user opens to grant access.

    Passing ``code_challenge`` produces a PKCE authorization request.
    """

    redirect_uri = str(redirect_uri or "").strip()
    if not redirect_uri:
        raise ValueError("Missing redirect_uri")

    scope_str = " ".join(sorted({str(s).strip() for s in (scopes or []) if str(s).strip()}))

    params: Dict[str, str] = {
        "client_id": client_id,
        "response_type": "code",
        "redirect_uri": redirect_uri,
        "show_dialog": "true" if show_dialog else "false",
    }
    if code_challenge:
        params["code_challenge_method"] = "S256"
        params["code_challenge"] = str(code_challenge)
    if scope_str:
        params["scope"] = scope_str
    if state:
        params["state"] = str(state)

    return f"{authorize_url}?{urllib.parse.urlencode(params)}"


def extract_code_from_redirect_url(redirect_url: str) -> Dict[str, str]:
    """Parse a redirect URL and return {"code": ..., "state": ..., "error": ...} (missing keys omitted)."""

    parsed = urllib.parse.urlparse(str(redirect_url or "").strip())
    qs = urllib.parse.parse_qs(parsed.query)
    out: Dict[str, str] = {}
    for key in ("code", "state", "error"):
        if qs.get(key):
            out[key] = str(qs[key][0])
    return out


def strip_query(redirect_url: str) -> str:
    """Return the redirect URI without its query string or fragment."""

    parsed = urllib.parse.urlparse(str(redirect_url or "").strip())
    return urllib.parse.urlunparse(parsed._replace(query="", fragment=""))
