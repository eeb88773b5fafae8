import json
import logging
import urllib.parse
from typing import Any, Dict, Optional

from .errors import AuthError
from .manager import AuthorizationManager
from .transport import HTTPRequest, HTTPResponse, NetworkTransport

logger = logging.getLogger(__name__)

SPOTIFY_API_BASE_URL = "https://api.spotify.com/v1"


class SpotifyAPIError(RuntimeError):
    def __init__(self, status_code: int, body: str):
        self.status_code = status_code
        self.body = body
        super().__init__(f"Spotify API error {status_code}: {body}")


class RequestSigner:
    """Signs Spotify Web API requests with the manager's access token.

    Each request asks the manager for a token that is not about to expire.
    On 401 the token is refreshed (unconditionally, sharing any refresh
    already in flight) and the request is sent once more.

    With ``auto_refresh`` off the signer only uses the current token and
    fails once it has expired. Requests go out through the manager's
    transport unless another one is given.
    """

    def __init__(
        self,
        manager: AuthorizationManager,
        *,
        transport: Optional[NetworkTransport] = None,
        base_url: str = SPOTIFY_API_BASE_URL,
        auto_refresh: bool = True,
    ):
        self.manager = manager
        self.auto_refresh = auto_refresh
        self.transport = transport or manager.transport
        self.base_url = base_url.rstrip("/")

    def current_token(self) -> str:
        if self.auto_refresh:
            return self.manager.valid_access_token()

        token = self.manager.access_token()
        if not token or self.manager.access_token_is_expired(tolerance=0):
            raise AuthError("Spotify token expired and automatic refresh is disabled.")
        return token

    def sign(self, request: HTTPRequest, token: Optional[str] = None) -> HTTPRequest:
        token = token or self.current_token()
        headers = dict(request.headers)
        headers["Authorization"] = f"Bearer {token}"
        return HTTPRequest(method=request.method, url=request.url, headers=headers, body=request.body)

    def send(self, request: HTTPRequest, *, retry_401_refresh: bool = True) -> HTTPResponse:
        token = self.current_token()
        resp = self.transport(self.sign(request, token))

        # 401: token invalid/expired (server-side); refresh once and retry.
        if resp.status_code == 401 and retry_401_refresh and self.auto_refresh:
            # Another caller may already have replaced the rejected token.
            if self.manager.access_token() == token:
                logger.info("401 from %s; refreshing access token and retrying", request.url)
                self.manager.refresh_tokens(only_if_expired=False)
            resp = self.transport(self.sign(request))

        return resp

    def request_json(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Make a Spotify Web API request and return parsed JSON."""

        url = path if path.startswith("http") else f"{self.base_url}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode({k: str(v) for k, v in params.items() if v is not None})}"

        headers = {"Accept": "application/json"}
        data = None
        if body is not None:
            headers["Content-Type"] = "application/json"
            data = json.dumps(body).encode("utf-8")

        resp = self.send(HTTPRequest(method=method.upper(), url=url, headers=headers, body=data))
        if resp.status_code >= 400:
            raise SpotifyAPIError(resp.status_code, resp.text)

        if not resp.body:
            return {}

        try:
            return resp.json()
        except ValueError as e:
            raise SpotifyAPIError(resp.status_code, f"response was not JSON: {resp.text}") from e
