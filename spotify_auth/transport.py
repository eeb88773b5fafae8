import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import httpx

from .errors import TransportError


@dataclass(frozen=True)
class HTTPRequest:
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None


@dataclass(frozen=True)
class HTTPResponse:
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


# The only thing the manager and the backends know about HTTP.
# Implementations raise TransportError when no response was received.
NetworkTransport = Callable[[HTTPRequest], HTTPResponse]


class HttpxTransport:
    """Default transport backed by a shared ``httpx.Client``.

    Pass ``client`` to reuse an existing client (for example one built on
    ``httpx.MockTransport`` in tests). A client created here is owned by
    the transport and closed by ``close()``.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        client: Optional[httpx.Client] = None,
    ):
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout, follow_redirects=False)

    def __call__(self, request: HTTPRequest) -> HTTPResponse:
        try:
            resp = self._client.request(
                request.method.upper(),
                request.url,
                headers=request.headers,
                content=request.body,
            )
        except httpx.HTTPError as e:
            raise TransportError(f"{request.method.upper()} {request.url} failed: {e}") from e

        return HTTPResponse(
            status_code=resp.status_code,
            headers=dict(resp.headers),
            body=resp.content,
        )

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "HttpxTransport":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
