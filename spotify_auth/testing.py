"""In-process transport for tests and offline development."""

import json
import threading
import urllib.parse
from typing import Any, Callable, Dict, List, Optional, Union

from .errors import TransportError
from .transport import HTTPRequest, HTTPResponse

Responder = Callable[[HTTPRequest], HTTPResponse]


def json_response(payload: Any, status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> HTTPResponse:
    hdrs = {"Content-Type": "application/json"}
    hdrs.update(headers or {})
    return HTTPResponse(status_code=status_code, headers=hdrs, body=json.dumps(payload).encode("utf-8"))


def token_response(
    access_token: str = "T1",
    *,
    expires_in: int = 3600,
    refresh_token: Optional[str] = None,
    scope: Optional[str] = None,
) -> HTTPResponse:
    payload: Dict[str, Any] = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": expires_in,
    }
    if refresh_token is not None:
        payload["refresh_token"] = refresh_token
    if scope is not None:
        payload["scope"] = scope
    return json_response(payload)


def form_body(request: HTTPRequest) -> Dict[str, str]:
    """Decode a form-urlencoded request body into a flat dict."""

    pairs = urllib.parse.parse_qsl((request.body or b"").decode("utf-8"), keep_blank_values=True)
    return dict(pairs)


class MockTransport:
    """Scripted, thread-safe NetworkTransport that records every request.

    Responses are either a fixed list (consumed in order; the last one is
    repeated) or a responder callable. An ``Exception`` in the list is
    raised instead of answering. ``gate`` (a threading.Event) makes every
    call block until it is set, which lets tests pile up concurrent callers
    behind one in-flight request.
    """

    def __init__(
        self,
        responses: Union[Responder, List[Union[HTTPResponse, Exception]], HTTPResponse, None] = None,
        *,
        gate: Optional[threading.Event] = None,
        gate_timeout: float = 5.0,
    ):
        if isinstance(responses, HTTPResponse):
            responses = [responses]
        self._responses = responses
        self._index = 0
        self.gate = gate
        self.gate_timeout = gate_timeout
        self.requests: List[HTTPRequest] = []
        self.entered = threading.Event()
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.requests)

    def forms(self) -> List[Dict[str, str]]:
        with self._lock:
            return [form_body(r) for r in self.requests]

    def __call__(self, request: HTTPRequest) -> HTTPResponse:
        with self._lock:
            self.requests.append(request)
            if callable(self._responses):
                result: Union[HTTPResponse, Exception, None] = None
            elif self._responses:
                result = self._responses[min(self._index, len(self._responses) - 1)]
                self._index += 1
            else:
                raise TransportError(f"No scripted response for {request.method} {request.url}")
        self.entered.set()

        if self.gate is not None and not self.gate.wait(self.gate_timeout):
            raise TransportError("MockTransport gate was never opened")

        if result is None:
            return self._responses(request)
        if isinstance(result, Exception):
            raise result
        return result
