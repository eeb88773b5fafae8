import threading
import time
import unittest
from urllib.parse import parse_qs, urlparse

from spotify_auth.backends import ClientBackend, ClientCredentialsBackend, PKCEBackend
from spotify_auth.credentials import CredentialStore
from spotify_auth.errors import (
    AuthorizationDeniedError,
    InvalidGrantError,
    NetworkFailureError,
    NoRefreshTokenError,
    StateMismatchError,
)
from spotify_auth.manager import AuthorizationManager
from spotify_auth.testing import MockTransport, json_response, token_response

REDIRECT_URI = "http://127.0.0.1:8888/callback"


def authorized_store(access_token="T0", refresh_token="R0", expires_in=3600.0, scopes=("a",)):
    return CredentialStore(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=time.time() + expires_in,
        scopes=frozenset(scopes),
    )


def run_in_threads(target, count):
    """Start ``count`` threads calling ``target``; returns (threads, results, errors)."""

    results, errors = [], []
    lock = threading.Lock()

    def worker():
        try:
            value = target()
        except Exception as e:
            with lock:
                errors.append(e)
        else:
            with lock:
                results.append(value)

    threads = [threading.Thread(target=worker) for _ in range(count)]
    for t in threads:
        t.start()
    return threads, results, errors


class TestAuthorize(unittest.TestCase):
    def setUp(self):
        self.backend = ClientBackend(client_id="cid", client_secret="csecret")

    def test_authorize_installs_credentials(self):
        transport = MockTransport(token_response("T1", refresh_token="R1", scope="a b"))
        manager = AuthorizationManager(self.backend, transport=transport)
        self.assertFalse(manager.is_authorized())

        store = manager.authorize("abc123", redirect_uri=REDIRECT_URI)

        self.assertEqual(store.access_token, "T1")
        self.assertEqual(manager.access_token(), "T1")
        self.assertEqual(manager.credentials.refresh_token, "R1")
        self.assertTrue(manager.is_authorized())
        self.assertTrue(manager.is_authorized(scopes=["a"]))
        self.assertFalse(manager.is_authorized(scopes=["a", "c"]))

    def test_failed_authorize_keeps_previous_credentials(self):
        previous = authorized_store()
        transport = MockTransport(json_response({"error": "invalid_grant"}, 400))
        manager = AuthorizationManager(self.backend, transport=transport, credentials=previous)

        with self.assertRaises(InvalidGrantError):
            manager.authorize("bad", redirect_uri=REDIRECT_URI)

        self.assertIs(manager.credentials, previous)
        self.assertFalse(manager.is_exchange_in_flight)

    def test_client_credentials_authorize_without_code(self):
        backend = ClientCredentialsBackend(client_id="cid", client_secret="csecret")
        manager = AuthorizationManager(backend, transport=MockTransport(token_response("APP")))

        manager.authorize()
        self.assertEqual(manager.access_token(), "APP")
        self.assertIsNone(manager.credentials.refresh_token)

    def test_rejects_non_backend_and_negative_margin(self):
        with self.assertRaises(TypeError):
            AuthorizationManager("client", transport=MockTransport())
        with self.assertRaises(ValueError):
            AuthorizationManager(self.backend, transport=MockTransport(), refresh_margin=-1)


class TestAuthorizeFromRedirect(unittest.TestCase):
    def setUp(self):
        self.transport = MockTransport(token_response("T1", refresh_token="R1"))
        self.manager = AuthorizationManager(PKCEBackend(client_id="cid"), transport=self.transport)

    def test_success_uses_redirect_uri_without_query(self):
        self.manager.authorize_from_redirect(
            f"{REDIRECT_URI}?code=abc123&state=xyz", state="xyz", code_verifier="verifier"
        )

        self.assertEqual(self.manager.access_token(), "T1")
        form = self.transport.forms()[0]
        self.assertEqual(form["code"], "abc123")
        self.assertEqual(form["redirect_uri"], REDIRECT_URI)
        self.assertEqual(form["code_verifier"], "verifier")

    def test_state_mismatch(self):
        with self.assertRaises(StateMismatchError):
            self.manager.authorize_from_redirect(f"{REDIRECT_URI}?code=abc123&state=other", state="xyz")
        self.assertEqual(self.transport.call_count, 0)

    def test_denied(self):
        with self.assertRaises(AuthorizationDeniedError) as ctx:
            self.manager.authorize_from_redirect(f"{REDIRECT_URI}?error=access_denied&state=xyz", state="xyz")
        self.assertEqual(ctx.exception.error, "access_denied")
        self.assertFalse(self.manager.is_authorized())

    def test_missing_code(self):
        with self.assertRaises(ValueError):
            self.manager.authorize_from_redirect(f"{REDIRECT_URI}?state=xyz", state="xyz")


class TestAuthorizationURL(unittest.TestCase):
    def test_pkce_backend_requires_challenge(self):
        manager = AuthorizationManager(PKCEBackend(client_id="cid"), transport=MockTransport())
        with self.assertRaises(ValueError):
            manager.make_authorization_url(redirect_uri=REDIRECT_URI)

        url = manager.make_authorization_url(
            redirect_uri=REDIRECT_URI, scopes=["b", "a"], state="xyz", code_challenge="challenge"
        )
        query = parse_qs(urlparse(url).query)
        self.assertEqual(query["client_id"], ["cid"])
        self.assertEqual(query["code_challenge"], ["challenge"])
        self.assertEqual(query["code_challenge_method"], ["S256"])
        self.assertEqual(query["scope"], ["a b"])
        self.assertEqual(query["state"], ["xyz"])

    def test_client_backend_ignores_challenge(self):
        manager = AuthorizationManager(ClientBackend(client_id="cid", client_secret="s"), transport=MockTransport())
        url = manager.make_authorization_url(redirect_uri=REDIRECT_URI, code_challenge="challenge")
        self.assertNotIn("code_challenge", url)

    def test_client_credentials_has_no_authorization_url(self):
        backend = ClientCredentialsBackend(client_id="cid", client_secret="s")
        manager = AuthorizationManager(backend, transport=MockTransport())
        with self.assertRaises(ValueError):
            manager.make_authorization_url(redirect_uri=REDIRECT_URI)


class TestRefresh(unittest.TestCase):
    def setUp(self):
        self.backend = ClientBackend(client_id="cid", client_secret="csecret")

    def test_refresh_replaces_token_and_keeps_refresh_token_and_scopes(self):
        transport = MockTransport(token_response("T1"))
        manager = AuthorizationManager(self.backend, transport=transport, credentials=authorized_store())

        store = manager.refresh_tokens()

        self.assertEqual(store.access_token, "T1")
        self.assertEqual(manager.credentials.refresh_token, "R0")
        self.assertEqual(manager.credentials.scopes, frozenset({"a"}))

    def test_failed_refresh_keeps_previous_credentials(self):
        previous = authorized_store()
        transport = MockTransport(json_response({"error": "invalid_grant"}, 400))
        manager = AuthorizationManager(self.backend, transport=transport, credentials=previous)

        with self.assertRaises(InvalidGrantError):
            manager.refresh_tokens()
        self.assertIs(manager.credentials, previous)

    def test_network_failure_is_retryable(self):
        transport = MockTransport(json_response({"error": "server_error"}, 502))
        manager = AuthorizationManager(self.backend, transport=transport, credentials=authorized_store())

        with self.assertRaises(NetworkFailureError) as ctx:
            manager.refresh_tokens()
        self.assertTrue(ctx.exception.retryable)

    def test_no_refresh_token(self):
        transport = MockTransport(token_response())
        manager = AuthorizationManager(self.backend, transport=transport)

        with self.assertRaises(NoRefreshTokenError):
            manager.refresh_tokens()
        with self.assertRaises(NoRefreshTokenError):
            manager.valid_access_token()
        self.assertEqual(transport.call_count, 0)

    def test_only_if_expired_skips_fresh_token(self):
        transport = MockTransport(token_response("T1"))
        manager = AuthorizationManager(self.backend, transport=transport, credentials=authorized_store())

        self.assertIsNone(manager.refresh_tokens(only_if_expired=True))
        self.assertEqual(manager.valid_access_token(), "T0")
        self.assertEqual(transport.call_count, 0)

    def test_only_if_expired_refreshes_within_margin(self):
        transport = MockTransport(token_response("T1"))
        credentials = authorized_store(expires_in=60)
        manager = AuthorizationManager(self.backend, transport=transport, credentials=credentials)

        self.assertTrue(manager.access_token_is_expired())
        self.assertFalse(manager.access_token_is_expired(tolerance=0))
        self.assertEqual(manager.valid_access_token(), "T1")
        self.assertEqual(transport.call_count, 1)

    def test_client_credentials_refresh_needs_no_refresh_token(self):
        backend = ClientCredentialsBackend(client_id="cid", client_secret="csecret")
        transport = MockTransport([token_response("A1"), token_response("A2")])
        manager = AuthorizationManager(backend, transport=transport)

        self.assertEqual(manager.valid_access_token(), "A1")
        manager.refresh_tokens()
        self.assertEqual(manager.access_token(), "A2")


class TestSingleFlight(unittest.TestCase):
    def setUp(self):
        self.gate = threading.Event()
        self.backend = ClientBackend(client_id="cid", client_secret="csecret")

    def tearDown(self):
        self.gate.set()

    def test_concurrent_refreshes_share_one_exchange(self):
        transport = MockTransport(token_response("T2", refresh_token="R2"), gate=self.gate)
        manager = AuthorizationManager(self.backend, transport=transport, credentials=authorized_store())

        leader, leader_results, leader_errors = run_in_threads(manager.refresh_tokens, 1)
        self.assertTrue(transport.entered.wait(2))
        self.assertTrue(manager.is_exchange_in_flight)

        followers, results, errors = run_in_threads(manager.refresh_tokens, 5)
        time.sleep(0.2)
        self.gate.set()
        for t in leader + followers:
            t.join(5)

        self.assertEqual(leader_errors + errors, [])
        self.assertEqual(transport.call_count, 1)
        stores = leader_results + results
        self.assertEqual(len(stores), 6)
        for store in stores:
            self.assertIs(store, stores[0])
        self.assertEqual(manager.access_token(), "T2")
        self.assertFalse(manager.is_exchange_in_flight)

    def test_expiry_checked_against_credentials_installed_meanwhile(self):
        transport = MockTransport(token_response("T1", refresh_token="R1"), gate=self.gate)
        first_done = threading.Event()
        late_checking = threading.Event()

        def clock():
            # The "late" caller reads the clock while the first refresh is
            # in flight and only continues once that refresh has returned.
            if threading.current_thread().name == "late":
                late_checking.set()
                first_done.wait(5)
            return time.time()

        manager = AuthorizationManager(
            self.backend, transport=transport, credentials=authorized_store(expires_in=10), clock=clock
        )
        tokens = {}

        def first():
            tokens["first"] = manager.valid_access_token()
            first_done.set()

        def late():
            tokens["late"] = manager.valid_access_token()

        first_thread = threading.Thread(target=first)
        first_thread.start()
        self.assertTrue(transport.entered.wait(2))
        late_thread = threading.Thread(target=late, name="late")
        late_thread.start()
        self.assertTrue(late_checking.wait(2))

        self.gate.set()
        first_thread.join(5)
        late_thread.join(5)

        self.assertEqual(transport.call_count, 1)
        self.assertEqual(tokens, {"first": "T1", "late": "T1"})
        self.assertEqual(manager.credentials.refresh_token, "R1")

    def test_failure_reaches_every_waiter(self):
        transport = MockTransport(json_response({"error": "invalid_grant"}, 400), gate=self.gate)
        previous = authorized_store()
        manager = AuthorizationManager(self.backend, transport=transport, credentials=previous)

        leader, _, leader_errors = run_in_threads(manager.refresh_tokens, 1)
        self.assertTrue(transport.entered.wait(2))
        followers, results, errors = run_in_threads(manager.refresh_tokens, 3)
        time.sleep(0.2)
        self.gate.set()
        for t in leader + followers:
            t.join(5)

        self.assertEqual(results, [])
        raised = leader_errors + errors
        self.assertEqual(len(raised), 4)
        for e in raised:
            self.assertIsInstance(e, InvalidGrantError)
            self.assertIs(e, raised[0])
        self.assertEqual(transport.call_count, 1)
        self.assertIs(manager.credentials, previous)

    def test_authorize_runs_its_own_exchange_after_refresh(self):
        transport = MockTransport([token_response("REFRESHED"), token_response("AUTHORIZED", refresh_token="RA")], gate=self.gate)
        manager = AuthorizationManager(self.backend, transport=transport, credentials=authorized_store())

        refresher, _, refresh_errors = run_in_threads(manager.refresh_tokens, 1)
        self.assertTrue(transport.entered.wait(2))
        authorizer, results, errors = run_in_threads(
            lambda: manager.authorize("abc123", redirect_uri=REDIRECT_URI), 1
        )
        time.sleep(0.2)
        self.assertEqual(transport.call_count, 1)
        self.gate.set()
        for t in refresher + authorizer:
            t.join(5)

        self.assertEqual(refresh_errors + errors, [])
        self.assertEqual(transport.call_count, 2)
        self.assertEqual(transport.forms()[1]["grant_type"], "authorization_code")
        self.assertEqual(manager.access_token(), "AUTHORIZED")

    def test_deauthorize_discards_in_flight_result(self):
        transport = MockTransport(token_response("T2"), gate=self.gate)
        manager = AuthorizationManager(self.backend, transport=transport, credentials=authorized_store())
        notified = []
        manager.add_listener(lambda: notified.append(manager.access_token()))

        leader, results, errors = run_in_threads(manager.refresh_tokens, 1)
        self.assertTrue(transport.entered.wait(2))
        manager.deauthorize()
        self.gate.set()
        leader[0].join(5)

        self.assertEqual(errors, [])
        self.assertEqual(results[0].access_token, "T2")
        self.assertFalse(manager.is_authorized())
        self.assertEqual(notified, [None])

    def test_reads_do_not_wait_for_exchange(self):
        transport = MockTransport(token_response("T2"), gate=self.gate)
        manager = AuthorizationManager(self.backend, transport=transport, credentials=authorized_store())

        leader, _, _ = run_in_threads(manager.refresh_tokens, 1)
        self.assertTrue(transport.entered.wait(2))
        self.assertEqual(manager.access_token(), "T0")
        self.assertTrue(manager.is_authorized())
        self.gate.set()
        leader[0].join(5)
        self.assertEqual(manager.access_token(), "T2")


class TestDeauthorizeAndListeners(unittest.TestCase):
    def setUp(self):
        self.transport = MockTransport(token_response("T1", refresh_token="R1"))
        self.manager = AuthorizationManager(
            ClientBackend(client_id="cid", client_secret="csecret"), transport=self.transport
        )

    def test_deauthorize_is_idempotent(self):
        self.manager.authorize("abc123", redirect_uri=REDIRECT_URI)
        self.manager.deauthorize()
        self.manager.deauthorize()

        self.assertFalse(self.manager.is_authorized())
        self.assertIsNone(self.manager.access_token())
        self.assertTrue(self.manager.credentials.is_empty)

    def test_listener_called_once_per_change(self):
        calls = []
        remove = self.manager.add_listener(lambda: calls.append(self.manager.access_token()))

        self.manager.authorize("abc123", redirect_uri=REDIRECT_URI)
        self.manager.refresh_tokens()
        self.manager.deauthorize()
        self.assertEqual(calls, ["T1", "T1", None])

        remove()
        self.manager.deauthorize()
        self.assertEqual(len(calls), 3)

    def test_failed_exchange_does_not_notify(self):
        calls = []
        self.manager.add_listener(lambda: calls.append(1))
        with self.assertRaises(NoRefreshTokenError):
            self.manager.refresh_tokens()
        self.assertEqual(calls, [])

    def test_raising_listener_does_not_break_others(self):
        calls = []

        def broken():
            raise RuntimeError("boom")

        self.manager.add_listener(broken)
        self.manager.add_listener(lambda: calls.append(1))
        with self.assertLogs("spotify_auth.manager", level="ERROR"):
            self.manager.authorize("abc123", redirect_uri=REDIRECT_URI)

        self.assertEqual(calls, [1])
        self.assertEqual(self.manager.access_token(), "T1")


if __name__ == "__main__":
    unittest.main(verbosity=2)
