"""
tests/test_session.py -- Session cookie encoding and client address helpers.
"""

from __future__ import annotations

from types import SimpleNamespace

from auth.dependencies import get_client_ip, get_peer_ip, is_local_request
from auth.models import User
from auth.session import anonymous_session, decode_session, encode_session, new_session
from tests.conftest import make_settings


class TestSessionToken:
    def test_round_trip(self):
        settings = make_settings()
        data = new_session(User(username="alice", name="Alice", surname="Smith"), "EN", temporary_password=True)
        decoded = decode_session(encode_session(data, settings), settings)
        assert decoded == data
        assert decoded.display_name == "Alice Smith"

    def test_fresh_session_id_per_login(self):
        user = User(username="alice")
        assert new_session(user, "EN").session_id != new_session(user, "EN").session_id

    def test_tampered_token_is_rejected(self):
        settings = make_settings()
        alice = encode_session(new_session(User(username="alice"), "EN"), settings).split(".")
        mallory = encode_session(new_session(User(username="mallory"), "EN"), settings).split(".")
        forged = ".".join([alice[0], mallory[1], alice[2]])
        assert decode_session(forged, settings) is None

    def test_other_key_is_rejected(self):
        token = encode_session(new_session(User(username="alice"), "EN"), make_settings())
        assert decode_session(token, make_settings()) is None

    def test_expired_token_is_rejected(self):
        settings = make_settings(token_expire_seconds=-10)
        token = encode_session(new_session(User(username="alice"), "EN"), settings)
        assert decode_session(token, settings) is None

    def test_anonymous_defaults(self):
        session = anonymous_session("RO")
        assert not session.logged_in
        assert session.language == "RO"
        assert session.display_name == ""


def _request(peer: str | None, forwarded: str = ""):
    headers = {"X-Forwarded-For": forwarded} if forwarded else {}
    client = SimpleNamespace(host=peer) if peer is not None else None
    return SimpleNamespace(client=client, headers=headers)


class TestClientAddress:
    def test_forwarded_header_wins_for_client_ip(self):
        request = _request("10.0.0.1", "203.0.113.7, 10.0.0.1")
        assert get_client_ip(request) == "203.0.113.7"
        assert get_peer_ip(request) == "10.0.0.1"

    def test_peer_used_without_header(self):
        assert get_client_ip(_request("10.0.0.1")) == "10.0.0.1"

    def test_local_check_ignores_forwarded_header(self):
        assert is_local_request(_request("127.0.0.1", "203.0.113.7"))
        assert not is_local_request(_request("10.0.0.1", "127.0.0.1"))
        assert not is_local_request(_request(None))
