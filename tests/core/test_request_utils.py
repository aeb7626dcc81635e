"""
Tests for client address resolution.
"""

import pytest
from starlette.requests import Request

from learnacademy.security.request_utils import get_client_ip, is_trusted_proxy

pytestmark = pytest.mark.unit


def _request(peer, forwarded=None):
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": headers,
            "query_string": b"",
            "client": (peer, 40000) if peer else None,
        }
    )


@pytest.mark.parametrize(
    "address,trusted,expected",
    [
        ("10.1.2.3", ["10.0.0.0/8"], True),
        ("10.1.2.3", ["10.1.2.3"], True),
        ("192.0.2.1", ["10.0.0.0/8"], False),
        ("testclient", ["testclient"], True),
        ("testclient", ["10.0.0.0/8"], False),
        (None, ["10.0.0.0/8"], False),
    ],
)
def test_is_trusted_proxy(address, trusted, expected):
    assert is_trusted_proxy(address, trusted) is expected


def test_untrusted_peer_ignores_forwarded_headers():
    request = _request("192.0.2.50", "203.0.113.5")
    assert get_client_ip(request, trusted_proxies=[]) == "192.0.2.50"


def test_trusted_peer_uses_rightmost_untrusted_hop():
    request = _request("10.0.0.2", "198.51.100.1, 203.0.113.5, 10.0.0.1")
    assert get_client_ip(request, trusted_proxies=["10.0.0.0/8"]) == "203.0.113.5"


def test_trusted_peer_without_forwarded_header():
    request = _request("10.0.0.2")
    assert get_client_ip(request, trusted_proxies=["10.0.0.0/8"]) == "10.0.0.2"


def test_all_hops_trusted_falls_back_to_leftmost():
    request = _request("10.0.0.2", "10.0.0.9, 10.0.0.1")
    assert get_client_ip(request, trusted_proxies=["10.0.0.0/8"]) == "10.0.0.9"


def test_missing_client():
    assert get_client_ip(_request(None), trusted_proxies=[]) is None
