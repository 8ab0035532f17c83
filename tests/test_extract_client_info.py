from starlette.datastructures import Headers
from starlette.requests import Request

from app.utils.extract_client_info import extract_client_info


def _build_request(headers=None, client_host="9.9.9.9"):
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/cancellation/initiate",
        "headers": Headers(headers or {}).raw,
        "client": (client_host, 12345) if client_host else None,
    }
    return Request(scope)


def test_forwarded_for_takes_first_hop():
    req = _build_request(
        headers={"x-forwarded-for": "1.2.3.4, 5.6.7.8", "user-agent": "mobile-app"},
        client_host="7.7.7.7",
    )
    assert extract_client_info(req) == ("1.2.3.4", "mobile-app")


def test_real_ip_header():
    req = _build_request(headers={"x-real-ip": " 4.4.4.4 "}, client_host="7.7.7.7")
    ip, _ = extract_client_info(req)
    assert ip == "4.4.4.4"


def test_falls_back_to_socket_peer_and_default_agent():
    req = _build_request(headers={}, client_host="8.8.4.4")
    assert extract_client_info(req) == ("8.8.4.4", "unknown")


def test_missing_client():
    req = _build_request(headers={"user-agent": "ua"}, client_host=None)
    assert extract_client_info(req) == (None, "ua")
