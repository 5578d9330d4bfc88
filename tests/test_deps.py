import pytest
from fastapi import HTTPException
from starlette.requests import Request

from knowledgecenter.api.deps import (
    Principal,
    client_ip,
    is_authenticated,
    peer_host,
    require_all_roles,
    require_roles,
)


def _request(headers=None, client=("203.0.113.9", 51000)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": client,
    }
    return Request(scope)


class TestClientIp:
    """Tests for client address resolution."""

    def test_first_forwarded_entry_wins(self):
        request = _request({"X-Forwarded-For": "198.51.100.7, 10.0.0.1"})

        assert client_ip(request) == "198.51.100.7"

    def test_forwarded_entry_port_is_stripped(self):
        request = _request({"X-Forwarded-For": "[2001:db8::1]:443, 10.0.0.1"})

        assert client_ip(request) == "2001:db8::1"

    def test_real_ip_used_without_forwarded_for(self):
        request = _request({"X-Real-IP": " 198.51.100.8 "})

        assert client_ip(request) == "198.51.100.8"

    def test_peer_address_fallback(self):
        assert client_ip(_request()) == "203.0.113.9"

    def test_no_peer(self):
        assert client_ip(_request(client=None)) == ""


@pytest.mark.parametrize(
    "address,host",
    [
        ("10.0.0.1:8080", "10.0.0.1"),
        ("10.0.0.1", "10.0.0.1"),
        ("[2001:db8::1]:443", "2001:db8::1"),
        ("2001:db8::1", "2001:db8::1"),
        ("", ""),
    ],
)
def test_peer_host(address, host):
    assert peer_host(address) == host


class TestRoleGuards:
    """Tests for per-route role requirements."""

    async def test_any_role_admits_overlap(self):
        principal = Principal(user_id="u1", roles=["editor", "user"])

        assert await require_roles("admin", "editor")(principal=principal) is principal

    async def test_no_roles_is_access_denied(self):
        with pytest.raises(HTTPException) as excinfo:
            await require_roles("admin")(principal=Principal(user_id="u1"))

        assert excinfo.value.status_code == 403
        assert excinfo.value.detail["error"]["message"] == "Access denied"

    async def test_missing_role_is_insufficient(self):
        with pytest.raises(HTTPException) as excinfo:
            await require_roles("admin")(principal=Principal(user_id="u1", roles=["user"]))

        assert excinfo.value.detail["error"]["message"] == "Insufficient permissions"

    async def test_all_roles_required(self):
        guard = require_all_roles("admin", "auditor")

        with pytest.raises(HTTPException):
            await guard(principal=Principal(user_id="u1", roles=["admin"]))
        principal = Principal(user_id="u1", roles=["admin", "auditor"])
        assert await guard(principal=principal) is principal


def test_is_authenticated_reads_request_state():
    request = _request()
    assert is_authenticated(request) is False

    request.state.principal = Principal(user_id="u1", roles=["user"])

    assert is_authenticated(request) is True
    assert request.state.principal.has_any_role("admin", "user")
    assert not request.state.principal.has_role("admin")
