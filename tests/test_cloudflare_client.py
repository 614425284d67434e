"""Tests for the Cloudflare custom hostname client."""

import json

import httpx
import pytest

from sitehost.config import Settings
from sitehost.models.domain_activation import CertificateStatus
from sitehost.services.cloudflare_client import CloudflareClient
from sitehost.services.errors import NonRetryableProviderError, TransientProviderError


def _client(handler, **overrides) -> CloudflareClient:
    settings = Settings(
        CLOUDFLARE_API_TOKEN="cf-token",
        CLOUDFLARE_ZONE_ID="zone123",
        CLOUDFLARE_CNAME_TARGET="edge.svc",
        CLOUDFLARE_ORIGIN_SERVER="origin.svc",
        **overrides,
    )
    return CloudflareClient(settings, transport=httpx.MockTransport(handler))


def _ok(result) -> httpx.Response:
    return httpx.Response(200, json={"success": True, "errors": [], "result": result})


HOSTNAME_RESULT = {
    "id": "eh_1",
    "hostname": "shop.example.com",
    "ssl": {"status": "pending_validation"},
    "custom_metadata": {"activation_id": "act-1"},
    "ownership_verification": {
        "type": "txt",
        "name": "_cf-custom-hostname.shop.example.com",
        "value": "token-123",
    },
}


class TestCreateCustomHostname:
    async def test_creates_and_returns_instructions(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return _ok(HOSTNAME_RESULT)

        result = await _client(handler).create_custom_hostname("shop.example.com", "act-1")

        assert seen["method"] == "POST"
        assert seen["path"].endswith("/zones/zone123/custom_hostnames")
        assert seen["auth"] == "Bearer cf-token"
        assert seen["body"]["ssl"]["method"] == "http"
        assert seen["body"]["custom_metadata"] == {"activation_id": "act-1"}
        assert seen["body"]["custom_origin_server"] == "origin.svc"
        assert result.edge_hostname_ref == "eh_1"
        assert [(r.type, r.name, r.value) for r in result.dns_instructions] == [
            ("CNAME", "shop.example.com", "edge.svc"),
            ("TXT", "_cf-custom-hostname.shop.example.com", "token-123"),
        ]

    async def test_global_key_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.update(request.headers)
            return _ok(HOSTNAME_RESULT)

        client = _client(handler, CLOUDFLARE_API_EMAIL="ops@example.com", CLOUDFLARE_API_KEY="gk")
        await client.create_custom_hostname("shop.example.com", "act-1")

        assert seen["x-auth-email"] == "ops@example.com"
        assert seen["x-auth-key"] == "gk"

    async def test_duplicate_we_own_is_adopted(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(409, json={
                    "success": False,
                    "errors": [{"code": 1406, "message": "Duplicate custom hostname found."}],
                })
            assert request.url.params["hostname"] == "shop.example.com"
            return _ok([HOSTNAME_RESULT])

        result = await _client(handler).create_custom_hostname("shop.example.com", "act-1")

        assert result.edge_hostname_ref == "eh_1"

    async def test_duplicate_owned_by_someone_else_fails(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(400, json={
                    "success": False,
                    "errors": [{"code": 1406, "message": "Duplicate custom hostname found."}],
                })
            return _ok([{**HOSTNAME_RESULT, "custom_metadata": {"activation_id": "someone-else"}}])

        with pytest.raises(NonRetryableProviderError, match="duplicate hostname"):
            await _client(handler).create_custom_hostname("shop.example.com", "act-1")

    async def test_server_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="bad gateway")

        with pytest.raises(TransientProviderError):
            await _client(handler).create_custom_hostname("shop.example.com", "act-1")

    async def test_timeout_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(TransientProviderError):
            await _client(handler).create_custom_hostname("shop.example.com", "act-1")

    async def test_invalid_hostname_is_not_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={
                "success": False,
                "errors": [{"code": 1409, "message": "Invalid custom hostname"}],
            })

        with pytest.raises(NonRetryableProviderError, match="Invalid custom hostname"):
            await _client(handler).create_custom_hostname("shop.example.com", "act-1")


class TestGetCertificateStatus:
    @pytest.mark.parametrize(
        "ssl_status,expected",
        [
            ("initializing", CertificateStatus.INITIALIZING),
            ("pending_validation", CertificateStatus.PENDING_VALIDATION),
            ("pending_deployment", CertificateStatus.PENDING_ISSUANCE),
            ("active", CertificateStatus.ACTIVE),
            ("something_new", CertificateStatus.UNKNOWN),
        ],
    )
    async def test_maps_ssl_status(self, ssl_status, expected):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path.endswith("/custom_hostnames/eh_1")
            return _ok({**HOSTNAME_RESULT, "ssl": {"status": ssl_status}})

        assert await _client(handler).get_certificate_status("eh_1") == expected

    async def test_network_failure_is_unknown(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        assert await _client(handler).get_certificate_status("eh_1") == CertificateStatus.UNKNOWN

    async def test_missing_hostname_is_unknown(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"success": False, "errors": []})

        assert await _client(handler).get_certificate_status("eh_1") == CertificateStatus.UNKNOWN


class TestDeleteAndFind:
    async def test_delete_not_found_is_success(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            return httpx.Response(404, json={"success": False, "errors": []})

        await _client(handler).delete_custom_hostname("eh_1")

    async def test_delete_server_error_raises(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, text="oops")

        with pytest.raises(TransientProviderError):
            await _client(handler).delete_custom_hostname("eh_1")

    async def test_find_matches_owner(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return _ok([HOSTNAME_RESULT])

        client = _client(handler)

        assert await client.find_custom_hostname("shop.example.com", "act-1") == "eh_1"
        assert await client.find_custom_hostname("shop.example.com", "act-2") is None


class TestRefreshCertificate:
    async def test_patches_ssl_settings(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return _ok(HOSTNAME_RESULT)

        await _client(handler).refresh_certificate("eh_1")

        assert seen["method"] == "PATCH"
        assert seen["path"].endswith("/zones/zone123/custom_hostnames/eh_1")
        assert seen["body"] == {"ssl": {"method": "http", "type": "dv"}}

    async def test_server_error_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="unavailable")

        with pytest.raises(TransientProviderError):
            await _client(handler).refresh_certificate("eh_1")
