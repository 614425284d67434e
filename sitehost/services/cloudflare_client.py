"""Cloudflare for SaaS client: custom hostnames and their certificates."""

import logging
from typing import Any

import httpx
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sitehost.config import Settings
from sitehost.models.domain_activation import CertificateStatus
from sitehost.schemas.provider import CustomHostnameResult, DnsRecord
from sitehost.services.errors import NonRetryableProviderError, TransientProviderError

logger = logging.getLogger(__name__)

PROVIDER = "cloudflare"

# Cloudflare error code for "Duplicate custom hostname found."
DUPLICATE_HOSTNAME_CODE = 1406

# Cloudflare ssl.status -> certificate sub-state
SSL_STATUS_MAP = {
    "initializing": CertificateStatus.INITIALIZING,
    "pending_validation": CertificateStatus.PENDING_VALIDATION,
    "pending_issuance": CertificateStatus.PENDING_ISSUANCE,
    "pending_deployment": CertificateStatus.PENDING_ISSUANCE,
    "active": CertificateStatus.ACTIVE,
}


class CloudflareClient:
    """Async wrapper for the Cloudflare custom hostnames API."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize from explicitly passed settings (``transport`` is for tests)."""
        self.base_url = settings.CLOUDFLARE_API_URL
        self.zone_id = settings.CLOUDFLARE_ZONE_ID
        self.origin_server = settings.CLOUDFLARE_ORIGIN_SERVER
        self.cname_target = settings.cname_target
        self.timeout = settings.PROVIDER_TIMEOUT_SECONDS
        self._transport = transport

        if settings.CLOUDFLARE_API_EMAIL and settings.CLOUDFLARE_API_KEY:
            self._auth_headers = {
                "X-Auth-Email": settings.CLOUDFLARE_API_EMAIL,
                "X-Auth-Key": settings.CLOUDFLARE_API_KEY,
            }
        else:
            self._auth_headers = {"Authorization": f"Bearer {settings.CLOUDFLARE_API_TOKEN}"}

    @property
    def _hostnames_path(self) -> str:
        return f"/zones/{self.zone_id}/custom_hostnames"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> httpx.Response:
        """Send one request; transport failures become TransientProviderError."""
        logger.info(f"[Cloudflare] {method} {path}")
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                headers=self._auth_headers,
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                return await client.request(method, path, json=json, params=params)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Cloudflare request timed out: {e}", PROVIDER)
        except httpx.TransportError as e:
            raise TransientProviderError(f"Cloudflare unreachable: {e}", PROVIDER)

    @staticmethod
    def _errors(response: httpx.Response) -> list[dict[str, Any]]:
        try:
            return response.json().get("errors") or []
        except ValueError:
            return []

    def _raise_for_status(self, response: httpx.Response) -> dict[str, Any]:
        """Classify a response and return its ``result``."""
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientProviderError(
                f"Cloudflare returned {response.status_code}",
                PROVIDER,
            )

        try:
            body = response.json()
        except ValueError:
            raise TransientProviderError("Cloudflare returned a non-JSON body", PROVIDER)

        if response.is_error or not body.get("success", False):
            message = ", ".join(e.get("message", "") for e in body.get("errors") or [])
            raise NonRetryableProviderError(
                f"Cloudflare API error: {message or response.status_code}",
                PROVIDER,
            )
        return body.get("result")

    def _build_instructions(self, hostname: str, result: dict[str, Any]) -> list[DnsRecord]:
        records = [DnsRecord(type="CNAME", name=hostname, value=self.cname_target)]
        ownership = result.get("ownership_verification") or {}
        if ownership.get("name") and ownership.get("value"):
            records.append(DnsRecord(
                type=ownership.get("type", "txt").upper(),
                name=ownership["name"],
                value=ownership["value"],
            ))
        return records

    async def _get_by_name(self, hostname: str) -> dict[str, Any] | None:
        response = await self._request("GET", self._hostnames_path, params={"hostname": hostname})
        result = self._raise_for_status(response) or []
        return result[0] if result else None

    async def create_custom_hostname(self, hostname: str, owner_tag: str) -> CustomHostnameResult:
        """
        Create the custom hostname, or adopt it if an earlier attempt already did.

        Args:
            hostname: Customer hostname
            owner_tag: Activation id stored in custom metadata, used to recognise
                our own object on retry

        Returns:
            Edge reference and the DNS records the customer must publish

        Raises:
            NonRetryableProviderError: Hostname held by someone else or rejected
            TransientProviderError: Network failure or 5xx
        """
        payload = {
            "hostname": hostname,
            "ssl": {
                "method": "http",
                "type": "dv",
                "settings": {"min_tls_version": "1.2"},
            },
            "custom_metadata": {"activation_id": owner_tag},
        }
        if self.origin_server:
            payload["custom_origin_server"] = self.origin_server

        response = await self._request("POST", self._hostnames_path, json=payload)

        codes = {e.get("code") for e in self._errors(response)}
        if response.status_code == 409 or DUPLICATE_HOSTNAME_CODE in codes:
            existing = await self._get_by_name(hostname)
            metadata = (existing or {}).get("custom_metadata") or {}
            if existing and metadata.get("activation_id") == owner_tag:
                logger.info(f"[Cloudflare] Adopting existing custom hostname {existing['id']}")
                return CustomHostnameResult(
                    edge_hostname_ref=existing["id"],
                    dns_instructions=self._build_instructions(hostname, existing),
                )
            raise NonRetryableProviderError("duplicate hostname", PROVIDER)

        result = self._raise_for_status(response)
        logger.info(f"[Cloudflare] Custom hostname created: {result['id']} for {hostname}")
        return CustomHostnameResult(
            edge_hostname_ref=result["id"],
            dns_instructions=self._build_instructions(hostname, result),
        )

    @retry(
        retry=retry_if_exception_type(TransientProviderError),
        stop=stop_after_attempt(2),
        wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
    )
    async def _fetch_hostname(self, edge_hostname_ref: str) -> dict[str, Any] | None:
        response = await self._request("GET", f"{self._hostnames_path}/{edge_hostname_ref}")
        if response.status_code == 404:
            return None
        return self._raise_for_status(response)

    async def get_certificate_status(self, edge_hostname_ref: str) -> CertificateStatus:
        """Read the certificate sub-state; UNKNOWN when it cannot be determined."""
        try:
            result = await self._fetch_hostname(edge_hostname_ref)
        except RetryError as e:
            logger.warning(f"[Cloudflare] Status unknown for {edge_hostname_ref}: {e.last_attempt.exception()}")
            return CertificateStatus.UNKNOWN
        except NonRetryableProviderError as e:
            logger.warning(f"[Cloudflare] Status unknown for {edge_hostname_ref}: {e}")
            return CertificateStatus.UNKNOWN

        if result is None:
            logger.warning(f"[Cloudflare] Custom hostname {edge_hostname_ref} not found")
            return CertificateStatus.UNKNOWN

        ssl_status = (result.get("ssl") or {}).get("status", "")
        return SSL_STATUS_MAP.get(ssl_status, CertificateStatus.UNKNOWN)

    async def refresh_certificate(self, edge_hostname_ref: str) -> None:
        """
        Re-trigger certificate validation for a custom hostname.

        Raises:
            NonRetryableProviderError: Cloudflare rejected the request
            TransientProviderError: Network failure or 5xx
        """
        response = await self._request(
            "PATCH",
            f"{self._hostnames_path}/{edge_hostname_ref}",
            json={"ssl": {"method": "http", "type": "dv"}},
        )
        self._raise_for_status(response)
        logger.info(f"[Cloudflare] Certificate validation refreshed for {edge_hostname_ref}")

    async def find_custom_hostname(self, hostname: str, owner_tag: str) -> str | None:
        """Look up the reference of a custom hostname we created, by name."""
        existing = await self._get_by_name(hostname)
        metadata = (existing or {}).get("custom_metadata") or {}
        if existing and metadata.get("activation_id") == owner_tag:
            return existing["id"]
        return None

    async def delete_custom_hostname(self, edge_hostname_ref: str) -> None:
        """Delete the custom hostname; an already-deleted one counts as success."""
        response = await self._request("DELETE", f"{self._hostnames_path}/{edge_hostname_ref}")
        if response.status_code == 404:
            logger.info(f"[Cloudflare] Custom hostname {edge_hostname_ref} already gone")
            return
        self._raise_for_status(response)
        logger.info(f"[Cloudflare] Custom hostname deleted: {edge_hostname_ref}")
