"""Namecheap registrar client: availability, registration and host records."""

import logging
import re
import xml.etree.ElementTree as ET

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from sitehost.config import Settings
from sitehost.schemas.provider import (
    DnsRecord,
    DomainAvailability,
    RegistrantContact,
    RegistrationResult,
    TldPricing,
)
from sitehost.services.errors import (
    DnsError,
    NonRetryableProviderError,
    RegistrationError,
    TransientProviderError,
)
from sitehost.utils.hostname_validator import split_domain

logger = logging.getLogger(__name__)

PROVIDER = "namecheap"

CONTACT_ROLES = ("Registrant", "Admin", "Tech", "AuxBilling")

# Listed first in pricing results, in this order
POPULAR_TLDS = (".com", ".net", ".org", ".io", ".co", ".app", ".dev", ".site")

# Country calling codes three digits long
THREE_DIGIT_CALLING_CODE = re.compile(
    r"^(35[0-9]|37[0-9]|38[0-9]|42[0-9]|50[0-9]|59[0-9]|67[0-9]|68[0-9]"
    r"|85[0-9]|88[0-9]|96[0-9]|97[0-9]|99[0-9])"
)


def format_registrar_phone(phone: str) -> str:
    """
    Format a phone number as ``+CountryCode.Number``.

    Examples:
        +40747934436 -> +40.747934436
        12125551234  -> +1.2125551234
    """
    if re.match(r"^\+\d{1,3}\.\d+$", phone):
        return phone

    digits = re.sub(r"\D", "", phone)

    if digits.startswith("1") and len(digits) == 11:
        code_length = 1
    elif THREE_DIGIT_CALLING_CODE.match(digits):
        code_length = 3
    else:
        code_length = 2

    return f"+{digits[:code_length]}.{digits[code_length:]}"


def _find(element: ET.Element, tag: str) -> ET.Element | None:
    return element.find(f".//{{*}}{tag}")


def _find_all(element: ET.Element, tag: str) -> list[ET.Element]:
    return element.findall(f".//{{*}}{tag}")


class NamecheapClient:
    """Async wrapper for the Namecheap XML API."""

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        """Initialize from explicitly passed settings (``transport`` is for tests)."""
        self.api_url = settings.namecheap_api_url
        self.timeout = settings.PROVIDER_TIMEOUT_SECONDS
        self._base_params = {
            "ApiUser": settings.NAMECHEAP_API_USER,
            "ApiKey": settings.NAMECHEAP_API_KEY,
            "UserName": settings.NAMECHEAP_USERNAME,
            "ClientIp": settings.NAMECHEAP_CLIENT_IP,
        }
        self._transport = transport

    async def _call(self, command: str, params: dict[str, str]) -> ET.Element:
        """
        Run one API command and return the parsed response.

        Raises:
            TransientProviderError: Network failure, timeout, 5xx or garbled body
            NonRetryableProviderError: The API answered with Status="ERROR"
        """
        query = {**self._base_params, "Command": command, **params}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(self.api_url, params=query)
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Namecheap {command} timed out: {e}", PROVIDER)
        except httpx.TransportError as e:
            raise TransientProviderError(f"Namecheap unreachable: {e}", PROVIDER)

        if response.status_code >= 500:
            raise TransientProviderError(f"Namecheap returned {response.status_code}", PROVIDER)

        try:
            root = ET.fromstring(response.text)
        except ET.ParseError as e:
            raise TransientProviderError(f"Namecheap returned invalid XML: {e}", PROVIDER)

        if root.get("Status", "").upper() == "ERROR":
            errors = [e.text or "" for e in _find_all(root, "Error")]
            message = "; ".join(m for m in errors if m) or "Unknown Namecheap API error"
            raise NonRetryableProviderError(message, PROVIDER)

        return root

    @retry(
        retry=retry_if_exception_type(TransientProviderError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def check_availability(self, names: list[str]) -> list[DomainAvailability]:
        """Bulk availability check."""
        logger.info(f"[Namecheap] Checking availability for: {', '.join(names)}")
        root = await self._call("namecheap.domains.check", {"DomainList": ",".join(names)})

        results = []
        for element in _find_all(root, "DomainCheckResult"):
            name = element.get("Domain")
            if not name:
                continue
            premium_price = element.get("PremiumRegistrationPrice")
            results.append(DomainAvailability(
                name=name,
                available=element.get("Available", "").lower() == "true",
                premium=element.get("IsPremiumName", "").lower() == "true",
                premium_price=float(premium_price) if premium_price else None,
            ))
        return results

    async def register(
        self,
        name: str,
        years: int,
        contact: RegistrantContact,
    ) -> RegistrationResult:
        """
        Register a domain. Called once per purchase; never retried here.

        Raises:
            RegistrationError: Any failure, transient or not
        """
        params = {"DomainName": name, "Years": str(years)}
        for role in CONTACT_ROLES:
            params.update({
                f"{role}FirstName": contact.first_name,
                f"{role}LastName": contact.last_name,
                f"{role}Address1": contact.address1,
                f"{role}City": contact.city,
                f"{role}StateProvince": contact.state_province,
                f"{role}PostalCode": contact.postal_code,
                f"{role}Country": contact.country,
                f"{role}Phone": format_registrar_phone(contact.phone),
                f"{role}EmailAddress": contact.email,
            })
            if contact.organization:
                params[f"{role}OrganizationName"] = contact.organization
        params.update({"AddFreeWhoisguard": "yes", "WGEnabled": "yes"})

        logger.info(f"[Namecheap] Registering domain: {name} for {years} year(s)")
        try:
            root = await self._call("namecheap.domains.create", params)
        except (TransientProviderError, NonRetryableProviderError) as e:
            raise RegistrationError(f"Registration failed: {e.message}", PROVIDER)

        result = _find(root, "DomainCreateResult")
        if result is None or result.get("Registered", "").lower() != "true":
            raise RegistrationError(f"Registration of {name} was not confirmed", PROVIDER)

        charged = result.get("ChargedAmount")
        return RegistrationResult(
            domain=name,
            order_ref=result.get("OrderID", ""),
            transaction_id=result.get("TransactionID"),
            charged_amount=float(charged) if charged else None,
        )

    async def _get_hosts(self, sld: str, tld: str) -> list[dict[str, str]]:
        root = await self._call("namecheap.domains.dns.getHosts", {"SLD": sld, "TLD": tld})
        return [
            {
                "name": host.get("Name", ""),
                "type": host.get("Type", ""),
                "address": host.get("Address", ""),
                "ttl": host.get("TTL", "1800"),
            }
            for host in _find_all(root, "host")
        ]

    async def _set_hosts(self, sld: str, tld: str, hosts: list[dict[str, str]]) -> None:
        params = {"SLD": sld, "TLD": tld}
        for i, host in enumerate(hosts, start=1):
            params[f"HostName{i}"] = host["name"]
            params[f"RecordType{i}"] = host["type"]
            params[f"Address{i}"] = host["address"]
            params[f"TTL{i}"] = str(host["ttl"])

        root = await self._call("namecheap.domains.dns.setHosts", params)
        result = _find(root, "DomainDNSSetHostsResult")
        if result is None or result.get("IsSuccess", "").lower() != "true":
            raise DnsError(f"Namecheap did not confirm host records for {sld}.{tld}", PROVIDER)

    def _to_hosts(self, records: list[DnsRecord]) -> list[dict[str, str]]:
        hosts = []
        for record in records:
            host, _, _ = split_domain(record.name)
            hosts.append({
                "name": host,
                "type": record.type.upper(),
                "address": record.value,
                "ttl": str(record.ttl),
            })
        return hosts

    async def set_host_records(self, name: str, records: list[DnsRecord]) -> None:
        """
        Publish records, keeping unrelated hosts intact.

        setHosts replaces the whole host list, so writing the same records twice
        leaves the same end state.

        Raises:
            DnsError: Records could not be written
        """
        _, sld, tld = split_domain(name)
        ours = self._to_hosts(records)
        replaced = {(h["name"], h["type"]) for h in ours}

        try:
            current = await self._get_hosts(sld, tld)
            kept = [h for h in current if (h["name"], h["type"]) not in replaced]
            logger.info(f"[Namecheap] Setting {len(ours)} DNS records for {sld}.{tld}")
            await self._set_hosts(sld, tld, kept + ours)
        except DnsError:
            raise
        except (TransientProviderError, NonRetryableProviderError) as e:
            raise DnsError(f"Failed to set host records for {name}: {e.message}", PROVIDER)

    async def remove_host_records(self, name: str, records: list[DnsRecord]) -> None:
        """Remove records we published; absent records count as removed."""
        _, sld, tld = split_domain(name)
        ours = {(h["name"], h["type"], h["address"]) for h in self._to_hosts(records)}

        try:
            current = await self._get_hosts(sld, tld)
            kept = [h for h in current if (h["name"], h["type"], h["address"]) not in ours]
            if len(kept) == len(current):
                return
            await self._set_hosts(sld, tld, kept)
        except DnsError:
            raise
        except (TransientProviderError, NonRetryableProviderError) as e:
            raise DnsError(f"Failed to remove host records for {name}: {e.message}", PROVIDER)

    async def suggest(self, keyword: str) -> list[DomainAvailability]:
        """Availability of common variations of a keyword, available names first."""
        tlds = [".com", ".net", ".org", ".io"]
        variations = [
            keyword,
            f"get{keyword}",
            f"my{keyword}",
            f"the{keyword}",
            f"{keyword}app",
            f"{keyword}site",
            f"{keyword}hq",
        ]
        names = [f"{variation}{tld}" for variation in variations for tld in tlds][:20]
        results = await self.check_availability(names)
        return sorted(results, key=lambda r: not r.available)

    @retry(
        retry=retry_if_exception_type(TransientProviderError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        reraise=True,
    )
    async def get_tld_pricing(self) -> list[TldPricing]:
        """One-year registration price per TLD, popular TLDs first."""
        logger.info("[Namecheap] Fetching TLD pricing")
        root = await self._call("namecheap.users.getPricing", {
            "ProductType": "DOMAIN",
            "ProductCategory": "REGISTER",
        })

        results = []
        for product in _find_all(root, "Product"):
            name = product.get("Name")
            prices = _find_all(product, "Price")
            if not name or not prices:
                continue
            one_year = next((p for p in prices if p.get("Duration") == "1"), prices[0])
            if not one_year.get("Price"):
                continue
            results.append(TldPricing(
                tld=f".{name.lower()}",
                register_price=float(one_year.get("Price")),
                currency=one_year.get("Currency") or "USD",
            ))

        def rank(pricing: TldPricing) -> int:
            if pricing.tld in POPULAR_TLDS:
                return POPULAR_TLDS.index(pricing.tld)
            return len(POPULAR_TLDS)

        return sorted(results, key=rank)
