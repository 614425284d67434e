"""Hostname validation utilities."""

import re
from typing import Tuple

from sitehost.services.errors import InvalidHostnameError

# One DNS label: letters, digits, inner hyphens, 1-63 chars
LABEL_REGEX = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")

# Second-level public suffixes we sell or accept
MULTI_LABEL_SUFFIXES = frozenset({
    "co.uk",
    "org.uk",
    "me.uk",
    "com.au",
    "net.au",
    "co.nz",
    "com.br",
    "co.za",
    "com.mx",
})


def validate_hostname(hostname: str) -> Tuple[bool, str | None]:
    """
    Validate a fully-qualified hostname.

    Args:
        hostname: Hostname to validate (already lowercased or not)

    Returns:
        Tuple of (is_valid, error_message)
        If valid, error_message is None
    """
    if not hostname:
        return False, "Hostname is required"

    hostname = hostname.strip().lower().rstrip(".")

    if len(hostname) > 253:
        return False, "Hostname is too long (max 253 characters)"

    if "@" in hostname or "/" in hostname or ":" in hostname:
        return False, "Provide a hostname, not an email address or URL"

    labels = hostname.split(".")
    if len(labels) < 2:
        return False, "Hostname must contain at least one dot"

    for label in labels:
        if not label:
            return False, "Hostname cannot contain empty labels"
        if not LABEL_REGEX.match(label):
            return False, f"Invalid hostname label: {label}"

    if labels[-1].isdigit():
        return False, "Top-level domain cannot be numeric"

    return True, None


def normalize_hostname(hostname: str) -> str:
    """
    Lowercase, strip and validate a hostname.

    Raises:
        InvalidHostnameError: If the hostname is not a valid DNS name
    """
    is_valid, error = validate_hostname(hostname)
    if not is_valid:
        raise InvalidHostnameError(error or "Invalid hostname")
    return hostname.strip().lower().rstrip(".")


def split_domain(hostname: str) -> tuple[str, str, str]:
    """
    Split a hostname into (host, sld, tld) as registrars address it.

    ``shop.example.com`` -> ``("shop", "example", "com")``;
    the apex gets ``"@"`` as host.
    """
    labels = hostname.lower().split(".")
    suffix_len = 2 if ".".join(labels[-2:]) in MULTI_LABEL_SUFFIXES else 1
    if len(labels) <= suffix_len:
        raise InvalidHostnameError(f"{hostname} has no registrable domain")

    tld = ".".join(labels[-suffix_len:])
    sld = labels[-suffix_len - 1]
    host = ".".join(labels[: -suffix_len - 1]) or "@"
    return host, sld, tld


def registrable_domain(hostname: str) -> str:
    _, sld, tld = split_domain(hostname)
    return f"{sld}.{tld}"
