"""Registrar lookup routes: availability and name suggestions."""

import logging
import re

from fastapi import APIRouter, Depends, Query, status

from sitehost.dependencies import get_providers
from sitehost.schemas.common import raise_api_error
from sitehost.schemas.domain import AvailabilityResponse, PricingResponse
from sitehost.services.errors import ProviderError
from sitehost.services.providers import ProviderBundle

logger = logging.getLogger(__name__)

router = APIRouter()

MAX_CHECK_NAMES = 50
MAX_PRICING_TLDS = 20


@router.get("/registrar/check", response_model=AvailabilityResponse)
async def check_availability(
    domains: str = Query(..., description="Comma-separated domain names"),
    providers: ProviderBundle = Depends(get_providers),
) -> AvailabilityResponse:
    """
    Bulk availability check.

    **Query Parameter:**
    - `domains`: up to 50 names, e.g. `example.com,example.net`
    """
    names = [d.strip().lower() for d in domains.split(",") if d.strip()]
    if not names:
        raise_api_error(code="NO_DOMAINS", message="At least one domain is required")
    if len(names) > MAX_CHECK_NAMES:
        raise_api_error(
            code="TOO_MANY_DOMAINS",
            message=f"Maximum {MAX_CHECK_NAMES} domains per request",
        )

    try:
        results = await providers.registrar.check_availability(names)
    except ProviderError as e:
        logger.error(f"Availability check failed: {e}")
        raise_api_error(
            code="REGISTRAR_ERROR",
            message=e.message,
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    return AvailabilityResponse(results=results)


@router.get("/registrar/suggest", response_model=AvailabilityResponse)
async def suggest_domains(
    keyword: str = Query(..., description="Keyword to build names from"),
    providers: ProviderBundle = Depends(get_providers),
) -> AvailabilityResponse:
    """Availability of name variations built from a keyword, available first."""
    clean = re.sub(r"[^a-z0-9]", "", keyword.lower())
    if len(clean) < 2:
        raise_api_error(
            code="INVALID_KEYWORD",
            message="Keyword must contain at least 2 letters or digits",
        )

    try:
        results = await providers.registrar.suggest(clean)
    except ProviderError as e:
        logger.error(f"Suggestion lookup failed: {e}")
        raise_api_error(
            code="REGISTRAR_ERROR",
            message=e.message,
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    return AvailabilityResponse(results=results)


@router.get("/registrar/pricing", response_model=PricingResponse)
async def tld_pricing(
    providers: ProviderBundle = Depends(get_providers),
) -> PricingResponse:
    """One-year registration prices, popular TLDs first (top 20)."""
    try:
        pricing = await providers.registrar.get_tld_pricing()
    except ProviderError as e:
        logger.error(f"Pricing lookup failed: {e}")
        raise_api_error(
            code="REGISTRAR_ERROR",
            message=e.message,
            status_code=status.HTTP_502_BAD_GATEWAY,
        )

    return PricingResponse(tlds=pricing[:MAX_PRICING_TLDS])
