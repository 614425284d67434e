"""Custom domain API routes."""

import logging

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from sitehost.database import get_session
from sitehost.dependencies import get_policy, get_providers
from sitehost.schemas.common import raise_api_error
from sitehost.schemas.domain import (
    DomainActivationResponse,
    DomainListResponse,
    RequestDomainRequest,
    ServingResponse,
)
from sitehost.services import domain_service
from sitehost.services.errors import (
    CustomDomainNotAllowed,
    HostnameInUseError,
    IdempotencyConflict,
    InvalidHostnameError,
)
from sitehost.services.policy import ProvisioningPolicy
from sitehost.services.providers import ProviderBundle

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/sites/{site_id}/domains",
    response_model=DomainActivationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def request_domain(
    site_id: str,
    request: RequestDomainRequest,
    response: Response,
    db: AsyncSession = Depends(get_session),
    providers: ProviderBundle = Depends(get_providers),
    policy: ProvisioningPolicy = Depends(get_policy),
) -> DomainActivationResponse:
    """
    Attach a custom hostname to a site.

    Creates the edge custom hostname right away and returns the DNS records
    the owner must publish. For purchased domains the records are pushed
    through the registrar instead.

    **Request Body:**
    ```json
    { "hostname": "shop.example.com", "source": "existing" }
    ```

    **Idempotency:**
    If the hostname already has an open activation for this site, that
    activation is returned with 200 and nothing is created.

    **Errors:**
    - 400 `INVALID_HOSTNAME`
    - 403 `CUSTOM_DOMAIN_NOT_ALLOWED`: plan or billing status forbids it
    - 409 `HOSTNAME_IN_USE`: another site is activating this hostname
    """
    try:
        activation, created = await domain_service.request_domain_activation(
            db,
            site_id=site_id,
            hostname=request.hostname,
            source=request.source,
            providers=providers,
            policy=policy,
        )
    except InvalidHostnameError as e:
        raise_api_error(code="INVALID_HOSTNAME", message=str(e))
    except CustomDomainNotAllowed as e:
        raise_api_error(
            code="CUSTOM_DOMAIN_NOT_ALLOWED",
            message=str(e),
            status_code=status.HTTP_403_FORBIDDEN,
        )
    except HostnameInUseError as e:
        raise_api_error(
            code="HOSTNAME_IN_USE",
            message=str(e),
            status_code=status.HTTP_409_CONFLICT,
        )

    if not created:
        response.status_code = status.HTTP_200_OK

    return DomainActivationResponse.model_validate(activation)


@router.get("/sites/{site_id}/domains", response_model=DomainListResponse)
async def list_domains(
    site_id: str,
    db: AsyncSession = Depends(get_session),
) -> DomainListResponse:
    """List every activation of a site, including failed and removed ones."""
    activations, total = await domain_service.list_site_domains(db, site_id)

    return DomainListResponse(
        items=[DomainActivationResponse.model_validate(a) for a in activations],
        total=total,
    )


@router.get("/sites/{site_id}/domains/{hostname}", response_model=DomainActivationResponse)
async def get_domain_status(
    site_id: str,
    hostname: str,
    db: AsyncSession = Depends(get_session),
) -> DomainActivationResponse:
    """
    Current activation state of a hostname.

    **States:**
    - `requested`: edge custom hostname being created
    - `awaiting_dns`: waiting for the DNS records below to resolve
    - `awaiting_certificate`: DNS observed, certificate being issued
    - `live`: serving, unless `suspended_by_billing`
    - `failed`: see `failure_reason`; request the hostname again once fixed
    - `removed`: detached from the site
    """
    activation = await domain_service.get_domain_status(db, site_id, hostname)

    if not activation:
        raise_api_error(
            code="DOMAIN_NOT_FOUND",
            message=f"Domain {hostname} not found for site {site_id}",
            status_code=status.HTTP_404_NOT_FOUND,
        )

    return DomainActivationResponse.model_validate(activation)


@router.delete("/sites/{site_id}/domains/{hostname}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_domain(
    site_id: str,
    hostname: str,
    db: AsyncSession = Depends(get_session),
    providers: ProviderBundle = Depends(get_providers),
) -> Response:
    """
    Detach a hostname from a site.

    Deletes the edge custom hostname and any registrar-managed records on a
    best-effort basis; the activation is marked removed either way.

    **Response:**
    - 204 No Content: Domain removed
    - 404 `DOMAIN_NOT_FOUND`: No activation for this hostname
    """
    try:
        removed = await domain_service.remove_domain(db, site_id, hostname, providers)
    except IdempotencyConflict as e:
        raise_api_error(
            code="DOMAIN_BUSY",
            message=str(e),
            status_code=status.HTTP_409_CONFLICT,
        )

    if not removed:
        raise_api_error(
            code="DOMAIN_NOT_FOUND",
            message=f"Domain {hostname} not found for site {site_id}",
            status_code=status.HTTP_404_NOT_FOUND,
        )

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/sites/{site_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_site(
    site_id: str,
    db: AsyncSession = Depends(get_session),
    providers: ProviderBundle = Depends(get_providers),
) -> Response:
    """Site deletion hook: tear down every custom domain of the site."""
    await domain_service.remove_site(db, site_id, providers)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/serving/{hostname}", response_model=ServingResponse)
async def serving_check(
    hostname: str,
    db: AsyncSession = Depends(get_session),
) -> ServingResponse:
    """
    Whether the edge may serve a hostname.

    True only when the activation is live and not suspended by billing.
    """
    activation = await domain_service.serving_activation(db, hostname)

    return ServingResponse(
        hostname=hostname.lower(),
        site_id=activation.site_id if activation else None,
        allowed=activation is not None and activation.serving_allowed,
    )
