"""
Delivery quote endpoints.
"""

from typing import Annotated

from fastapi import APIRouter, Query

from payship.api.deps import RouterDep, raise_http_error
from payship.core.exceptions import PayshipError
from payship.core.logging import get_logger
from payship.schemas.delivery import (
    DeliveryQuoteResponse,
    ValidateProviderRequest,
    ValidateProviderResponse,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/delivery", tags=["Delivery"])


@router.get(
    "/quote/{postal_code}",
    response_model=DeliveryQuoteResponse,
    summary="Quote delivery to a pincode",
)
async def quote_delivery(
    postal_code: str,
    pricing_router: RouterDep,
    weight_grams: Annotated[int, Query(ge=0, le=100_000)] = 1000,
) -> DeliveryQuoteResponse:
    """
    Quote a delivery. Unserviceable courier destinations return 200 with
    ``serviceable`` false.

    Raises:
        HTTPException: 400 for a malformed pincode
    """
    try:
        quote = await pricing_router.quote(postal_code, weight_grams)
    except PayshipError as e:
        raise_http_error(e)
    return DeliveryQuoteResponse.model_validate(quote.to_dict())


@router.post(
    "/validate-provider",
    response_model=ValidateProviderResponse,
    summary="Check a provider against a pincode",
)
async def validate_provider(
    body: ValidateProviderRequest,
    pricing_router: RouterDep,
) -> ValidateProviderResponse:
    """
    Raises:
        HTTPException: 409 if the provider does not serve the pincode
    """
    try:
        pricing_router.validate_provider(body.postal_code, body.provider)
    except PayshipError as e:
        raise_http_error(e)
    return ValidateProviderResponse(postal_code=body.postal_code, provider=body.provider)
