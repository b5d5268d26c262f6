"""
Courier REST client: rate lookup, shipment creation and tracking.

Speaks the Delhivery-style API with token authentication. None of the public
methods raise on upstream trouble. A missing rate means the destination is
not serviceable, and shipment or tracking failures come back as explicit
unsuccessful results carrying the reason.
"""

import json
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from payship.core.config import Settings, get_settings
from payship.core.exceptions import ValidationFailedError
from payship.core.logging import get_logger, log_performance
from payship.database.models.order import DeliveryStatus
from payship.services.delivery.zones import billable_kg

logger = get_logger(__name__)

NOT_SERVICEABLE_MESSAGE = "Pincode not serviceable"
DEFAULT_SHIPMENT_DESCRIPTION = "Food Items"

COURIER_STATUS_MAP: dict[str, DeliveryStatus] = {
    "Shipped": DeliveryStatus.SHIPMENT_CREATED,
    "Dispatched": DeliveryStatus.SHIPMENT_CREATED,
    "In transit": DeliveryStatus.IN_TRANSIT,
    "In Transit": DeliveryStatus.IN_TRANSIT,
    "Out for Delivery": DeliveryStatus.IN_TRANSIT,
    "Out For Delivery": DeliveryStatus.IN_TRANSIT,
    "Delivered": DeliveryStatus.DELIVERED,
    "RTO Initiated": DeliveryStatus.RTO,
    "RTO-Initiated": DeliveryStatus.RTO,
    "RTO Delivered": DeliveryStatus.RTO,
    "RTO-Delivered": DeliveryStatus.RTO,
    "Cancelled": DeliveryStatus.RTO,
    "Lost": DeliveryStatus.RTO,
    "Damaged": DeliveryStatus.RTO,
}

REQUIRED_SHIPMENT_FIELDS = (
    "customer_name",
    "address",
    "postal_code",
    "city",
    "state",
    "phone",
    "order_id",
)


def map_courier_status(raw_status: Optional[str]) -> DeliveryStatus:
    """Translate a courier status string; anything unknown is PENDING."""
    if not raw_status:
        return DeliveryStatus.PENDING
    return COURIER_STATUS_MAP.get(raw_status.strip(), DeliveryStatus.PENDING)


class MissingShipmentFieldError(ValidationFailedError):
    default_code = "MISSING_SHIPMENT_FIELD"

    def __init__(self, field_name: str, order_id: Optional[str] = None):
        super().__init__(
            f"Missing required field: {field_name}",
            field=field_name,
            order_id=order_id,
        )
        self.field_name = field_name


@dataclass(frozen=True)
class CourierConfig:
    base_url: str
    tracking_base_url: str
    api_token: str
    origin_postal_code: str
    pickup_location: str
    seller_name: str
    return_address: str
    return_city: str
    return_state: str
    return_phone: str
    rate_timeout: float = 10.0
    shipment_timeout: float = 15.0
    tracking_timeout: float = 10.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CourierConfig":
        settings = settings or get_settings()
        return cls(
            base_url=settings.courier_base_url.rstrip("/"),
            tracking_base_url=settings.courier_tracking_base_url.rstrip("/"),
            api_token=settings.courier_api_token,
            origin_postal_code=settings.courier_origin_postal_code,
            pickup_location=settings.courier_pickup_location,
            seller_name=settings.courier_seller_name,
            return_address=settings.courier_return_address,
            return_city=settings.courier_return_city,
            return_state=settings.courier_return_state,
            return_phone=settings.courier_return_phone,
            rate_timeout=settings.courier_rate_timeout_seconds,
            shipment_timeout=settings.courier_shipment_timeout_seconds,
            tracking_timeout=settings.courier_tracking_timeout_seconds,
        )


@dataclass(frozen=True)
class CourierRate:
    """
    Result of a rate lookup.

    ``total_amount`` is only ever set from the courier's own response.
    """

    serviceable: bool
    total_amount: Optional[Decimal] = None
    message: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ShipmentRequest:
    order_id: str
    customer_name: str
    address: str
    postal_code: str
    city: str
    state: str
    phone: str
    total_amount: Decimal
    quantity: int
    weight_grams: int
    description: str = DEFAULT_SHIPMENT_DESCRIPTION

    def validate(self) -> None:
        """
        Raises:
            MissingShipmentFieldError: For the first empty required field
        """
        for name in REQUIRED_SHIPMENT_FIELDS:
            if not str(getattr(self, name) or "").strip():
                raise MissingShipmentFieldError(name, order_id=self.order_id or None)


@dataclass(frozen=True)
class ShipmentResult:
    success: bool
    waybill: Optional[str] = None
    error: Optional[str] = None
    expected_delivery: Optional[str] = None


@dataclass(frozen=True)
class TrackingResult:
    success: bool
    waybill: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.PENDING
    raw_status: Optional[str] = None
    location: Optional[str] = None
    expected_delivery: Optional[str] = None
    history: list[Any] = field(default_factory=list)
    error: Optional[str] = None


class CourierClient:
    """
    Async client for the courier's rate, shipment and tracking endpoints.
    """

    def __init__(
        self,
        config: CourierConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self._transport = transport

    def _client(self, timeout: float) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout,
            headers={
                "Authorization": f"Token {self.config.api_token}",
                "Accept": "application/json",
            },
            transport=self._transport,
        )

    async def get_rate(self, destination_postal_code: str, weight_grams: int) -> CourierRate:
        """
        Look up the surface rate to a destination.

        Args:
            destination_postal_code: Delivery pincode
            weight_grams: Chargeable weight

        Returns:
            A serviceable rate with the courier's total, or a non-serviceable
            result when the courier gives no usable amount or cannot be reached
        """
        params = {
            "md": "S",
            "ss": "Delivered",
            "d_pin": destination_postal_code,
            "o_pin": self.config.origin_postal_code,
            "cgm": max(1, billable_kg(weight_grams)),
        }
        url = f"{self.config.base_url}/api/kinko/v1/invoice/charges/.json"

        try:
            with log_performance(logger, "courier_rate_lookup", postal_code=destination_postal_code):
                async with self._client(self.config.rate_timeout) as client:
                    response = await client.get(url, params=params)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Courier rate lookup failed",
                postal_code=destination_postal_code,
                error=str(e),
                error_type=type(e).__name__,
            )
            return CourierRate(serviceable=False, message=NOT_SERVICEABLE_MESSAGE)

        rate = data[0] if isinstance(data, list) and data else None
        total = _positive_decimal(rate.get("total_amount")) if isinstance(rate, dict) else None
        if total is None:
            logger.info("Courier returned no usable rate", postal_code=destination_postal_code)
            return CourierRate(serviceable=False, message=NOT_SERVICEABLE_MESSAGE)

        return CourierRate(serviceable=True, total_amount=total, raw=rate)

    def build_shipment_payload(self, request: ShipmentRequest) -> dict[str, Any]:
        """
        Build the courier's shipment creation document.

        Raises:
            MissingShipmentFieldError: If a required address field is empty
        """
        request.validate()
        cfg = self.config
        shipment = {
            "name": request.customer_name[:50],
            "add": request.address[:200],
            "pin": request.postal_code,
            "city": request.city[:50],
            "state": request.state[:50],
            "country": "India",
            "phone": "".join(ch for ch in request.phone if ch.isdigit())[-10:],
            "order": str(request.order_id)[:50],
            "payment_mode": "PREPAID",
            "return_pin": cfg.origin_postal_code,
            "return_city": cfg.return_city,
            "return_phone": cfg.return_phone,
            "return_add": cfg.return_address,
            "return_state": cfg.return_state,
            "products_desc": request.description[:300],
            "hsn_code": "21069099",
            "cod_amount": 0,
            "order_date": date.today().isoformat(),
            "total_amount": int(request.total_amount.to_integral_value()),
            "seller_name": cfg.seller_name,
            "quantity": request.quantity or 1,
            "waybill": "",
            "shipment_width": 15,
            "shipment_height": 10,
            "shipment_length": 20,
            "weight": max(1, billable_kg(request.weight_grams)),
            "shipping_mode": "Surface",
            "address_type": "home",
        }
        return {"shipments": [shipment], "pickup_location": {"name": cfg.pickup_location}}

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentResult:
        """
        Create a shipment and obtain its waybill.

        Returns:
            Success with the waybill, or failure with a descriptive error
        """
        try:
            payload = self.build_shipment_payload(request)
        except MissingShipmentFieldError as e:
            return ShipmentResult(success=False, error=e.message)

        url = f"{self.config.base_url}/api/cmu/create.json"
        body = {"format": "json", "data": json.dumps(payload)}

        try:
            with log_performance(logger, "courier_create_shipment", order_id=request.order_id):
                async with self._client(self.config.shipment_timeout) as client:
                    response = await client.post(url, data=body)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(
                "Courier shipment creation failed",
                order_id=request.order_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return ShipmentResult(success=False, error=f"Shipment creation failed: {e}")

        packages = data.get("packages") if isinstance(data, dict) else None
        package = packages[0] if packages else {}
        waybill = package.get("waybill") if isinstance(package, dict) else None
        if not waybill:
            remarks = package.get("remarks") if isinstance(package, dict) else None
            if isinstance(remarks, list):
                remarks = "; ".join(str(r) for r in remarks)
            error = remarks or (data.get("rmk") if isinstance(data, dict) else None)
            return ShipmentResult(success=False, error=error or "No waybill received from courier")

        logger.info("Courier shipment created", order_id=request.order_id, waybill=waybill)
        return ShipmentResult(
            success=True,
            waybill=str(waybill),
            expected_delivery=package.get("expected_delivery_date"),
        )

    async def track(self, waybill: str) -> TrackingResult:
        """Fetch the latest tracking status of a waybill."""
        if not waybill:
            return TrackingResult(success=False, error="Waybill number is required")

        url = f"{self.config.tracking_base_url}/api/v1/packages/json/"
        try:
            async with self._client(self.config.tracking_timeout) as client:
                response = await client.get(url, params={"waybill": waybill})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Courier tracking failed", waybill=waybill, error=str(e))
            return TrackingResult(success=False, waybill=waybill, error=f"Tracking failed: {e}")

        shipments = data.get("ShipmentData") if isinstance(data, dict) else None
        if not shipments:
            return TrackingResult(success=False, waybill=waybill, error="Shipment not found")

        info = shipments[0].get("Shipment") or {}
        raw_status = (info.get("Status") or {}).get("Status")
        return TrackingResult(
            success=True,
            waybill=waybill,
            status=map_courier_status(raw_status),
            raw_status=raw_status,
            location=info.get("Origin"),
            expected_delivery=info.get("ExpectedDeliveryDate"),
            history=shipments[0].get("ShipmentTrack") or [],
        )


def _positive_decimal(value: Any) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() and amount > 0 else None


def get_courier_client(settings: Optional[Settings] = None) -> CourierClient:
    """Build a courier client from application settings."""
    return CourierClient(CourierConfig.from_settings(settings))
