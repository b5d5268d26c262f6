"""
Payment gateway REST client with retry logic.

Speaks the Razorpay-style orders/payments API over httpx with HTTP basic
auth. Transport failures, timeouts, 429 and 5xx responses are retried with
exponential backoff; other 4xx responses fail immediately.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from payship.core.config import Settings, get_settings
from payship.core.exceptions import UpstreamUnavailableError
from payship.core.logging import get_logger

logger = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class GatewayError(UpstreamUnavailableError):
    """Base exception for payment gateway errors."""

    default_code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        **context: Any,
    ):
        super().__init__(message, code=code, status_code=status_code, **context)
        self.status_code = status_code


class GatewayRequestError(GatewayError):
    """The gateway rejected the request (4xx other than 401/429)."""

    default_code = "GATEWAY_REQUEST_REJECTED"


class GatewayAuthenticationError(GatewayError):
    default_code = "GATEWAY_AUTHENTICATION_FAILED"


class GatewayUnavailableError(GatewayError):
    """Timeouts, connection errors or 5xx after all retries."""

    default_code = "GATEWAY_UNAVAILABLE"


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "GatewayOrder":
        return cls(
            id=data["id"],
            amount=int(data["amount"]),
            currency=data.get("currency", "INR"),
            receipt=data.get("receipt"),
            status=data.get("status"),
        )


@dataclass(frozen=True)
class GatewayPayment:
    """
    Payment entity as reported by the gateway.

    ``status`` follows the gateway vocabulary: created, authorized, captured,
    refunded or failed.
    """

    id: str
    order_id: Optional[str]
    amount: int
    currency: str
    status: str
    method: Optional[str] = None
    error_description: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "GatewayPayment":
        return cls(
            id=data["id"],
            order_id=data.get("order_id"),
            amount=int(data.get("amount") or 0),
            currency=data.get("currency", "INR"),
            status=data.get("status", ""),
            method=data.get("method"),
            error_description=data.get("error_description"),
            raw=data,
        )

    @property
    def is_captured(self) -> bool:
        return self.status == "captured"

    @property
    def is_failed(self) -> bool:
        return self.status == "failed"


class PaymentGatewayClient:
    """
    Async client for gateway order creation and payment lookup.

    A fresh ``httpx.AsyncClient`` is opened per call so the client can be used
    from short-lived event loops (Celery tasks) as well as from the web app.
    """

    def __init__(
        self,
        base_url: str,
        key_id: str,
        key_secret: str,
        timeout: float = 10.0,
        max_retries: int = 3,
        initial_backoff: float = 0.5,
        max_backoff: float = 8.0,
        backoff_multiplier: float = 2.0,
        deadline: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize gateway client.

        Args:
            base_url: Gateway REST base URL
            key_id: Public key id
            key_secret: Key secret used for basic auth
            timeout: Per-request timeout in seconds
            max_retries: Retries after the first attempt
            initial_backoff: First retry delay in seconds
            max_backoff: Cap on the retry delay
            backoff_multiplier: Growth factor between retries
            deadline: Bound in seconds on one operation, retries included
            transport: Optional httpx transport, used by tests
        """
        self.base_url = base_url.rstrip("/")
        self.key_id = key_id
        self._key_secret = key_secret
        self.timeout = timeout
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.backoff_multiplier = backoff_multiplier
        self.deadline = deadline
        self._transport = transport

    def _calculate_backoff(self, attempt: int) -> float:
        return min(self.initial_backoff * (self.backoff_multiplier**attempt), self.max_backoff)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.key_id, self._key_secret),
            timeout=self.timeout,
            transport=self._transport,
        )

    @staticmethod
    def _error_description(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text[:200]
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            return error.get("description") or error.get("code") or str(error)
        return str(body)[:200]

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Run a gateway call with retries, bounded by ``deadline`` overall.

        Raises:
            GatewayUnavailableError: When the deadline expires first
        """
        try:
            async with asyncio.timeout(self.deadline):
                return await self._execute_with_retry(operation, method, path, **kwargs)
        except TimeoutError:
            logger.error(
                "Gateway operation exceeded deadline",
                operation=operation,
                deadline_seconds=self.deadline,
            )
            raise GatewayUnavailableError(
                f"Gateway unavailable for {operation}",
                code="GATEWAY_DEADLINE_EXCEEDED",
                operation=operation,
                deadline_seconds=self.deadline,
            )

    async def _execute_with_retry(
        self,
        operation: str,
        method: str,
        path: str,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """
        Execute a gateway call with exponential backoff retry logic.

        Args:
            operation: Operation name for logging
            method: HTTP method
            path: Path relative to the base URL
            **kwargs: Passed through to ``httpx.AsyncClient.request``

        Returns:
            Decoded JSON response body

        Raises:
            GatewayAuthenticationError: On 401
            GatewayRequestError: On any other non-retryable 4xx
            GatewayUnavailableError: When retries are exhausted
        """
        last_error: Optional[str] = None

        for attempt in range(self.max_retries + 1):
            try:
                async with self._client() as client:
                    response = await client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                last_error = f"timeout: {e}"
            except httpx.TransportError as e:
                last_error = f"connection error: {e}"
            else:
                if response.is_success:
                    if attempt > 0:
                        logger.info(
                            "Gateway operation succeeded after retry",
                            operation=operation,
                            attempt=attempt,
                        )
                    return response.json()

                description = self._error_description(response)

                if response.status_code == 401:
                    logger.error("Gateway authentication failed", operation=operation)
                    raise GatewayAuthenticationError(
                        "Gateway rejected credentials",
                        status_code=401,
                        operation=operation,
                    )

                if response.status_code not in RETRYABLE_STATUS_CODES:
                    logger.warning(
                        "Gateway rejected request",
                        operation=operation,
                        status_code=response.status_code,
                        description=description,
                    )
                    raise GatewayRequestError(
                        f"Gateway rejected {operation}: {description}",
                        status_code=response.status_code,
                        operation=operation,
                    )

                last_error = f"HTTP {response.status_code}: {description}"

            if attempt < self.max_retries:
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Retrying gateway operation",
                    operation=operation,
                    attempt=attempt + 1,
                    delay_seconds=delay,
                    error=last_error,
                )
                await asyncio.sleep(delay)

        logger.error(
            "Gateway operation failed after retries",
            operation=operation,
            max_retries=self.max_retries,
            error=last_error,
        )
        raise GatewayUnavailableError(
            f"Gateway unavailable for {operation}",
            operation=operation,
            error=last_error,
        )

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[dict[str, str]] = None,
    ) -> GatewayOrder:
        """
        Create a gateway order the checkout widget will collect against.

        Args:
            amount: Amount in minor currency units
            currency: ISO currency code
            receipt: Merchant receipt reference
            notes: Free-form key/value notes stored with the order

        Returns:
            The created gateway order
        """
        payload: dict[str, Any] = {"amount": amount, "currency": currency, "receipt": receipt}
        if notes:
            payload["notes"] = notes

        data = await self._request("create_order", "POST", "/orders", json=payload)
        order = GatewayOrder.from_api(data)
        logger.info(
            "Gateway order created",
            gateway_order_id=order.id,
            amount=order.amount,
            currency=order.currency,
        )
        return order

    async def fetch_payment(self, payment_id: str) -> GatewayPayment:
        """
        Fetch the gateway's own view of a payment.

        Args:
            payment_id: Gateway payment id

        Returns:
            Current payment entity
        """
        data = await self._request("fetch_payment", "GET", f"/payments/{payment_id}")
        payment = GatewayPayment.from_api(data)
        logger.debug(
            "Gateway payment fetched",
            gateway_payment_id=payment.id,
            status=payment.status,
        )
        return payment


def get_gateway_client(settings: Optional[Settings] = None) -> PaymentGatewayClient:
    """Build a gateway client from application settings."""
    settings = settings or get_settings()
    return PaymentGatewayClient(
        base_url=settings.gateway_base_url,
        key_id=settings.gateway_key_id,
        key_secret=settings.gateway_key_secret,
        timeout=settings.gateway_timeout_seconds,
        max_retries=settings.gateway_max_retries,
        deadline=settings.gateway_deadline_seconds,
    )
