"""
Payout gateway interface and implementations.

The scheduler only sees `PayoutGateway.initiate_transfer`; the concrete
processor is picked from settings.
"""

import logging
import uuid
from decimal import Decimal
from typing import Optional, Protocol

import httpx

from billing_backend.app.core.config import settings
from billing_backend.app.core.exceptions import GatewayError

logger = logging.getLogger(__name__)


class PayoutGateway(Protocol):
    async def initiate_transfer(self, destination_key: str, amount: int, memo: str) -> str:
        """Send `amount` minor units to a PIX key. Returns the processor reference."""
        ...


class SimulatedPayoutGateway:
    """Accepts every transfer and returns a SIM_ reference. Used outside production."""

    async def initiate_transfer(self, destination_key: str, amount: int, memo: str) -> str:
        reference = f"SIM_{uuid.uuid4().hex[:16]}"
        logger.info("Simulated payout of %s to %s: %s", amount, destination_key, reference)
        return reference


class HttpPayoutGateway:
    """PIX transfer through the Mercado Pago money-out API."""

    def __init__(self, url: Optional[str] = None, token: Optional[str] = None, client: Optional[httpx.AsyncClient] = None):
        self.url = url or settings.payout_gateway_url
        self.token = token or settings.payout_gateway_token
        self._client = client

    async def initiate_transfer(self, destination_key: str, amount: int, memo: str) -> str:
        payload = {
            # Processor expects major units
            "amount": float(Decimal(amount) / Decimal(100)),
            "destination": {"type": "pix", "key": destination_key},
            "description": memo,
        }
        headers = {
            "Authorization": f"Bearer {self.token}",
            "X-Idempotency-Key": uuid.uuid4().hex,
        }

        client = self._client or httpx.AsyncClient()
        try:
            response = await client.post(self.url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise GatewayError(f"Payout transfer failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code >= 400:
            raise GatewayError(
                f"Payout transfer rejected with status {response.status_code}",
                details={"status_code": response.status_code, "body": response.text[:500]},
            )

        reference = response.json().get("id")
        if not reference:
            raise GatewayError("Payout gateway returned no transfer id")
        return str(reference)


def get_payout_gateway() -> PayoutGateway:
    if settings.payout_gateway_mode == "http":
        return HttpPayoutGateway()
    return SimulatedPayoutGateway()
