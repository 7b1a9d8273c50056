# orderflow/services/payment_gateway.py
import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, Optional
import aiohttp
from ..errors import GatewayError
from ..models.payment import GatewayIntent
from ..utils.formatters import from_minor_units, to_minor_units
from ..utils.security import verify_payment_signature, verify_signature

class PaymentGateway(ABC):
    """External payment provider"""

    @abstractmethod
    async def create_intent(self, amount: Decimal, currency: str, receipt: str,
                            notes: Optional[Dict[str, str]] = None) -> GatewayIntent:
        ...

    @abstractmethod
    def callback_is_authentic(self, external_order_id: str, external_payment_id: str,
                              signature: str) -> bool:
        ...

    @abstractmethod
    def webhook_is_authentic(self, raw_body: bytes, signature: Optional[str]) -> bool:
        ...


class RazorpayGateway(PaymentGateway):
    """Razorpay orders API client"""

    def __init__(self, key_id: str, key_secret: str, webhook_secret: str = "",
                 api_url: str = "https://api.razorpay.com/v1",
                 session: Optional[aiohttp.ClientSession] = None,
                 timeout: float = 15.0):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.api_url = api_url.rstrip("/")
        self.session = session
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self.logger = logging.getLogger(__name__)

    async def create_intent(self, amount: Decimal, currency: str, receipt: str,
                            notes: Optional[Dict[str, str]] = None) -> GatewayIntent:
        """Create a gateway order for `amount` (in major units)"""
        payload: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        data = await self._post("/orders", payload)

        if "id" not in data:
            raise GatewayError("Gateway response is missing the order id")

        return GatewayIntent(
            intent_id=data["id"],
            client_token=self.key_id,
            amount=from_minor_units(data.get("amount", payload["amount"])),
            currency=data.get("currency", currency),
        )

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        auth = aiohttp.BasicAuth(self.key_id, self.key_secret)
        url = f"{self.api_url}{path}"
        try:
            if self.session is not None:
                return await self._send(self.session, url, payload, auth)
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                return await self._send(session, url, payload, auth)
        except aiohttp.ClientError as e:
            self.logger.error(f"Payment gateway request to {path} failed: {e}")
            raise GatewayError(f"Payment gateway unreachable: {e}") from e

    async def _send(self, session: aiohttp.ClientSession, url: str,
                    payload: Dict[str, Any], auth: aiohttp.BasicAuth) -> Dict[str, Any]:
        async with session.post(url, json=payload, auth=auth) as response:
            if response.status != 200:
                body = await response.text()
                self.logger.error(f"Payment gateway returned {response.status}: {body}")
                raise GatewayError(
                    f"Payment gateway error: {response.status}", status=response.status
                )
            return await response.json()

    def callback_is_authentic(self, external_order_id: str, external_payment_id: str,
                              signature: str) -> bool:
        return verify_payment_signature(
            self.key_secret, external_order_id, external_payment_id, signature
        )

    def webhook_is_authentic(self, raw_body: bytes, signature: Optional[str]) -> bool:
        return verify_signature(self.webhook_secret, raw_body, signature)
