import httpx
import logging
from typing import List, Optional
import asyncio

from checkout_service.application.interfaces import CartService, NotificationsService
from checkout_service.domain.models import CartItem
from checkout_service.domain.exceptions import CartServiceError

logger = logging.getLogger(__name__)


class HTTPCartClient(CartService):
    def __init__(self, base_url: str, api_token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._transport = transport

    async def get_cart(self, user_id: str) -> List[CartItem]:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.get(
                    f"{self._base_url}/api/users/{user_id}/cart",
                    headers={"X-API-Key": self._api_token},
                    timeout=10.0
                )

                if response.status_code == 200:
                    data = response.json()
                    return [CartItem(**item) for item in data.get("items", [])]
                elif response.status_code == 404:
                    return []
                else:
                    raise CartServiceError(f"Cart service error: {response.status_code}")

        except httpx.RequestError as e:
            logger.error(f"Cart service connection error: {e}")
            raise CartServiceError(f"Cart service unavailable: {str(e)}")

    async def clear_cart(self, user_id: str) -> bool:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.delete(
                    f"{self._base_url}/api/users/{user_id}/cart",
                    headers={"X-API-Key": self._api_token},
                    timeout=10.0
                )
                if response.status_code in (200, 204, 404):
                    return True
                logger.warning(f"Cart clear for user {user_id} returned {response.status_code}")
                return False

        except httpx.RequestError as e:
            logger.error(f"Cart service connection error: {e}")
            return False


class HTTPNotificationsClient(NotificationsService):
    def __init__(
        self, base_url: str, api_token: str, max_retries: int = 10, retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_token = api_token
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._transport = transport

    async def send(self, message: str, reference_id: str, idempotency_key: str, user_id: str) -> bool:
        """Sends a notification, retrying until it is accepted or retries run out"""
        for attempt in range(self._max_retries):
            try:
                async with httpx.AsyncClient(transport=self._transport) as client:
                    response = await client.post(
                        f"{self._base_url}/api/notifications",
                        json={
                            "user_id": user_id,
                            "message": message,
                            "reference_id": reference_id,
                            "idempotency_key": idempotency_key
                        },
                        headers={"X-API-Key": self._api_token},
                        timeout=10.0
                    )

                    # 409 means this idempotency key was already delivered
                    if response.status_code in (200, 201, 409):
                        logger.info(f"Notification {idempotency_key} sent (attempt {attempt + 1})")
                        return True
                    else:
                        logger.warning(f"Notification service returned {response.status_code}")

            except httpx.RequestError as e:
                logger.warning(f"Notification send failed (attempt {attempt + 1}/{self._max_retries}): {e}")

            if attempt < self._max_retries - 1:
                await asyncio.sleep(self._retry_delay)

        logger.error(f"Could not send notification {idempotency_key} after {self._max_retries} attempts")
        return False
