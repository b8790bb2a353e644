import logging

import httpx

from vending_relay.config import Settings
from vending_relay.errors import GatewayError

logger = logging.getLogger(__name__)

HEADERS = {"Content-Type": "application/json"}


def _body(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return response.text


class PaywayGateway:
    """Thin async client for the PayWay create-charge and check-transaction endpoints."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient):
        self.create_url = settings.payway_api_url
        self.check_url = settings.payway_check_url
        self.client = client

    async def _post(self, url: str, payload: dict) -> dict:
        try:
            response = await self.client.post(url, json=payload, headers=HEADERS)
        except httpx.HTTPError as e:
            raise GatewayError(f"POST {url} failed: {e}") from e

        if response.is_error:
            raise GatewayError(
                f"POST {url} returned {response.status_code}", detail=_body(response)
            )
        body = _body(response)
        if not isinstance(body, dict):
            raise GatewayError(f"POST {url} returned a non-JSON body", detail=body)
        return body

    async def create_charge(self, payload: dict) -> dict:
        reply = await self._post(self.create_url, payload)
        if not reply.get("qrString"):
            raise GatewayError("create-charge reply has no qrString", detail=reply)
        return reply

    async def check_transaction(self, payload: dict) -> dict:
        return await self._post(self.check_url, payload)
