"""Province -> regency -> district -> village lookup against the address API."""
from __future__ import annotations

import logging
from typing import Optional

import httpx

from .settings import settings

logger = logging.getLogger(__name__)


class AddressLookupError(Exception):
    pass


class AddressClient:
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 transport: Optional[httpx.BaseTransport] = None):
        self.base_url = (base_url or settings.KR_ADDRESS_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.KR_ADDRESS_API_KEY
        self.transport = transport

    def _fetch(self, path: str, what: str) -> list[dict]:
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}
        try:
            with httpx.Client(timeout=settings.KR_HTTP_TIMEOUT_SECONDS, transport=self.transport) as client:
                resp = client.get(f"{self.base_url}/{path}", headers=headers)
                resp.raise_for_status()
                body = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Address lookup %s failed: %s", path, e)
            raise AddressLookupError(f"Failed to fetch {what}") from e
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise AddressLookupError(f"Invalid response format from {what} API")
        try:
            return [{"id": item["id"], "name": item["value"]} for item in data]
        except (KeyError, TypeError) as e:
            raise AddressLookupError(f"Invalid response format from {what} API") from e

    def provinces(self) -> list[dict]:
        return self._fetch("province", "provinces")

    def regencies(self, province_id: int) -> list[dict]:
        return [dict(r, province_id=province_id) for r in self._fetch(f"city/{province_id}", "regencies")]

    def districts(self, regency_id: int) -> list[dict]:
        return [dict(r, regency_id=regency_id) for r in self._fetch(f"sub_district/{regency_id}", "districts")]

    def villages(self, district_id: int) -> list[dict]:
        return [dict(r, district_id=district_id) for r in self._fetch(f"village/{district_id}", "villages")]
