from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterator, List, Optional

import httpx

from .audit import JsonAuditLogger
from .config import ManagementApiSettings

logger = logging.getLogger(__name__)

PARTNERS_PATH = "/providers/Microsoft.ManagementPartner/partners"
THROTTLED_STATUSES = (429, 503, 504)


class ManagementApiError(RuntimeError):
    def __init__(self, status_code: int, body: str, url: str):
        super().__init__(f"Azure Management API request failed with status {status_code}")
        self.status_code = status_code
        self.body = body
        self.url = url


class ManagementClient:
    """Azure Resource Manager client for tenant listing and partner links.

    Every call carries the bearer token it is given, so one client serves any
    number of tenants.
    """

    def __init__(
        self,
        settings: ManagementApiSettings,
        audit_logger: JsonAuditLogger,
        http_client: Optional[httpx.Client] = None,
    ):
        self.settings = settings
        self.audit = audit_logger
        self.max_retries = settings.max_retries
        self.session = http_client or httpx.Client(timeout=settings.timeout_seconds)

    def close(self) -> None:
        self.session.close()

    def request(
        self,
        method: str,
        url: str,
        token: str,
        raise_for_status: bool = True,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {token}"
        backoff = 1.0

        attempt = 1

        while True:
            response = self.session.request(method, url, headers=headers, **kwargs)
            if response.status_code not in THROTTLED_STATUSES or attempt > self.max_retries:
                break
            retry_after = self._get_retry_after_seconds(response)
            if retry_after is None:
                retry_after = backoff
            self.audit.warning(
                "management_throttled",
                status=response.status_code,
                retry_after=retry_after,
                attempt=attempt,
            )
            time.sleep(retry_after)
            backoff = min(backoff * 2, 30)
            attempt += 1

        if response.status_code >= 400:
            self.audit.warning(
                "management_request_failed",
                method=method,
                status=response.status_code,
                url=url,
                body=response.text,
            )
            if raise_for_status:
                raise ManagementApiError(response.status_code, response.text, url)
            return response

        logger.debug("%s %s -> %s", method, url, response.status_code)
        self.audit.debug("management_request_succeeded", method=method, status=response.status_code, url=url)
        return response

    def _get_retry_after_seconds(self, response: httpx.Response) -> Optional[float]:
        retry_after = response.headers.get("Retry-After")
        if retry_after is None:
            return None
        try:
            return float(retry_after)
        except ValueError:
            return None

    def _url(self, path: str, api_version: str) -> str:
        return f"{self.settings.base_url}{path}?api-version={api_version}"

    def iter_tenant_pages(self, token: str) -> Iterator[List[Dict[str, Any]]]:
        """Yield each page of ``/tenants`` until no ``nextLink`` remains."""
        url: Optional[str] = self._url("/tenants", self.settings.tenants_api_version)
        while url:
            payload = self.request("GET", url, token).json()
            if not isinstance(payload, dict):
                raise ValueError(f"Unexpected /tenants page: {type(payload).__name__}")
            yield payload.get("value") or []
            url = payload.get("nextLink")

    def list_tenants(self, token: str) -> List[Dict[str, Any]]:
        tenants: List[Dict[str, Any]] = []
        for page in self.iter_tenant_pages(token):
            tenants.extend(page)
        return tenants

    def get_partners(self, token: str) -> httpx.Response:
        return self.request(
            "GET", self._url(PARTNERS_PATH, self.settings.partners_api_version), token, raise_for_status=False
        )

    def create_partner(self, token: str, partner_id: str) -> httpx.Response:
        payload = {"properties": {"partnerId": partner_id}}
        return self.request(
            "PUT",
            self._url(f"{PARTNERS_PATH}/{partner_id}", self.settings.partners_api_version),
            token,
            raise_for_status=False,
            json=payload,
        )

    def delete_partner(self, token: str, partner_id: str) -> httpx.Response:
        return self.request(
            "DELETE",
            self._url(f"{PARTNERS_PATH}/{partner_id}", self.settings.partners_api_version),
            token,
            raise_for_status=False,
        )
