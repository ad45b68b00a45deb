"""
HubSpot Integration Module
Source adapter: reads contacts, companies, invoices and line items modified
since a checkpoint, plus invoice associations. Uses requests only.
"""

import logging
import time
import requests
from typing import Any, Callable, Dict, List, Optional
from datetime import datetime

from errors import (
    AuthenticationError,
    PermanentExternalError,
    RateLimitError,
    TransientExternalError,
)
from models import EntityType

logger = logging.getLogger(__name__)

OBJECT_TYPES = {
    EntityType.CONTACT: "contacts",
    EntityType.COMPANY: "companies",
    EntityType.INVOICE: "invoices",
    EntityType.LINE_ITEM: "line_items",
}

# Contacts expose their modification stamp under a different name
MODIFIED_PROPERTY = {
    EntityType.CONTACT: "lastmodifieddate",
    EntityType.COMPANY: "hs_lastmodifieddate",
    EntityType.INVOICE: "hs_lastmodifieddate",
    EntityType.LINE_ITEM: "hs_lastmodifieddate",
}

PROPERTIES = {
    EntityType.CONTACT: ["email", "firstname", "lastname", "phone", "city", "country",
                         "createdate", "lastmodifieddate"],
    EntityType.COMPANY: ["name", "domain", "city", "state", "zip", "country",
                         "createdate", "hs_lastmodifieddate"],
    EntityType.INVOICE: ["hs_invoice_number", "hs_invoice_description", "hs_invoice_status",
                         "hs_subtotal", "hs_invoice_amount", "hs_invoice_currency",
                         "hs_invoice_due_date", "createdate", "hs_lastmodifieddate"],
    EntityType.LINE_ITEM: ["name", "quantity", "price", "amount", "hs_line_item_currency_code",
                           "hs_tax_rate", "hs_tax_amount", "hs_tax_label",
                           "createdate", "hs_lastmodifieddate"],
}


def to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


class HubSpotClient:
    """HubSpot CRM read client using direct requests"""

    def __init__(self, token_provider: Callable[[], str], base_url: str = "https://api.hubapi.com",
                 timeout: float = 30, max_retries: int = 5, page_size: int = 100):
        """
        Args:
            token_provider: returns a valid private-app or OAuth access token
            timeout: per-request timeout in seconds
        """
        self.token_provider = token_provider
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.page_size = page_size
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    def _request_with_retry(self, method: str, path: str, **kwargs) -> requests.Response:
        """Make request with exponential backoff on 429, 5xx and network errors"""
        backoff_factor = 1.5

        for attempt in range(self.max_retries):
            headers = {"Authorization": f"Bearer {self.token_provider()}"}
            try:
                response = self.session.request(method, f"{self.base_url}{path}",
                                                headers=headers, timeout=self.timeout, **kwargs)
            except requests.exceptions.RequestException as e:
                logger.error(f"HubSpot request failed (attempt {attempt + 1}): {e}")
                if attempt == self.max_retries - 1:
                    raise TransientExternalError(f"HubSpot request failed: {e}") from e
                time.sleep(min(backoff_factor ** attempt, 15))
                continue

            if response.status_code == 429:
                retry_after = response.headers.get('Retry-After')
                wait_time = int(retry_after) if retry_after else min(backoff_factor ** attempt, 30)
                logger.warning(f"Rate limited. Waiting {wait_time:.1f} seconds "
                               f"(attempt {attempt + 1}/{self.max_retries})...")
                if attempt == self.max_retries - 1:
                    raise RateLimitError("HubSpot rate limit exceeded", retry_after=wait_time,
                                         status_code=429)
                time.sleep(wait_time)
                continue

            if response.status_code in (401, 403):
                raise AuthenticationError("HubSpot rejected credentials",
                                          status_code=response.status_code)

            if response.status_code >= 500:
                logger.error(f"HubSpot error {response.status_code}: {response.text}")
                if attempt == self.max_retries - 1:
                    raise TransientExternalError("HubSpot server error",
                                                 status_code=response.status_code)
                time.sleep(min(backoff_factor ** attempt, 15))
                continue

            if response.status_code >= 400:
                # 4xx won't change on retry
                logger.error(f"HubSpot error {response.status_code}: {response.text}")
                raise PermanentExternalError(f"HubSpot request rejected: {response.text[:200]}",
                                             status_code=response.status_code)

            return response

        raise TransientExternalError("Max retries exceeded")

    def _search(self, entity_type: EntityType, filter_groups: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        object_type = OBJECT_TYPES[entity_type]
        results: List[Dict[str, Any]] = []
        after: Optional[str] = None
        while True:
            body = {
                "filterGroups": filter_groups,
                "properties": PROPERTIES[entity_type],
                "sorts": [MODIFIED_PROPERTY[entity_type]],
                "limit": self.page_size,
            }
            if after is not None:
                body["after"] = after
            data = self._request_with_retry("POST", f"/crm/v3/objects/{object_type}/search",
                                            json=body).json()
            results.extend(data.get("results", []))
            after = data.get("paging", {}).get("next", {}).get("after")
            if not after:
                return results

    def _paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        after: Optional[str] = None
        while True:
            page_params = dict(params or {}, limit=self.page_size)
            if after is not None:
                page_params["after"] = after
            data = self._request_with_retry("GET", path, params=page_params).json()
            results.extend(data.get("results", []))
            after = data.get("paging", {}).get("next", {}).get("after")
            if not after:
                return results

    # ==================== SOURCE ADAPTER ====================

    def get_modified_since(self, entity_type: EntityType, since: datetime) -> List[Dict[str, Any]]:
        """Objects whose modification stamp is >= since"""
        filters = [{"filters": [{
            "propertyName": MODIFIED_PROPERTY[entity_type],
            "operator": "GTE",
            "value": to_epoch_ms(since),
        }]}]
        objects = self._search(entity_type, filters)
        logger.info(f"Retrieved {len(objects)} {entity_type.value} objects modified since {since.isoformat()}")
        return objects

    def get_all(self, entity_type: EntityType) -> List[Dict[str, Any]]:
        """Full listing, used for deletion inference"""
        return self._paginate(f"/crm/v3/objects/{OBJECT_TYPES[entity_type]}",
                              {"properties": MODIFIED_PROPERTY[entity_type]})

    def get_line_items_for_invoice(self, invoice_id: str) -> List[Dict[str, Any]]:
        assoc = self._paginate(f"/crm/v4/objects/invoices/{invoice_id}/associations/line_items")
        items = []
        for a in assoc:
            item_id = str(a.get("toObjectId"))
            response = self._request_with_retry(
                "GET", f"/crm/v3/objects/line_items/{item_id}",
                params={"properties": ",".join(PROPERTIES[EntityType.LINE_ITEM])})
            items.append(response.json())
        return items

    def get_invoice_associations(self, invoice_id: str) -> Dict[str, List[Dict[str, Any]]]:
        """Associated contact and company ids; the first of each is treated as primary"""
        out = {}
        for target in ("contacts", "companies"):
            assoc = self._paginate(f"/crm/v4/objects/invoices/{invoice_id}/associations/{target}")
            out[target] = [
                {"id": str(a.get("toObjectId")), "primary": index == 0}
                for index, a in enumerate(assoc)
            ]
        return out

    def test_connection(self) -> bool:
        try:
            self._request_with_retry("GET", "/crm/v3/objects/contacts", params={"limit": 1})
            return True
        except Exception as e:
            logger.error(f"HubSpot connection test failed: {e}")
            return False
