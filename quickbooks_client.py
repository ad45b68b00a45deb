"""
QuickBooks Online Integration Module
Target adapter: writes customers, items and invoices through the QBO v3
REST API. Uses requests only. HTTP failures are classified into the bridge
error taxonomy so the transfer executor can decide between retry and give-up.
"""

import logging
import requests
from typing import Any, Callable, Dict, List, Optional

from errors import (
    AuthenticationError,
    CounterpartyNotFoundError,
    PermanentExternalError,
    RateLimitError,
    TransientExternalError,
)
from models import ActionType, EntityType, TransferQueueEntry

logger = logging.getLogger(__name__)

PRODUCTION_URL = "https://quickbooks.api.intuit.com"
SANDBOX_URL = "https://sandbox-quickbooks.api.intuit.com"
MINOR_VERSION = "65"


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _full_name(contact: Dict[str, Any]) -> str:
    name = f"{contact.get('first_name') or ''} {contact.get('last_name') or ''}".strip()
    return name or contact.get("email") or f"HubSpot contact {contact.get('hubspot_id')}"


class QuickBooksClient:
    """QuickBooks Online API client using direct requests"""

    def __init__(self, token_provider: Callable[[], str], realm_id: str,
                 sandbox: bool = False, timeout: float = 30,
                 income_account_id: str = "1", base_url: Optional[str] = None):
        self.token_provider = token_provider
        self.realm_id = realm_id
        self.timeout = timeout
        self.income_account_id = income_account_id
        self.base_url = (base_url or (SANDBOX_URL if sandbox else PRODUCTION_URL)).rstrip("/")
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })

    def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}/v3/company/{self.realm_id}{path}"
        params = dict(kwargs.pop("params", None) or {}, minorversion=MINOR_VERSION)
        headers = {"Authorization": f"Bearer {self.token_provider()}"}
        try:
            response = self.session.request(method, url, params=params, headers=headers,
                                            timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout as e:
            raise TransientExternalError(f"QuickBooks request timed out: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransientExternalError(f"QuickBooks request failed: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError("QuickBooks rejected credentials", status_code=status)
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError("QuickBooks rate limit exceeded",
                                 retry_after=float(retry_after) if retry_after else None,
                                 status_code=status)
        if status >= 500:
            raise TransientExternalError(f"QuickBooks server error: {response.text[:200]}",
                                         status_code=status)
        if status >= 400:
            logger.error(f"QuickBooks error {status}: {response.text}")
            raise PermanentExternalError(f"QuickBooks rejected request: {response.text[:200]}",
                                         status_code=status)
        return response.json()

    def _query(self, statement: str) -> Dict[str, Any]:
        data = self._request("GET", "/query", params={"query": statement})
        return data.get("QueryResponse", {})

    # ==================== CUSTOMERS ====================

    def find_customer(self, display_name: str) -> Optional[Dict[str, Any]]:
        result = self._query(f"SELECT * FROM Customer WHERE DisplayName = '{_quote(display_name)}'")
        customers = result.get("Customer", [])
        return customers[0] if customers else None

    def create_customer(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/customer", json=body)["Customer"]

    def find_or_create_customer(self, display_name: str, body: Dict[str, Any]) -> Dict[str, Any]:
        existing = self.find_customer(display_name)
        if existing:
            logger.info(f"Customer already exists in QuickBooks: {existing['Id']}")
            return existing
        return self.create_customer(dict(body, DisplayName=display_name))

    def deactivate_customer(self, display_name: str) -> Optional[str]:
        existing = self.find_customer(display_name)
        if not existing:
            return None
        self._request("POST", "/customer", json={
            "Id": existing["Id"], "SyncToken": existing["SyncToken"],
            "sparse": True, "Active": False,
        })
        return existing["Id"]

    # ==================== ITEMS ====================

    def find_item(self, name: str) -> Optional[Dict[str, Any]]:
        items = self._query(f"SELECT * FROM Item WHERE Name = '{_quote(name)}'").get("Item", [])
        return items[0] if items else None

    def create_item(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/item", json=body)["Item"]

    # ==================== INVOICES ====================

    def find_invoice(self, doc_number: str) -> Optional[Dict[str, Any]]:
        invoices = self._query(
            f"SELECT * FROM Invoice WHERE DocNumber = '{_quote(doc_number)}'").get("Invoice", [])
        return invoices[0] if invoices else None

    def create_invoice(self, body: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/invoice", json=body)["Invoice"]

    def update_invoice(self, existing: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
        body = dict(body, Id=existing["Id"], SyncToken=existing["SyncToken"], sparse=True)
        return self._request("POST", "/invoice", json=body)["Invoice"]

    def delete_invoice(self, existing: Dict[str, Any]) -> None:
        self._request("POST", "/invoice", params={"operation": "delete"},
                      json={"Id": existing["Id"], "SyncToken": existing["SyncToken"]})

    # ==================== TARGET ADAPTER ====================

    def write_entity(self, entry: TransferQueueEntry) -> Dict[str, Any]:
        """Apply one approved queue entry; returns {"external_id": ..., "details": ...}"""
        data = entry.entity_data or {}
        handler = {
            EntityType.CONTACT: self._write_contact,
            EntityType.COMPANY: self._write_company,
            EntityType.INVOICE: self._write_invoice,
            EntityType.LINE_ITEM: self._write_line_item,
        }[entry.entity_type]
        return handler(entry.action_type, data)

    def _contact_customer(self, contact: Dict[str, Any]) -> Dict[str, Any]:
        body = {"BillAddr": {"City": contact.get("city"), "Country": contact.get("country")}}
        if contact.get("email"):
            body["PrimaryEmailAddr"] = {"Address": contact["email"]}
        if contact.get("phone"):
            body["PrimaryPhone"] = {"FreeFormNumber": contact["phone"]}
        return self.find_or_create_customer(_full_name(contact), body)

    def _company_customer(self, company: Dict[str, Any]) -> Dict[str, Any]:
        name = company.get("name") or company.get("domain") or f"HubSpot company {company.get('hubspot_id')}"
        body = {
            "CompanyName": name,
            "BillAddr": {
                "City": company.get("city"),
                "CountrySubDivisionCode": company.get("state"),
                "PostalCode": company.get("zip"),
                "Country": company.get("country"),
            },
        }
        return self.find_or_create_customer(name, body)

    def _write_contact(self, action: ActionType, data: Dict[str, Any]) -> Dict[str, Any]:
        if action == ActionType.DELETE:
            qb_id = self.deactivate_customer(_full_name(data))
            return {"external_id": qb_id or "absent", "details": {"deactivated": qb_id is not None}}
        customer = self._contact_customer(data)
        return {"external_id": customer["Id"], "details": {"customer": customer.get("DisplayName")}}

    def _write_company(self, action: ActionType, data: Dict[str, Any]) -> Dict[str, Any]:
        if action == ActionType.DELETE:
            qb_id = self.deactivate_customer(data.get("name") or data.get("domain") or "")
            return {"external_id": qb_id or "absent", "details": {"deactivated": qb_id is not None}}
        customer = self._company_customer(data)
        return {"external_id": customer["Id"], "details": {"customer": customer.get("DisplayName")}}

    def _invoice_customer_id(self, associations: List[Dict[str, Any]]) -> Optional[str]:
        if not associations:
            return None
        primary = next((a for a in associations
                        if a.get("is_primary_contact") or a.get("is_primary_company")), None)
        association = primary or associations[0]
        if association.get("contact"):
            return self._contact_customer(association["contact"])["Id"]
        if association.get("company"):
            return self._company_customer(association["company"])["Id"]
        return None

    def _write_invoice(self, action: ActionType, data: Dict[str, Any]) -> Dict[str, Any]:
        doc_number = data.get("invoice_number") or data.get("hubspot_id")
        existing = self.find_invoice(doc_number) if doc_number else None

        if action == ActionType.DELETE:
            if existing:
                self.delete_invoice(existing)
            return {"external_id": existing["Id"] if existing else "absent",
                    "details": {"deleted": existing is not None}}

        customer_id = self._invoice_customer_id(data.get("associations") or [])
        if not customer_id:
            raise CounterpartyNotFoundError("No customer found or created for invoice",
                                            context={"invoice": data.get("hubspot_id")})

        lines = []
        total = 0.0
        for item in data.get("line_items") or []:
            amount = float(item.get("amount") or 0)
            total += amount
            lines.append({
                "Amount": amount,
                "DetailType": "SalesItemLineDetail",
                "Description": item.get("product_name") or "Service/Product",
                "SalesItemLineDetail": {
                    "Qty": item.get("quantity") or 1,
                    "UnitPrice": float(item.get("unit_price") or amount),
                },
            })
        if not lines:
            total = float(data.get("amount") or 0)
            lines.append({
                "Amount": total,
                "DetailType": "SalesItemLineDetail",
                "Description": data.get("title") or "Service",
                "SalesItemLineDetail": {"Qty": 1, "UnitPrice": total},
            })

        body = {
            "CustomerRef": {"value": customer_id},
            "Line": lines,
            "DocNumber": doc_number,
            "PrivateNote": f"Imported from HubSpot (ID: {data.get('hubspot_id')})",
        }
        if data.get("currency"):
            body["CurrencyRef"] = {"value": data["currency"]}
        if data.get("due_date"):
            body["DueDate"] = str(data["due_date"])[:10]

        if existing:
            invoice = self.update_invoice(existing, body)
        else:
            invoice = self.create_invoice(body)
        return {"external_id": invoice["Id"], "details": {"total": total, "updated": existing is not None}}

    def _write_line_item(self, action: ActionType, data: Dict[str, Any]) -> Dict[str, Any]:
        name = data.get("product_name") or f"Item {data.get('hubspot_id')}"
        existing = self.find_item(name)
        if action == ActionType.DELETE:
            if existing:
                self._request("POST", "/item", json={
                    "Id": existing["Id"], "SyncToken": existing["SyncToken"],
                    "sparse": True, "Active": False,
                })
            return {"external_id": existing["Id"] if existing else "absent",
                    "details": {"deactivated": existing is not None}}
        if existing:
            return {"external_id": existing["Id"], "details": {"existing": True}}
        item = self.create_item({
            "Name": name,
            "Type": "Service",
            "UnitPrice": float(data.get("unit_price") or data.get("amount") or 0),
            "Description": data.get("product_name") or "Service/Product from HubSpot",
            "IncomeAccountRef": {"value": self.income_account_id},
        })
        return {"external_id": item["Id"], "details": {"existing": False}}

    def test_connection(self) -> bool:
        try:
            self._request("GET", f"/companyinfo/{self.realm_id}")
            return True
        except Exception as e:
            logger.error(f"QuickBooks connection test failed: {e}")
            return False
