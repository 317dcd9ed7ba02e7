"""
REST client for the QR Menu API, used by staff tooling such as the
reconciliation worker.

Every response is the ``{success, data, message, error}`` envelope; the
client returns ``data`` and raises ApiError for anything else.
"""
import logging
from typing import Any, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30


class ApiError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None, error: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error = error


class QRMenuClient:
    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def _request(self, method: str, path: str, **kwargs) -> Any:
        headers = kwargs.pop("headers", {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            resp = self.session.request(
                method, f"{self.base_url}{path}", headers=headers, timeout=self.timeout, **kwargs
            )
        except requests.RequestException as e:
            raise ApiError(f"{method} {path} failed: {e}")

        try:
            body = resp.json()
        except ValueError:
            raise ApiError(f"{method} {path} returned a non-JSON response", status_code=resp.status_code)

        if not resp.ok or not body.get("success", False):
            raise ApiError(
                body.get("message") or f"{method} {path} failed",
                status_code=resp.status_code,
                error=body.get("error"),
            )
        return body.get("data")

    # ========== Auth ==========

    def login(self, username: str, password: str) -> Dict:
        data = self._request("POST", "/api/auth/login", json={"username": username, "password": password})
        self.token = data["access_token"]
        return data["user"]

    # ========== Orders ==========

    def create_order(self, order: Dict) -> Dict:
        return self._request("POST", "/api/orders", json=order)

    def list_orders(self, statuses: Optional[List[str]] = None, table_id: Optional[int] = None,
                    include_items: bool = False) -> List[Dict]:
        params = {"include_items": str(include_items).lower()}
        if statuses:
            params["status"] = statuses
        if table_id is not None:
            params["table_id"] = table_id
        return self._request("GET", "/api/orders", params=params)

    def get_order(self, order_id: int) -> Dict:
        return self._request("GET", f"/api/orders/{order_id}")

    def get_order_items(self, order_id: int) -> List[Dict]:
        return self._request("GET", f"/api/orders/{order_id}/items")

    def update_order_status(self, order_id: int, status: str) -> Dict:
        return self._request("PUT", f"/api/orders/{order_id}/status", json={"status": status})

    def update_order_item_status(self, order_id: int, item_id: int, status: str) -> Dict:
        return self._request("PUT", f"/api/orders/{order_id}/items/{item_id}/status", json={"status": status})

    # ========== Tables ==========

    def list_tables(self) -> List[Dict]:
        return self._request("GET", "/api/tables")

    def update_table_status(self, table_id: int, status: str) -> Dict:
        return self._request("PUT", f"/api/tables/{table_id}/status", json={"status": status})

    # ========== Waiter calls ==========

    def call_waiter(self, table_id: int) -> Dict:
        return self._request("POST", "/api/waiter-calls", json={"table_id": table_id})

    def list_waiter_calls(self, status: Optional[str] = None) -> List[Dict]:
        return self._request("GET", "/api/waiter-calls", params={"status": status} if status else None)

    def count_active_waiter_calls(self) -> int:
        return self._request("GET", "/api/waiter-calls/active/count")["count"]

    def update_waiter_call_status(self, call_id: int, status: str) -> Dict:
        return self._request("PUT", f"/api/waiter-calls/{call_id}/status", json={"status": status})

    # ========== Statistics ==========

    def dashboard_statistics(self) -> Dict:
        return self._request("GET", "/api/statistics/dashboard")

    def checkout(self, order: Dict) -> Dict:
        """Place an order the way the cart page does: create it, then flag the table as occupied.

        The second call needs a staff token; without one the server-side
        occupancy update on order creation is all there is.
        """
        created = self.create_order(order)
        if self.token and created.get("table_id") and created.get("order_type") == "table":
            try:
                self.update_table_status(created["table_id"], "occupied")
            except ApiError as e:
                logger.warning(f"Order {created['id']} placed but table status update failed: {e.message}")
        return created
