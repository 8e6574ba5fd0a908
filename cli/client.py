import requests
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
import math
import pytz
from .config import get_server_url, get_token, get_timezone


class AuctionClient:
    """Client for communicating with the auction server."""

    def __init__(self):
        self.server_url = get_server_url()
        self.token: Optional[str] = get_token()
        try:
            self.timezone = pytz.timezone(get_timezone())
        except pytz.UnknownTimeZoneError:
            self.timezone = pytz.UTC

    def _get_headers(self) -> Dict[str, str]:
        """Get headers with authentication."""
        if not self.token:
            raise ValueError("Not authenticated. Run 'auction auth' first.")
        return {"Authorization": f"Bearer {self.token}"}

    def _request(self, method: str, path: str, **kwargs) -> Any:
        """Send an authenticated request; errors surface as HTTPError carrying the server's error kind."""
        response = requests.request(
            method,
            f"{self.server_url}{path}",
            headers=self._get_headers(),
            **kwargs
        )
        if not response.ok:
            try:
                error_data = response.json()
            except ValueError:
                response.raise_for_status()
            kind = error_data.get("error", response.reason)
            detail = error_data.get("detail", response.text)
            raise requests.exceptions.HTTPError(f"{response.status_code} {kind}: {detail}", response=response)
        return response.json()

    def authenticate(self, username: str, password: str) -> str:
        """Authenticate and return token."""
        response = requests.post(
            f"{self.server_url}/auth",
            json={"username": username, "password": password}
        )
        response.raise_for_status()
        data = response.json()
        self.token = data["token"]
        return self.token

    def create_auction(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/auctions", json=payload)

    def publish(self, auction_id: int) -> Dict[str, Any]:
        return self._request("POST", f"/auctions/{auction_id}/publish")

    def cancel(self, auction_id: int) -> Dict[str, Any]:
        return self._request("POST", f"/auctions/{auction_id}/cancel")

    def list_auctions(self, status: Optional[str] = None, seller_id: Optional[str] = None) -> List[Dict[str, Any]]:
        params = {"status": status, "seller_id": seller_id}
        return self._request("GET", "/auctions", params={k: v for k, v in params.items() if v is not None})

    def update_auction(self, auction_id: int, changes: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("PATCH", f"/auctions/{auction_id}", json=changes)

    def get_auction(self, auction_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/auctions/{auction_id}")

    def get_bids(self, auction_id: int) -> List[Dict[str, Any]]:
        return self._request("GET", f"/auctions/{auction_id}/bids")

    def place_bid(self, auction_id: int, amount: Decimal, max_auto_bid: Optional[Decimal] = None) -> Dict[str, Any]:
        payload = {"amount": str(amount)}
        if max_auto_bid is not None:
            payload["max_auto_bid"] = str(max_auto_bid)
        return self._request("POST", f"/auctions/{auction_id}/bids", json=payload)

    def buy_now(self, auction_id: int, expected_price: Decimal) -> Dict[str, Any]:
        return self._request("POST", f"/auctions/{auction_id}/buy-now", json={"expected_price": str(expected_price)})

    def watch(self, auction_id: int) -> Dict[str, Any]:
        return self._request("POST", f"/auctions/{auction_id}/watch")

    def unwatch(self, auction_id: int) -> Dict[str, Any]:
        return self._request("DELETE", f"/auctions/{auction_id}/watch")

    def get_wallet(self) -> Dict[str, Any]:
        return self._request("GET", "/wallet")

    def deposit(self, amount: Decimal) -> Dict[str, Any]:
        return self._request("POST", "/wallet/deposit", json={"amount": str(amount)})

    def to_local_time(self, utc_time_str: str) -> str:
        """Convert UTC time string to local timezone string."""
        dt_utc = datetime.fromisoformat(utc_time_str.replace("Z", "+00:00"))
        if dt_utc.tzinfo is None:
            dt_utc = pytz.UTC.localize(dt_utc)

        dt_local = dt_utc.astimezone(self.timezone)
        return dt_local.strftime("%Y-%m-%d %H:%M:%S")

    def to_utc_iso(self, local_time_str: str) -> str:
        """Interpret 'YYYY-MM-DD HH:MM' in the local timezone and return UTC ISO-8601."""
        dt_local = self.timezone.localize(datetime.strptime(local_time_str, "%Y-%m-%d %H:%M"))
        return dt_local.astimezone(pytz.UTC).isoformat()

    def time_until(self, end_time_utc: str) -> str:
        """Format time remaining: "45m" under an hour, "5h" under 36 hours, else days; "Ended" once past."""
        dt_end = datetime.fromisoformat(end_time_utc.replace("Z", "+00:00"))
        if dt_end.tzinfo is None:
            dt_end = pytz.UTC.localize(dt_end)

        total_seconds = (dt_end - datetime.now(pytz.UTC)).total_seconds()
        if total_seconds <= 0:
            return "Ended"

        total_hours = total_seconds / 3600
        if total_hours < 1:
            return f"{int(total_seconds / 60)}m"
        elif total_hours < 36:
            return f"{int(total_hours)}h"
        return f"{math.ceil(total_hours / 24)}d"
