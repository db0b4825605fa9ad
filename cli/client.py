import requests
from typing import Optional, List, Dict, Any
from datetime import datetime
from decimal import Decimal
import math
import pytz
from .config import SERVER_URL, get_token, get_timezone


class AuctionClient:
    """Client for the auction server's HTTP API."""

    def __init__(self, server_url: Optional[str] = None, token: Optional[str] = None):
        self.server_url = (server_url or SERVER_URL).rstrip("/")
        self.token: Optional[str] = token or get_token()
        self.timezone = pytz.timezone(get_timezone())

    def _get_headers(self) -> Dict[str, str]:
        """Get headers with authentication."""
        if not self.token:
            raise ValueError("Not authenticated. Run 'auction auth' first.")
        return {"Authorization": f"Bearer {self.token}"}

    def _check(self, response: requests.Response) -> Any:
        """Raise with the server's error message if the call failed, else return the JSON body."""
        if not response.ok:
            try:
                error_data = response.json()
            except ValueError:
                response.raise_for_status()
            # Auction errors carry "message", framework errors carry "detail"
            error_msg = error_data.get("message") or error_data.get("detail") or response.text
            raise requests.exceptions.HTTPError(
                f"{response.status_code} {response.reason}: {error_msg}",
                response=response,
            )
        return response.json()

    def authenticate(self, username: str, password: str) -> str:
        """Authenticate and return token."""
        response = requests.post(
            f"{self.server_url}/auth",
            json={"username": username, "password": password}
        )
        data = self._check(response)
        self.token = data["token"]
        return self.token

    def register(self, username: str, email: Optional[str] = None) -> Dict[str, Any]:
        response = requests.post(
            f"{self.server_url}/accounts",
            json={"username": username, "email": email},
        )
        return self._check(response)

    def get_balance(self) -> Dict[str, Any]:
        response = requests.get(f"{self.server_url}/balance", headers=self._get_headers())
        return self._check(response)

    def deposit(self, amount: Decimal, method: str = "DEMO_CARD") -> Dict[str, Any]:
        response = requests.post(
            f"{self.server_url}/balance/deposit",
            json={"amount": str(amount), "method": method},
            headers=self._get_headers(),
        )
        return self._check(response)

    def get_transactions(self, page: int = 1, limit: int = 20, type: Optional[str] = None) -> Dict[str, Any]:
        params = {"page": page, "limit": limit}
        if type:
            params["type"] = type
        response = requests.get(
            f"{self.server_url}/balance/transactions",
            params=params,
            headers=self._get_headers(),
        )
        return self._check(response)

    def place_bid(
        self,
        auction_id: int,
        price: Decimal,
        bid_type: str = "Manual",
        max_bid: Optional[Decimal] = None,
    ) -> Dict[str, Any]:
        payload = {"price": str(price), "bid_type": bid_type}
        if max_bid is not None:
            payload["max_bid"] = str(max_bid)
        response = requests.post(
            f"{self.server_url}/auctions/{auction_id}/bids",
            json=payload,
            headers=self._get_headers(),
        )
        return self._check(response)

    def get_auction(self, auction_id: int) -> Dict[str, Any]:
        response = requests.get(f"{self.server_url}/auctions/{auction_id}", headers=self._get_headers())
        return self._check(response)

    def list_bids(self, auction_id: int) -> List[Dict[str, Any]]:
        response = requests.get(f"{self.server_url}/auctions/{auction_id}/bids", headers=self._get_headers())
        return self._check(response)

    def update_proxy(self, auction_id: int, max_bid: Decimal) -> Dict[str, Any]:
        response = requests.put(
            f"{self.server_url}/auctions/{auction_id}/proxy",
            json={"max_bid": str(max_bid)},
            headers=self._get_headers(),
        )
        return self._check(response)

    def cancel_proxy(self, auction_id: int) -> Dict[str, Any]:
        response = requests.delete(
            f"{self.server_url}/auctions/{auction_id}/proxy",
            headers=self._get_headers(),
        )
        return self._check(response)

    def end_auction(self, auction_id: int, reason: str = "admin_ended") -> Dict[str, Any]:
        response = requests.post(
            f"{self.server_url}/auctions/{auction_id}/end",
            json={"reason": reason},
            headers=self._get_headers(),
        )
        return self._check(response)

    def process_expired(self) -> Dict[str, Any]:
        response = requests.post(
            f"{self.server_url}/auctions/process-expired",
            headers=self._get_headers(),
        )
        return self._check(response)

    def get_settlement(self, auction_id: int) -> Dict[str, Any]:
        response = requests.get(
            f"{self.server_url}/auctions/{auction_id}/settlement",
            headers=self._get_headers(),
        )
        return self._check(response)

    def run_integrity(self) -> Dict[str, Any]:
        response = requests.post(f"{self.server_url}/admin/integrity", headers=self._get_headers())
        return self._check(response)

    def _parse_utc(self, utc_time_str: str) -> datetime:
        dt_utc = datetime.fromisoformat(utc_time_str.replace("Z", "+00:00"))
        if dt_utc.tzinfo is None:
            dt_utc = pytz.UTC.localize(dt_utc)
        return dt_utc

    def to_local_time(self, utc_time_str: str) -> str:
        """Convert UTC time string to local timezone string."""
        return self._parse_utc(utc_time_str).astimezone(self.timezone).strftime("%Y-%m-%d %H:%M:%S")

    def to_local_time_no_year(self, utc_time_str: str) -> str:
        return self._parse_utc(utc_time_str).astimezone(self.timezone).strftime("%m-%d %H:%M")

    def time_until_auction_end(self, auction_end_time_utc: Optional[str], now: Optional[datetime] = None) -> str:
        """Format time remaining until the auction ends.

        Returns:
            - "-" for auctions without an end date (Live auctions)
            - Minutes (e.g., "45m") if less than 1 hour remaining
            - Hours (e.g., "5h") if 1-36 hours remaining
            - Days (e.g., "3d") if 36 hours or more remaining
            - "Ended" if the end date has passed
        """
        if not auction_end_time_utc:
            return "-"
        dt_end = self._parse_utc(auction_end_time_utc)
        now_utc = now or datetime.now(pytz.UTC)

        total_seconds = (dt_end - now_utc).total_seconds()
        if total_seconds <= 0:
            return "Ended"

        total_hours = total_seconds / 3600
        if total_hours < 1:
            return f"{int(total_seconds / 60)}m"
        elif total_hours < 36:
            return f"{int(total_hours)}h"
        else:
            return f"{math.ceil(total_hours / 24)}d"
