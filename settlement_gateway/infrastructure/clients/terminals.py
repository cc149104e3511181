"""Terminal data HTTP client for fetching per-device revenue"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Protocol

import httpx

from settlement_gateway.config import settings
from settlement_gateway.domain.exceptions import TerminalDataError
from settlement_gateway.domain.payouts import round_money


class RevenueSource(Protocol):
    async def get_machine_revenue(self, machine_id: str, date_from: date, date_to: date) -> Decimal: ...


class TerminalClient:
    """Client for the vending terminal data API"""

    def __init__(
        self,
        base_url: str | None = None,
        token: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url or settings.terminal_api_base
        self.token = token if token is not None else settings.terminal_api_token
        self.timeout = timeout or settings.terminal_timeout_seconds
        self._transport = transport

    async def get_machine_revenue(self, machine_id: str, date_from: date, date_to: date) -> Decimal:
        """
        Sum of sales for one machine over an inclusive date range.

        Raises:
            TerminalDataError: On timeout, HTTP errors, or invalid response
        """
        if not self.token:
            raise TerminalDataError("Terminal API token is not configured")

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            try:
                response = await client.get(
                    f"{self.base_url}/transactions",
                    params={
                        "machine_id": machine_id,
                        "date_from": date_from.isoformat(),
                        "date_to": date_to.isoformat(),
                    },
                    headers={"Authorization": f"Bearer {self.token}", "Accept": "application/json"},
                )
                response.raise_for_status()
                data = response.json()

                items = data.get("items", []) if isinstance(data, dict) else data
                total = sum(
                    (
                        Decimal(str(item["amount"]))
                        for item in items
                        if str(item["machine_id"]) == str(machine_id)
                        and date_from.isoformat() <= str(item["date"])[:10] <= date_to.isoformat()
                    ),
                    Decimal("0"),
                )
                return round_money(total)

            except httpx.TimeoutException as e:
                raise TerminalDataError(f"Terminal API timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise TerminalDataError(f"Terminal API error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise TerminalDataError(f"Terminal API unreachable: {e}") from e
            except (KeyError, ValueError, TypeError, InvalidOperation) as e:
                raise TerminalDataError(f"Invalid transaction data from terminal API: {e}") from e
