from typing import Any

import httpx

from budgetsync.models.actions import ExpenseAction, IncomeAction

ENDPOINTS = {
    "expense": "/api/expense",
    "income": "/api/income",
}
DASHBOARD_ENDPOINT = "/api/dashboard"


def build_http_client(
    base_url: str,
    token: str | None = None,
    timeout: float = 10.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    headers = {"Accept": "application/json"}
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout, transport=transport)


class BudgetApiClient:
    """Thin client for the hosted budget API write and read endpoints."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @staticmethod
    def endpoint_for(action: ExpenseAction | IncomeAction) -> str:
        try:
            return ENDPOINTS[action.type]
        except KeyError:
            raise ValueError(f"Unknown action type: {action.type}")

    async def send_action(self, action: ExpenseAction | IncomeAction) -> httpx.Response:
        """POST one action's payload. Network errors propagate as ``httpx.HTTPError``."""
        return await self._client.post(self.endpoint_for(action), json=action.payload.to_wire())

    async def fetch_dashboard(self) -> dict[str, Any]:
        response = await self._client.get(DASHBOARD_ENDPOINT, headers={"Cache-Control": "no-store"})
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            return {"expenses": [], "incomes": []}
        return {
            "expenses": list(data.get("expenses") or []),
            "incomes": list(data.get("incomes") or []),
        }

    async def aclose(self) -> None:
        await self._client.aclose()
