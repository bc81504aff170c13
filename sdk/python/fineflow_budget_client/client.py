import httpx
from typing import Any, Awaitable, Callable, Dict, List, Optional


class BudgetGuardClient:
    """Python SDK for the FineFlow budget guard service."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "http://localhost:8000",
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"X-API-Key": self.api_key},
            timeout=self.timeout,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.client.aclose()

    async def close(self):
        await self.client.aclose()

    @staticmethod
    def _path(project_id: str, suffix: str) -> str:
        return f"/v1/projects/{project_id}/budget/{suffix}"

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        response = await self.client.get(path, params=params)
        response.raise_for_status()
        return response.json()

    async def _send(self, method: str, path: str, payload: Dict[str, Any]) -> Any:
        response = await self.client.request(method, path, json=payload)
        response.raise_for_status()
        return response.json()

    async def summary(self, project_id: str, refresh: bool = False) -> Dict[str, Any]:
        """Month-to-date budget status of a project."""
        return await self._get(self._path(project_id, "summary"), {"refresh": str(refresh).lower()})

    async def settings(self, project_id: str) -> Dict[str, Any]:
        return await self._get(self._path(project_id, "settings"))

    async def update_settings(self, project_id: str, **changes: Any) -> Dict[str, Any]:
        """Change budget settings; only the keyword arguments given are sent."""
        payload = {key: (str(value) if key.endswith("_usd") and value is not None else value) for key, value in changes.items()}
        return await self._send("PUT", self._path(project_id, "settings"), payload)

    async def check(
        self,
        project_id: str,
        estimated_cost_usd: Optional[float] = None,
        operation_type: Optional[str] = None,
        operation: Optional[Dict[str, Any]] = None,
        sample_texts: Optional[List[str]] = None,
        refresh: bool = True,
    ) -> Dict[str, Any]:
        """Ask whether an operation may run and with which configuration."""

        payload: Dict[str, Any] = {"refresh": refresh}
        if estimated_cost_usd is not None:
            payload["estimated_cost_usd"] = str(estimated_cost_usd)
        if operation_type is not None:
            payload["operation_type"] = operation_type
        if operation is not None:
            payload["operation"] = operation
        if sample_texts is not None:
            payload["sample_texts"] = sample_texts
        return await self._send("POST", self._path(project_id, "check"), payload)

    async def record_cost(
        self,
        project_id: str,
        operation_type: str,
        cost_usd: float,
        operation_id: Optional[str] = None,
        tokens_used: Optional[int] = None,
        model_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "operation_type": operation_type,
            "cost_usd": str(cost_usd),
            "operation_id": operation_id,
            "tokens_used": tokens_used,
            "model_name": model_name,
            "metadata": metadata or {},
        }
        return await self._send("POST", self._path(project_id, "costs"), payload)

    async def report(self, project_id: str, include_history: bool = True) -> Dict[str, Any]:
        return await self._get(
            self._path(project_id, "report"),
            {"include_history": str(include_history).lower()},
        )

    async def decisions(
        self,
        project_id: str,
        limit: int = 50,
        decision_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"limit": limit}
        if decision_type is not None:
            params["decision_type"] = decision_type
        return await self._get(self._path(project_id, "decisions"), params)

    async def alerts(self, project_id: str) -> List[Dict[str, Any]]:
        """Pending alerts; each one is returned only once."""
        return await self._get(self._path(project_id, "alerts"))

    async def run_guarded(
        self,
        project_id: str,
        on_execute: Callable[[Dict[str, Any]], Awaitable[Any]],
        operation_type: str,
        operation: Optional[Dict[str, Any]] = None,
        estimated_cost_usd: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Check the budget, then run ``on_execute`` with the allowed configuration.

        Returns the decision with an added ``result`` key; ``on_execute`` is not
        called when the operation is blocked.
        """

        decision = await self.check(
            project_id,
            estimated_cost_usd=estimated_cost_usd,
            operation_type=operation_type,
            operation=operation,
        )
        decision["result"] = None
        if decision["allowed"] and decision.get("use_config") is not None:
            decision["result"] = await on_execute(decision["use_config"])
        return decision
