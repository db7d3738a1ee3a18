from __future__ import annotations

import time
from typing import Any, Callable

import httpx


class TaskBoardClientError(Exception):
    def __init__(self, status_code: int, detail: Any) -> None:
        super().__init__(f"task board returned {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class TaskBoardClient:
    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 35.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.headers = {"X-API-Key": api_key} if api_key else {}
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def next_task(
        self,
        *,
        skills: list[str] | None = None,
        requires_human: bool | None = None,
        timeout: float = 25.0,
    ) -> dict[str, Any] | None:
        params: dict[str, Any] = {"timeout": timeout}
        if skills:
            params["skills"] = ",".join(skills)
        if requires_human is not None:
            params["requires_human"] = "true" if requires_human else "false"
        payload = await self._request("GET", "/tasks/next", params=params)
        if payload.get("retry"):
            return None
        return payload.get("task")

    async def claim(self, task_id: str, *, agent_id: str | None = None) -> dict[str, Any]:
        body = {"agent_id": agent_id} if agent_id else None
        return await self._request("POST", f"/tasks/{task_id}/claim", json=body)

    async def deliver(
        self,
        task_id: str,
        *,
        result: Any = None,
        result_url: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {}
        if result is not None:
            body["result"] = result
        if result_url is not None:
            body["result_url"] = result_url
        return await self._request("POST", f"/tasks/{task_id}/deliver", json=body)

    async def complete(self, task_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/tasks/{task_id}/complete")

    async def reject(self, task_id: str, *, reason: str | None = None) -> dict[str, Any]:
        body = {"reason": reason} if reason else None
        return await self._request("POST", f"/tasks/{task_id}/reject", json=body)

    async def create_task(self, **fields: Any) -> dict[str, Any]:
        return await self._request("POST", "/tasks", json=fields)

    async def wait_for_result(
        self,
        task_id: str,
        *,
        timeout: float = 25.0,
        max_wait_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> dict[str, Any]:
        """Re-issue the result long poll until the task settles or max_wait_seconds passes.

        The last response is returned either way; callers check ``retry``.
        """
        started_at = clock()
        while True:
            payload = await self._request("GET", f"/tasks/{task_id}/result", params={"timeout": timeout})
            if not payload.get("retry"):
                return payload
            if max_wait_seconds is not None and clock() - started_at >= max_wait_seconds:
                return payload

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> dict[str, Any]:
        if self._client is not None:
            response = await self._send(self._client, method, path, params=params, json=json)
        else:
            async with httpx.AsyncClient(timeout=self.timeout_seconds) as temp_client:
                response = await self._send(temp_client, method, path, params=params, json=json)

        if response.is_error:
            raise TaskBoardClientError(response.status_code, _error_detail(response))
        return response.json()

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None,
        json: Any,
    ) -> httpx.Response:
        return await client.request(
            method,
            f"{self.base_url}{path}",
            params=params,
            json=json,
            headers=self.headers,
        )


def _error_detail(response: httpx.Response) -> Any:
    try:
        payload = response.json()
    except ValueError:
        return response.text
    if isinstance(payload, dict) and "detail" in payload:
        return payload["detail"]
    return payload
