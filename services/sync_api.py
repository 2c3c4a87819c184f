"""HTTP client for the ``sync-operation`` endpoint."""
from __future__ import annotations

from typing import Any, Dict, Optional

import httpx

from core.settings import SYNC
from core.sync_targets import SyncResult
from services.sync_queue import QueuedOperation


def build_request(operation: QueuedOperation) -> Dict[str, Any]:
    return {
        "idempotencyKey": operation.idempotency_key,
        "table": operation.table,
        "action": operation.action,
        "payload": operation.payload,
    }


class SyncApiClient:
    """Posts one operation per call.

    Errors are not interpreted here: ``httpx`` transport and status errors and
    JSON decode errors reach the caller untouched.
    """

    def __init__(
        self,
        base_url: str = SYNC.server_url,
        *,
        http_client: Optional[httpx.Client] = None,
        endpoint_path: str = SYNC.endpoint_path,
        timeout: float = SYNC.request_timeout_sec,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.endpoint_path = endpoint_path
        self.timeout = timeout
        self._client = http_client or httpx.Client(timeout=timeout)
        self._owns_client = http_client is None

    @property
    def url(self) -> str:
        return f"{self.base_url}{self.endpoint_path}"

    def execute(self, token: str, request: Dict[str, Any]) -> SyncResult:
        response = self._client.post(
            self.url,
            json=request,
            headers={"Authorization": f"Bearer {token}"},
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise httpx.DecodingError("sync-operation returned a non-object body", request=response.request)
        return SyncResult.from_dict(data)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "SyncApiClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


__all__ = ["SyncApiClient", "build_request"]
