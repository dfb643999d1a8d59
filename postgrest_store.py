"""
River Intel - PostgREST Store
The same select/insert/update/upsert/rpc contract as SQLiteStore, spoken to a
Supabase/PostgREST endpoint over httpx.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Union

import httpx

from config import Settings
from core.exceptions import ConfigurationError, StoreError
from database import NOT_NULL, Filters, OrderBy, SQLiteStore

logger = logging.getLogger("postgrest_store")


def _filter_params(filters: Filters) -> Dict[str, str]:
    params: Dict[str, str] = {}
    for column, value in (filters or {}).items():
        if value is None:
            params[column] = "is.null"
        elif value is NOT_NULL:
            params[column] = "not.is.null"
        elif isinstance(value, bool):
            params[column] = f"eq.{str(value).lower()}"
        elif isinstance(value, (list, tuple, set, frozenset)):
            params[column] = "in.(" + ",".join(str(v) for v in value) + ")"
        else:
            params[column] = f"eq.{value}"
    return params


def _order_param(order_by: OrderBy) -> Optional[str]:
    if not order_by:
        return None
    items = [order_by] if isinstance(order_by, str) else list(order_by)
    return ",".join(
        f"{item[1:]}.desc" if item.startswith("-") else f"{item}.asc" for item in items
    )


class PostgrestStore:
    def __init__(
        self,
        base_url: str,
        service_key: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
    ):
        if not base_url or not service_key:
            raise ConfigurationError("Missing SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY")
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._headers = {
            "apikey": service_key,
            "Authorization": f"Bearer {service_key}",
            "Content-Type": "application/json",
        }

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> "PostgrestStore":
        return cls(
            settings.supabase_url or "",
            settings.supabase_service_role_key or "",
            client=client,
            timeout=settings.http_timeout_seconds,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        what: str,
        params: Optional[Dict[str, str]] = None,
        body: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self._client.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                headers=headers,
                content=json.dumps(body, default=str) if body is not None else None,
            )
        except httpx.RequestError as e:
            raise StoreError(f"{what} failed", f"network error: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("message") or response.text
            except (ValueError, AttributeError):
                detail = response.text
            raise StoreError(f"{what} failed", f"HTTP {response.status_code}: {detail}")
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise StoreError(f"{what} failed", "invalid JSON response") from e

    async def select(
        self,
        table: str,
        filters: Filters = None,
        order_by: OrderBy = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {"select": "*", **_filter_params(filters)}
        order = _order_param(order_by)
        if order:
            params["order"] = order
        if limit is not None:
            params["limit"] = str(int(limit))
        return await self._request("GET", f"/rest/v1/{table}", f"select {table}", params=params) or []

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        data = await self._request(
            "POST", f"/rest/v1/{table}", f"insert {table}", body=row, prefer="return=representation"
        )
        if isinstance(data, list) and data:
            return data[0]
        return dict(row)

    async def update(self, table: str, values: Dict[str, Any], filters: Filters) -> int:
        if not filters:
            raise StoreError(f"update {table} refused", "filters are required")
        data = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            f"update {table}",
            params=_filter_params(filters),
            body=values,
            prefer="return=representation",
        )
        return len(data) if isinstance(data, list) else 0

    async def upsert(
        self,
        table: str,
        rows: Union[Dict[str, Any], Sequence[Dict[str, Any]]],
        on_conflict: Union[str, Sequence[str]],
    ) -> int:
        if isinstance(rows, dict):
            rows = [rows]
        if not rows:
            return 0
        conflict = on_conflict if isinstance(on_conflict, str) else ",".join(on_conflict)
        # PostgREST bulk upsert needs uniform keys; send rows one column-set at a time
        groups: Dict[tuple, List[Dict[str, Any]]] = {}
        for row in rows:
            groups.setdefault(tuple(sorted(row)), []).append(row)
        for batch in groups.values():
            await self._request(
                "POST",
                f"/rest/v1/{table}",
                f"upsert {table}",
                params={"on_conflict": conflict},
                body=batch,
                prefer="resolution=merge-duplicates,return=minimal",
            )
        return len(rows)

    async def rpc(self, name: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._request("POST", f"/rest/v1/rpc/{name}", f"rpc {name}", body=params or {})


def open_store(settings: Settings):
    """Build the configured store backend."""
    if settings.store_backend == "postgrest":
        return PostgrestStore.from_settings(settings)
    store = SQLiteStore(settings.database_path, stale_policy=settings.stale_value_policy)
    store.init_schema()
    return store
