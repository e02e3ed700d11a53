"""Access to the managed backend through the Supabase client.

The console reads table rows, calls remote procedures and invokes edge
functions. :class:`BackendClient` wraps a ``supabase.Client`` so that library
errors (PostgREST ``APIError``, edge function errors and transport failures)
reach callers as a single :class:`BackendError`.
"""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import httpx
from supabase import Client, FunctionsError, PostgrestAPIError, create_client
from supabase.lib.client_options import SyncClientOptions

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Raised when a backend request fails or returns an unusable body."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.details = details

    @classmethod
    def from_api_error(cls, exc: PostgrestAPIError) -> "BackendError":
        return cls(
            exc.message or "Backend request failed",
            code=exc.code,
            details=exc.details or exc.hint,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "status": self.status,
            "code": self.code,
            "details": self.details,
        }


class MutationError(BackendError):
    """Raised when a console mutation is rejected or fails to apply."""


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Re-raise Supabase and transport failures as :class:`BackendError`."""

    try:
        yield
    except PostgrestAPIError as exc:
        raise BackendError.from_api_error(exc) from exc
    except FunctionsError as exc:
        raise BackendError(
            getattr(exc, "message", None) or str(exc),
            status=getattr(exc, "status", None),
            code=getattr(exc, "name", None),
        ) from exc
    except httpx.HTTPError as exc:
        raise BackendError(f"Backend unreachable during {action}: {exc}") from exc


@dataclass(frozen=True)
class BackendConfig:
    url: str
    service_key: str
    timeout: float = 10.0

    @classmethod
    def from_env(cls) -> "BackendConfig":
        url = os.getenv("QUEST_OPS_BACKEND_URL", "").strip()
        if not url:
            raise RuntimeError("QUEST_OPS_BACKEND_URL is not configured")
        key = os.getenv("QUEST_OPS_SERVICE_KEY", "").strip()
        if not key:
            raise RuntimeError("QUEST_OPS_SERVICE_KEY is not configured")
        timeout = float(os.getenv("QUEST_OPS_BACKEND_TIMEOUT", "10") or 10)
        return cls(url=url.rstrip("/"), service_key=key, timeout=timeout)


class TableQuery:
    """One table request built on a Supabase request builder."""

    def __init__(self, builder: Any, table: str) -> None:
        self._builder = builder
        self._table = table
        self._action = "select"
        self._filtered = False

    @property
    def table(self) -> str:
        return self._table

    def select(self, columns: str = "*") -> "TableQuery":
        # Embedded joins are written over several lines for readability.
        self._builder = self._builder.select("".join(columns.split()))
        return self

    def insert(self, rows: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> "TableQuery":
        self._action = "insert"
        self._builder = self._builder.insert(rows if isinstance(rows, list) else dict(rows))
        return self

    def update(self, values: Mapping[str, Any]) -> "TableQuery":
        self._action = "update"
        self._builder = self._builder.update(dict(values))
        return self

    def delete(self) -> "TableQuery":
        self._action = "delete"
        self._builder = self._builder.delete()
        return self

    def _filter(self, method: str, column: str, value: Any) -> "TableQuery":
        self._builder = getattr(self._builder, method)(column, value)
        self._filtered = True
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        return self._filter("eq", column, value)

    def neq(self, column: str, value: Any) -> "TableQuery":
        return self._filter("neq", column, value)

    def gt(self, column: str, value: Any) -> "TableQuery":
        return self._filter("gt", column, value)

    def gte(self, column: str, value: Any) -> "TableQuery":
        return self._filter("gte", column, value)

    def lt(self, column: str, value: Any) -> "TableQuery":
        return self._filter("lt", column, value)

    def lte(self, column: str, value: Any) -> "TableQuery":
        return self._filter("lte", column, value)

    def is_(self, column: str, value: Any) -> "TableQuery":
        return self._filter("is_", column, "null" if value is None else value)

    def in_(self, column: str, values: Sequence[Any]) -> "TableQuery":
        return self._filter("in_", column, list(values))

    def not_in(self, column: str, values: Sequence[Any]) -> "TableQuery":
        self._builder = self._builder.not_.in_(column, list(values))
        self._filtered = True
        return self

    def order(self, column: str, *, desc: bool = False) -> "TableQuery":
        self._builder = self._builder.order(column, desc=desc)
        return self

    def limit(self, count: int) -> "TableQuery":
        self._builder = self._builder.limit(int(count))
        return self

    def execute(self) -> List[Dict[str, Any]]:
        """Send the request and return the returned rows."""

        if self._action in {"update", "delete"} and not self._filtered:
            raise ValueError(f"Refusing unfiltered {self._action} on '{self._table}'")
        logger.debug("Backend %s on %s", self._action, self._table)
        with translate_errors(f"{self._action} on {self._table}"):
            response = self._builder.execute()
        data = response.data
        if data is None:
            return []
        if isinstance(data, list):
            return data
        return [data]

    def single(self) -> Optional[Dict[str, Any]]:
        rows = self.execute()
        return rows[0] if rows else None


class BackendClient:
    """Console-facing wrapper around a ``supabase.Client``."""

    def __init__(self, client: Client) -> None:
        self._client = client

    @classmethod
    def from_config(cls, config: BackendConfig) -> "BackendClient":
        options = SyncClientOptions(
            postgrest_client_timeout=config.timeout,
            function_client_timeout=max(1, int(config.timeout)),
        )
        return cls(create_client(config.url, config.service_key, options=options))

    @property
    def client(self) -> Client:
        return self._client

    def table(self, name: str) -> TableQuery:
        return TableQuery(self._client.table(name), name)

    def rpc(self, name: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        """Call a remote procedure and return its result."""

        logger.debug("Backend rpc %s", name)
        with translate_errors(f"rpc {name}"):
            response = self._client.rpc(name, dict(params or {})).execute()
        return response.data

    def invoke(self, function: str, body: Optional[Mapping[str, Any]] = None) -> Any:
        """Invoke an edge function with a JSON body."""

        logger.debug("Backend invoke %s", function)
        with translate_errors(f"invoke {function}"):
            return self._client.functions.invoke(
                function,
                invoke_options={"body": dict(body or {}), "responseType": "json"},
            )


_backend: Optional[BackendClient] = None


def get_backend() -> BackendClient:
    """Return the lazily instantiated backend client."""

    global _backend
    if _backend is None:
        config = BackendConfig.from_env()
        _backend = BackendClient.from_config(config)
        logger.info("Backend client initialised for %s", config.url)
    return _backend


def set_backend(client: Optional[BackendClient]) -> None:
    """Override the global backend client (primarily for testing)."""

    global _backend
    _backend = client


__all__ = [
    "BackendError",
    "MutationError",
    "BackendConfig",
    "BackendClient",
    "TableQuery",
    "translate_errors",
    "get_backend",
    "set_backend",
]
