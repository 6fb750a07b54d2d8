"""
Result Persistence Client

The session saves, lists and deletes reviewed results through this interface.
LocalPersistenceClient talks to an in-process ResultStore; HttpPersistenceClient
talks to the /api/save-result endpoints of a running dashboard.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Optional

import httpx

from .errors import ConflictError, TransportError
from .result_store import ResultStore

logger = logging.getLogger(__name__)

SAVE_RESULT_PATH = "/api/save-result"


class ResultPersistenceClient(ABC):
    """CRUD contract for saved results."""

    @abstractmethod
    async def list_results(self) -> Dict[str, Any]:
        """Return {"results": [...], "lastUpdated": str}."""

    @abstractmethod
    async def save(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Save a record. Returns {"savedResult", "totalResults"}; raises ConflictError."""

    @abstractmethod
    async def delete_all(self) -> int:
        """Remove every saved result."""

    @abstractmethod
    async def delete_ids(self, ids: Iterable[str]) -> int:
        """Remove the listed results."""

    async def count(self) -> int:
        data = await self.list_results()
        return len(data.get('results') or [])


class LocalPersistenceClient(ResultPersistenceClient):
    """Runs store calls in the default executor so file I/O never blocks the loop."""

    def __init__(self, store: ResultStore):
        self.store = store

    async def _run(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func, *args)

    async def list_results(self) -> Dict[str, Any]:
        return await self._run(self.store.list_results)

    async def save(self, record: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(self.store.save, record)

    async def delete_all(self) -> int:
        return await self._run(self.store.delete_all)

    async def delete_ids(self, ids: Iterable[str]) -> int:
        return await self._run(self.store.delete_ids, list(ids))


class HttpPersistenceClient(ResultPersistenceClient):
    """Client for a remote persistence API."""

    def __init__(self, base_url: str, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = httpx.AsyncClient(base_url=base_url.rstrip('/'), timeout=timeout,
                                        transport=transport)

    async def aclose(self):
        await self.client.aclose()

    async def _request(self, method: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, SAVE_RESULT_PATH, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"❌ Persistence API {method} failed: {e}")
            raise TransportError(f"Persistence API unreachable: {e}")

    @staticmethod
    def _json(response: httpx.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError:
            return {}

    async def list_results(self) -> Dict[str, Any]:
        response = await self._request("GET")
        if not response.is_success:
            raise TransportError("Failed to fetch saved results", status_code=response.status_code)
        return self._json(response)

    async def save(self, record: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._request("POST", json=record)
        body = self._json(response)

        if response.status_code == 409 and body.get('error') == 'duplicate':
            raise ConflictError(record.get('imageName', ''), body.get('message'))
        if not response.is_success:
            raise TransportError(body.get('error') or 'Failed to save', status_code=response.status_code)

        return body

    async def delete_all(self) -> int:
        response = await self._request("DELETE", json={'deleteAll': True})
        if not response.is_success:
            raise TransportError("Failed to clear results", status_code=response.status_code)
        return int(self._json(response).get('deleted', 0))

    async def delete_ids(self, ids: Iterable[str]) -> int:
        response = await self._request("DELETE", json={'ids': list(ids)})
        if not response.is_success:
            raise TransportError("Failed to delete results", status_code=response.status_code)
        return int(self._json(response).get('deleted', 0))
