"""Job handlers and the intelligence service they call into.

The queue core only knows the ``IntelligenceService`` capability: one method
per queue type. ``HttpIntelligenceService`` is the production adapter that
forwards each operation to the intelligence backend over HTTP.
"""

import logging
from typing import Any, Callable, Optional, Protocol

import httpx

from .errors import HandlerFailure
from .job_queue import Job
from .policies import QueueName

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]


class IntelligenceService(Protocol):
    """One async operation per queue type."""

    async def run_research(self, payload: dict, progress: ProgressCallback) -> dict: ...

    async def run_enrichment(self, payload: dict, progress: ProgressCallback) -> dict: ...

    async def run_report(self, payload: dict, progress: ProgressCallback) -> dict: ...

    async def run_signal(self, payload: dict, progress: ProgressCallback) -> dict: ...


class ItemResearcher(Protocol):
    """Single-item operations used by batch research."""

    async def research_item(self, item_id: str) -> dict: ...

    async def lookup_items(self, item_ids: list[str]) -> dict[str, dict]: ...


def build_handlers(service: IntelligenceService) -> dict[QueueName, Callable]:
    """Map every queue to a handler that calls the matching service method."""

    def bind(operation_name: str) -> Callable:
        async def handler(job: Job) -> dict:
            operation = getattr(service, operation_name)
            return await operation(job.payload, job.update_progress)
        handler.__name__ = f"handle_{operation_name}"
        return handler

    return {
        QueueName.RESEARCH: bind("run_research"),
        QueueName.ENRICHMENT: bind("run_enrichment"),
        QueueName.REPORTS: bind("run_report"),
        QueueName.SIGNALS: bind("run_signal"),
    }


class HttpIntelligenceService:
    """Intelligence backend reached over HTTP.

    Every operation is a POST of the job payload; the JSON response body is
    the job result. Transport errors and non-2xx responses become
    ``HandlerFailure`` so the retry policy applies.
    """

    def __init__(
        self,
        base_url: str,
        service_token: str = "",
        timeout: float = 120.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_token = service_token
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout, connect=30.0))
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.service_token:
            headers["Authorization"] = f"Bearer {self.service_token}"
        return headers

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        client = await self.get_client()
        url = f"{self.base_url}{path}"
        try:
            response = await client.request(method, url, headers=self._headers(), **kwargs)
        except httpx.TimeoutException as e:
            raise HandlerFailure(f"{method} {path} timed out: {e}")
        except httpx.HTTPError as e:
            raise HandlerFailure(f"{method} {path} failed: {e}")

        if response.status_code >= 400:
            raise HandlerFailure(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}",
                {"http_status": response.status_code},
            )
        try:
            return response.json()
        except ValueError:
            raise HandlerFailure(f"{method} {path} returned a non-JSON body")

    async def _run(self, path: str, payload: dict, progress: ProgressCallback) -> dict:
        progress(10)
        result = await self._request("POST", path, json=payload)
        progress(100)
        return result

    async def run_research(self, payload: dict, progress: ProgressCallback) -> dict:
        logger.info(f"Researching company {payload.get('company_name')}")
        return await self._run("/research", payload, progress)

    async def run_enrichment(self, payload: dict, progress: ProgressCallback) -> dict:
        logger.info(f"Enriching contact {payload.get('contact_id')}")
        return await self._run("/enrichment", payload, progress)

    async def run_report(self, payload: dict, progress: ProgressCallback) -> dict:
        logger.info(f"Generating {payload.get('report_type')} report for {payload.get('company_id')}")
        return await self._run("/reports", payload, progress)

    async def run_signal(self, payload: dict, progress: ProgressCallback) -> dict:
        logger.info(f"Processing {payload.get('signal_type')} signal {payload.get('signal_id')}")
        return await self._run("/signals", payload, progress)

    async def research_item(self, item_id: str) -> dict:
        return await self._request("POST", f"/profiles/{item_id}")

    async def lookup_items(self, item_ids: list[str]) -> dict[str, dict]:
        """Attributes of the batch items, keyed by id (used for ordering)."""
        data = await self._request("GET", "/connections", params={"ids": ",".join(item_ids)})
        items = data.get("items", []) if isinstance(data, dict) else data
        return {str(item["id"]): item for item in items if isinstance(item, dict) and "id" in item}
