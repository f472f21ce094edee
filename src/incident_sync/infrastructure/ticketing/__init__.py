"""
Ticketing Client Infrastructure
================================

ServiceNow Table API client used for reading incidents and pushing
resolutions back.

Expected failures come back as structured results (``FetchResult``,
``UpdateResult``) so callers can apply their own retry policy; only
programming and configuration errors raise.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from incident_sync.config import Settings
from incident_sync.core import ConfigurationException
from incident_sync.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)

SERVICENOW_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"

INCIDENT_FIELDS = [
    "sys_id", "number", "short_description", "description",
    "category", "subcategory", "state", "priority", "impact", "urgency",
    "opened_at", "closed_at", "resolved_at", "sys_created_on", "sys_updated_on",
    "caller_id", "assigned_to", "assignment_group", "company", "location",
    "sys_tags",
]


def format_servicenow_datetime(value: datetime) -> str:
    """Render a datetime the way encoded queries expect it (UTC, no offset)."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc)
    return value.strftime(SERVICENOW_DATETIME_FORMAT)


def build_updated_since_query(since: datetime) -> str:
    """Encoded query for records created or updated at or after ``since``."""
    ts = format_servicenow_datetime(since)
    return f"sys_created_on>={ts}^ORsys_updated_on>={ts}^ORDERBYsys_updated_on"


def is_transient_status(status_code: Optional[int]) -> bool:
    """Network errors (no status), 429 and 5xx are worth retrying."""
    if status_code is None:
        return True
    return status_code == 429 or status_code >= 500


@dataclass
class FetchResult:
    """One page read from the Table API."""
    success: bool
    records: List[Dict[str, Any]] = field(default_factory=list)
    status_code: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 1


@dataclass
class UpdateResult:
    """Outcome of a single PATCH against an incident."""
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    data: Optional[Dict[str, Any]] = None

    @property
    def transient(self) -> bool:
        return not self.success and is_transient_status(self.status_code)


class ITicketingClient(ABC):
    """
    Interface for external ticketing system operations.

    Only the operations the sync core needs are defined.
    """

    @abstractmethod
    async def fetch_page(self, query: str, limit: int, offset: int) -> FetchResult:
        """Fetch one page of records matching an encoded query."""

    @abstractmethod
    async def fetch_updated_since(self, since: datetime, limit: int, offset: int) -> FetchResult:
        """Fetch one page of records changed at or after ``since``, oldest change first."""

    @abstractmethod
    async def update_incident(self, sys_id: str, payload: Dict[str, Any]) -> UpdateResult:
        """Apply a single update to an incident."""

    @abstractmethod
    async def check_health(self) -> Dict[str, Any]:
        """Lightweight reachability/auth probe."""

    async def close(self) -> None:
        """Release network resources."""


class ServiceNowClient(ITicketingClient):
    """
    ServiceNow Table API client with retry logic for reads.

    Handles:
    - Basic auth and JSON headers
    - Exponential backoff retry for transient read failures
    - Timeout handling

    Writes are attempted exactly once per call; the resolution push state
    machine decides whether and when to try again.
    """

    def __init__(
        self,
        instance_url: str,
        username: Optional[str],
        password: Optional[str],
        table: str = "incident",
        timeout_seconds: float = 30.0,
        max_retries: int = 3,
        retry_delay_seconds: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not instance_url:
            raise ConfigurationException("ServiceNow instance URL not configured")
        if not username or not password:
            raise ConfigurationException("ServiceNow credentials not configured")

        self._base_url = instance_url.rstrip("/")
        self._auth = httpx.BasicAuth(username, password)
        self._table = table
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._transport = transport
        self._sleep = sleep
        self._http_client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "ServiceNowClient":
        return cls(
            instance_url=settings.servicenow_instance_url,
            username=settings.servicenow_username,
            password=settings.servicenow_password,
            table=settings.servicenow_table,
            timeout_seconds=settings.servicenow_timeout_seconds,
            max_retries=settings.servicenow_max_retries,
            retry_delay_seconds=settings.servicenow_retry_delay_seconds,
            **kwargs,
        )

    @property
    def table_path(self) -> str:
        return f"/api/now/table/{self._table}"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                base_url=self._base_url,
                auth=self._auth,
                timeout=self._timeout,
                headers={"Accept": "application/json", "Content-Type": "application/json"},
                transport=self._transport,
            )
        return self._http_client

    async def fetch_page(self, query: str, limit: int, offset: int) -> FetchResult:
        """
        Fetch one page of incidents.

        Args:
            query: Encoded ``sysparm_query`` (may be empty)
            limit: Page size
            offset: Zero-based record offset

        Returns:
            FetchResult with the raw records (``display_value=all`` shape)
        """
        params = {
            "sysparm_limit": limit,
            "sysparm_offset": offset,
            "sysparm_fields": ",".join(INCIDENT_FIELDS),
            "sysparm_display_value": "all",
            "sysparm_exclude_reference_link": "true",
        }
        if query:
            params["sysparm_query"] = query

        last_error: Optional[str] = None
        last_status: Optional[int] = None
        attempts = self._max_retries + 1

        for attempt in range(attempts):
            try:
                client = await self._get_client()
                response = await client.get(self.table_path, params=params)
                last_status = response.status_code

                if response.status_code == 200:
                    records = response.json().get("result", [])
                    return FetchResult(
                        success=True,
                        records=records,
                        status_code=200,
                        attempts=attempt + 1
                    )

                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                if not is_transient_status(response.status_code):
                    logger.error(
                        "ServiceNow fetch rejected",
                        extra={"status_code": response.status_code, "offset": offset}
                    )
                    return FetchResult(
                        success=False,
                        status_code=response.status_code,
                        error=last_error,
                        attempts=attempt + 1
                    )

            except httpx.HTTPError as e:
                last_status = None
                last_error = f"{type(e).__name__}: {e}"
            except ValueError as e:
                # Non-JSON body on a 200
                return FetchResult(success=False, status_code=last_status, error=f"Invalid response body: {e}")

            logger.warning(
                "ServiceNow fetch failed",
                extra={"error": last_error, "attempt": attempt + 1, "offset": offset}
            )
            if attempt < attempts - 1:
                await self._sleep(self._retry_delay * (2 ** attempt))

        return FetchResult(success=False, status_code=last_status, error=last_error, attempts=attempts)

    async def fetch_updated_since(self, since: datetime, limit: int, offset: int) -> FetchResult:
        return await self.fetch_page(build_updated_since_query(since), limit, offset)

    async def update_incident(self, sys_id: str, payload: Dict[str, Any]) -> UpdateResult:
        """
        PATCH a single incident.

        Args:
            sys_id: ServiceNow record sys_id
            payload: Fields to update (e.g. state, close_code, close_notes)

        Returns:
            UpdateResult; ``transient`` tells whether a retry may help
        """
        try:
            client = await self._get_client()
            with log_latency(logger, "servicenow_update", sys_id=sys_id):
                response = await client.patch(f"{self.table_path}/{sys_id}", json=payload)
        except httpx.HTTPError as e:
            logger.warning(
                "ServiceNow update failed",
                extra={"sys_id": sys_id, "error": f"{type(e).__name__}: {e}"}
            )
            return UpdateResult(success=False, error=f"{type(e).__name__}: {e}")

        if 200 <= response.status_code < 300:
            try:
                data = response.json().get("result")
            except ValueError:
                data = None
            logger.info("ServiceNow incident updated", extra={"sys_id": sys_id})
            return UpdateResult(success=True, status_code=response.status_code, data=data)

        error = f"HTTP {response.status_code}: {response.text[:200]}"
        logger.warning(
            "ServiceNow update rejected",
            extra={"sys_id": sys_id, "status_code": response.status_code}
        )
        return UpdateResult(success=False, status_code=response.status_code, error=error)

    async def check_health(self) -> Dict[str, Any]:
        start = time.perf_counter()
        try:
            client = await self._get_client()
            response = await client.get(self.table_path, params={"sysparm_limit": 1, "sysparm_fields": "sys_id"})
        except httpx.HTTPError as e:
            return {"healthy": False, "error": f"{type(e).__name__}: {e}"}

        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        healthy = response.status_code == 200
        result: Dict[str, Any] = {
            "healthy": healthy,
            "status_code": response.status_code,
            "latency_ms": latency_ms,
        }
        if not healthy:
            result["error"] = f"HTTP {response.status_code}"
        return result

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


__all__ = [
    "FetchResult",
    "UpdateResult",
    "ITicketingClient",
    "ServiceNowClient",
    "INCIDENT_FIELDS",
    "build_updated_since_query",
    "format_servicenow_datetime",
    "is_transient_status",
]
