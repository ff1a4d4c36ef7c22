"""
Record Store API client for thread and message persistence.
Handles HTTP client setup, the select/update RPC calls, retries and
response parsing.
Low-level record store client
"""

import asyncio
from typing import Any

import httpx

from leadinbox.config import settings
from leadinbox.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class RecordStoreError(Exception):
    """Custom exception for record store errors."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message)
        self.error_code = error_code
        self.status_code = status_code
        self.response_data = response_data or {}


class RecordStoreClient:
    """
    Client for the record store select/update RPC surface.

    Every call is bounded by an httpx timeout and retried with exponential
    backoff on transient failures. Callers get parsed payloads or a
    RecordStoreError; they never see raw httpx exceptions.
    """

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_factor: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        config = settings.get_record_store_config()
        self.base_url = (base_url or config["base_url"]).rstrip("/")
        self.timeout = timeout if timeout is not None else config["timeout"]
        self.max_retries = max(1, max_retries if max_retries is not None else config["max_retries"])
        self.backoff_factor = backoff_factor if backoff_factor is not None else config["backoff_factor"]
        self._client = self._create_client(transport)

    def _create_client(self, transport: httpx.AsyncBaseTransport | None) -> httpx.AsyncClient:
        """Create async HTTP client for the record store."""
        timeout = httpx.Timeout(self.timeout)
        limits = httpx.Limits(max_keepalive_connections=20, max_connections=50)
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            limits=limits,
            headers=settings.record_store_headers(),
            transport=transport,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    async def _post_with_retry(self, path: str, payload: dict, operation: str) -> httpx.Response:
        """Execute a POST with retry and backoff."""
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._client.post(path, json=payload)
                if response.status_code in RETRY_STATUS_CODES and attempt < self.max_retries:
                    backoff = self.backoff_factor * (2 ** (attempt - 1))
                    logger.debug(
                        "Record store retrying request",
                        operation=operation,
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= self.max_retries:
                    logger.error("Record store request failed", operation=operation, error=str(e))
                    raise RecordStoreError(
                        f"Record store unreachable: {e}", error_code="network_error"
                    ) from e
                backoff = self.backoff_factor * (2 ** (attempt - 1))
                logger.debug(
                    "Record store request error, retrying",
                    operation=operation,
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise RecordStoreError("Record store retry loop exhausted", error_code="retries_exhausted")

    def _handle_response(self, response: httpx.Response, operation: str) -> Any:
        """
        Handle and validate a record store response.

        Args:
            response: HTTP response from the record store
            operation: Operation name for logging

        Returns:
            Parsed JSON payload

        Raises:
            RecordStoreError: If the response is an error or not JSON
        """
        logger.debug(
            f"Record store {operation} response",
            status_code=response.status_code,
            response_size=len(response.content),
        )

        if response.is_success:
            try:
                return response.json() if response.content else {}
            except ValueError as e:
                logger.error(f"Failed to parse record store {operation} response", error=str(e))
                raise RecordStoreError(f"Invalid response format: {e}", error_code="malformed_payload") from e

        try:
            error_data = response.json() if response.content else {}
        except ValueError:
            error_data = {}

        error_message = error_data.get("error") if isinstance(error_data, dict) else None
        logger.error(
            f"Record store {operation} failed",
            status_code=response.status_code,
            error_message=error_message,
        )
        raise RecordStoreError(
            error_message or f"Record store error (HTTP {response.status_code})",
            error_code=str(response.status_code),
            status_code=response.status_code,
            response_data=error_data if isinstance(error_data, dict) else {},
        )

    async def select(self, table: str, index: str, key: str, value: str) -> list[dict]:
        """
        Read records by index.

        Args:
            table: Table name (e.g., "Threads")
            index: Index name (e.g., "conversation_id-index")
            key: Key attribute name
            value: Key value

        Returns:
            list[dict]: Matching records

        Raises:
            RecordStoreError: If the call fails or the payload is malformed
        """
        payload = {"table_name": table, "index_name": index, "key_name": key, "key_value": value}
        response = await self._post_with_retry("/db/select", payload, "select")
        data = self._handle_response(response, "select")

        items = data.get("items") if isinstance(data, dict) else data
        if not isinstance(items, list):
            logger.error("Record store select returned non-list payload", table=table, index=index)
            raise RecordStoreError("Select payload is not a list", error_code="malformed_payload")

        return [item for item in items if isinstance(item, dict)]

    async def update(self, table: str, index: str, key: str, value: str, patch: dict[str, Any]) -> bool:
        """
        Patch fields on the record identified by index/key/value.

        Returns:
            bool: The store's success flag

        Raises:
            RecordStoreError: If the call fails or the payload is malformed
        """
        payload = {
            "table_name": table,
            "index_name": index,
            "key_name": key,
            "key_value": value,
            "update_data": patch,
        }
        response = await self._post_with_retry("/db/update", payload, "update")
        data = self._handle_response(response, "update")

        if not isinstance(data, dict):
            raise RecordStoreError("Update payload is not an object", error_code="malformed_payload")

        success = data.get("success")
        if success is None:
            # Some deployments only echo the updated item
            success = "updated_item" in data
        return success is True

    async def health_check(self) -> bool:
        """Cheap reachability probe: any HTTP answer counts as reachable."""
        try:
            await self._client.get("/", timeout=5.0)
            return True
        except httpx.RequestError as e:
            logger.warning("Record store health check failed", error=str(e))
            return False
