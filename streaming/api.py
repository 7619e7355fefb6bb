"""
Async HTTP client for the scan API.

Endpoints (relative to base_url):
- POST /scan/{provider}/stream  start a scan, response is an event stream
- POST /scan/{provider}         start a scan, response is {"scan_id", "status"}
- GET  /scan/{job_id}/status    status snapshot for a running scan

Error bodies come in two shapes and both become ApiError:
    {"error": {"message": "...", "code": "...", "details": ...}}
    {"detail": "..."}
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import httpx

from core.config import ClientSettings
from core.logging_config import get_logger
from core.types import ApiError, ScanConfig, StatusSnapshot, StreamUnavailableError
from .decoder import parse_percent

logger = get_logger(__name__)

EVENT_STREAM = "text/event-stream"

# Status mapping: server -> session
STATUS_MAP = {
    "pending": "running",
    "queued": "running",
    "in_progress": "running",
    "running": "running",
    "completed": "completed",
    "failed": "failed",
    "error": "error",
}


def _error_from_response(response: httpx.Response, fallback: str) -> ApiError:
    """Build an ApiError from an error response body."""
    message = f"{fallback}: HTTP {response.status_code}"
    code = None
    details = None
    try:
        body = response.json()
    except ValueError:
        body = None

    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict):
            message = error.get("message") or message
            code = error.get("code")
            details = error.get("details")
        elif body.get("detail"):
            message = str(body["detail"])

    return ApiError(message, status_code=response.status_code, code=code, details=details)


def parse_status(data: dict[str, Any], job_id: str) -> StatusSnapshot:
    """
    Turn a status response body into a snapshot.

    Raises:
        ValueError: If the body is not a status object
    """
    if not isinstance(data, dict):
        raise ValueError("Status response is not an object")

    raw_status = str(data.get("status", "")).lower()
    status = STATUS_MAP.get(raw_status)
    if status is None:
        logger.warning("unknown_scan_status", job_id=job_id, status=raw_status)
        status = "running"

    raw_percent = data.get("percent", data.get("progress"))
    percent = 0 if raw_percent is None else parse_percent(raw_percent)

    # The snapshot belongs to the job that was polled, whatever id the body echoes
    echoed = data.get("job_id") or data.get("scan_id")
    if echoed is not None and str(echoed) != job_id:
        logger.warning("status_job_id_mismatch", job_id=job_id, echoed_job_id=str(echoed))

    summary = data.get("summary")
    return StatusSnapshot(
        job_id=job_id,
        status=status,
        percent=percent,
        message=data.get("message") or "",
        summary=dict(summary) if isinstance(summary, dict) else None,
    )


class ScanApiClient:
    """
    Async client for the scan endpoints using httpx.

    One instance may serve several sessions; the underlying AsyncClient is
    created lazily and released by close().
    """

    def __init__(
        self,
        settings: ClientSettings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize scan API client.

        Args:
            settings: Client settings (base URL, timeouts, TLS verification)
            transport: Optional httpx transport (httpx.MockTransport in tests
                and in mock mode)
        """
        self.settings = settings or ClientSettings()
        self.base_url = self.settings.base_url.rstrip("/")
        self._transport = transport
        self._session: httpx.AsyncClient | None = None

    async def _get_session(self) -> httpx.AsyncClient:
        """Get or create async HTTP session."""
        if not self._session:
            self._session = httpx.AsyncClient(
                verify=self.settings.verify_ssl,
                timeout=httpx.Timeout(
                    self.settings.request_timeout,
                    connect=self.settings.connect_timeout,
                ),
                transport=self._transport,
                follow_redirects=True,
            )
        return self._session

    @asynccontextmanager
    async def stream_scan(self, config: ScanConfig) -> AsyncIterator[httpx.Response]:
        """
        Open the progress stream for a new scan.

        The response body is left unread; iterate response.aiter_bytes().
        The connection is released when the context exits.

        Raises:
            StreamUnavailableError: Connection failed, the server refused the
                request, or the response is not an event stream
        """
        client = await self._get_session()
        url = f"{self.base_url}/scan/{config.provider}/stream"
        # No read timeout: events may be minutes apart on large accounts
        timeout = httpx.Timeout(
            self.settings.request_timeout,
            connect=self.settings.connect_timeout,
            read=None,
        )

        opened = False
        try:
            async with client.stream(
                "POST",
                url,
                json={"config": config.to_payload()},
                headers={"Accept": EVENT_STREAM, "Cache-Control": "no-cache"},
                timeout=timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise StreamUnavailableError(
                        _error_from_response(response, "Stream request failed").message
                    )

                content_type = response.headers.get("content-type", "")
                if not content_type.startswith(EVENT_STREAM):
                    raise StreamUnavailableError(
                        f"Server does not stream progress (content-type: {content_type or 'none'})"
                    )

                opened = True
                yield response

        except httpx.TransportError as e:
            if opened:
                # Mid-stream read failures belong to the reader
                raise
            raise StreamUnavailableError(f"Stream connection failed: {e!r}") from e

    async def start_scan(self, config: ScanConfig) -> str:
        """
        Start a scan without streaming.

        Returns:
            job_id: Identifier for status polling

        Raises:
            ApiError: If the server rejects the request or is unreachable
        """
        client = await self._get_session()

        try:
            response = await client.post(
                f"{self.base_url}/scan/{config.provider}",
                json={"config": config.to_payload()},
            )
        except httpx.HTTPError as e:
            raise ApiError(f"Scan request failed: {e!r}") from e

        if response.status_code >= 400:
            raise _error_from_response(response, "Scan request failed")

        try:
            data = response.json()
        except ValueError as e:
            raise ApiError("Scan response is not JSON", status_code=response.status_code) from e

        job_id = (data.get("job_id") or data.get("scan_id")) if isinstance(data, dict) else None
        if not job_id:
            raise ApiError("No scan_id in response", status_code=response.status_code)

        logger.info("scan_started", job_id=job_id, provider=config.provider)
        return str(job_id)

    async def get_status(self, job_id: str) -> StatusSnapshot:
        """
        Get scan status and progress.

        Raises:
            ApiError: On HTTP errors, unreachable server, or a malformed body
        """
        client = await self._get_session()

        try:
            response = await client.get(f"{self.base_url}/scan/{job_id}/status")
        except httpx.HTTPError as e:
            raise ApiError(f"Status check failed: {e!r}") from e

        if response.status_code == 404:
            raise ApiError(f"Scan {job_id} not found", status_code=404)
        if response.status_code >= 400:
            raise _error_from_response(response, "Status check failed")

        try:
            return parse_status(response.json(), job_id)
        except ValueError as e:
            raise ApiError(f"Malformed status response: {e}", status_code=response.status_code) from e

    async def close(self) -> None:
        """Cleanup HTTP session."""
        if self._session:
            await self._session.aclose()
            self._session = None

    async def __aenter__(self) -> "ScanApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
