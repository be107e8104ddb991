"""
Dashboard backend API client implementation.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

import httpx

logger = logging.getLogger(__name__)


class DashboardError(Exception):
    """Base exception for dashboard client errors."""
    pass


class DashboardAPIError(DashboardError):
    """API returned an error response."""
    def __init__(self, status_code: int, message: str, response_body: Optional[str] = None):
        self.status_code = status_code
        self.message = message
        self.response_body = response_body
        super().__init__(f"Dashboard API error {status_code}: {message}")


class DashboardConnectionError(DashboardError):
    """Failed to reach the dashboard backend (connect, timeout, transport)."""
    pass


class SessionNotFoundError(DashboardAPIError):
    """The backend does not know the job or batch (expired session)."""
    def __init__(self, message: str = "Upload session not found", response_body: Optional[str] = None):
        super().__init__(404, message, response_body)


@dataclass(frozen=True)
class UploadFile:
    """One file selected for upload."""
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"

    @property
    def size_bytes(self) -> int:
        return len(self.content)


def unwrap_envelope(payload: Any) -> Any:
    """Strip the {success, message, data} envelope some endpoints use."""
    if isinstance(payload, dict) and "data" in payload and (
        "success" in payload or "message" in payload
    ):
        return payload["data"]
    return payload


def _error_message(response: httpx.Response) -> str:
    """Best human-readable error message from an error response."""
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            if body.get(key):
                return str(body[key])
    return response.reason_phrase or f"HTTP {response.status_code}"


class DashboardClient:
    """
    Async client for the document dashboard backend.

    Features:
    - Multipart batch submission with per-file metadata
    - Presigned three-step batch upload (intent, PUT, confirm)
    - Job status lookups
    - Server-sent progress event streams
    - Connection retries for transient network failures
    """

    DEFAULT_TIMEOUT = 30

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: int = DEFAULT_TIMEOUT,
        max_retries: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize dashboard client.

        Args:
            base_url: Dashboard backend URL (e.g., "http://localhost:8000")
            token: Bearer token for authentication
            timeout: Request timeout in seconds
            max_retries: Connection retry attempts for transient failures
            transport: Optional transport override (tests)
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout

        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(float(timeout), connect=10.0),
            transport=transport or httpx.AsyncHTTPTransport(retries=max_retries),
        )

    @classmethod
    def from_config(cls, config, transport: Optional[httpx.AsyncBaseTransport] = None) -> "DashboardClient":
        """Build a client from a DashboardConfig."""
        return cls(
            base_url=config.base_url,
            token=config.token,
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
            transport=transport,
        )

    async def __aenter__(self) -> "DashboardClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_data: Optional[Any] = None,
        data: Optional[dict] = None,
        files: Optional[list] = None,
        not_found_is_session: bool = False,
    ) -> httpx.Response:
        """Make an API request with error handling."""
        try:
            response = await self._client.request(
                method,
                path,
                params=params,
                json=json_data,
                data=data,
                files=files,
            )
        except httpx.TimeoutException as e:
            raise DashboardConnectionError(f"Request to dashboard timed out: {e}")
        except httpx.TransportError as e:
            raise DashboardConnectionError(f"Failed to connect to dashboard at {self.base_url}: {e}")

        if response.status_code == 404 and not_found_is_session:
            raise SessionNotFoundError(_error_message(response), response.text)

        if response.is_error:
            raise DashboardAPIError(
                status_code=response.status_code,
                message=_error_message(response),
                response_body=response.text,
            )

        return response

    async def test_connection(self) -> bool:
        """Test connection to the dashboard API."""
        try:
            await self._request("GET", "/api/v1/health")
            return True
        except DashboardError:
            return False

    async def submit_batch(
        self,
        path: str,
        files: Sequence[UploadFile],
        fields: Optional[dict[str, str]] = None,
        metadata: Optional[Sequence[dict[str, Any]]] = None,
    ) -> dict[str, Any]:
        """
        Submit a whole batch in one multipart request.

        Args:
            path: Submission endpoint
            files: Files to upload (sent under the "files" field)
            fields: Batch-level form fields (remark, options)
            metadata: Per-file metadata, aligned with files

        Returns:
            Response JSON with any {success, data} envelope removed
        """
        form = dict(fields or {})
        if metadata is not None:
            form["metadata"] = json.dumps(list(metadata))

        multipart = [
            ("files", (f.filename, f.content, f.content_type)) for f in files
        ]
        response = await self._request("POST", path, data=form, files=multipart)
        return unwrap_envelope(response.json()) or {}

    async def presigned_batch_upload(
        self,
        intent_path: str,
        confirm_path: str,
        files: Sequence[UploadFile],
    ) -> dict[str, Any]:
        """
        Upload a batch through presigned storage URLs.

        1. POST intent_path with file descriptions -> one presigned URL per file
        2. PUT every file to its URL (concurrently)
        3. POST confirm_path with the document ids -> jobs to poll

        Any failing step fails the whole batch.
        """
        if not files:
            raise ValueError("At least one file is required")

        intent = await self._request(
            "POST",
            intent_path,
            json_data={
                "files": [
                    {
                        "filename": f.filename,
                        "content_type": f.content_type,
                        "size_bytes": f.size_bytes,
                    }
                    for f in files
                ]
            },
        )
        items = (unwrap_envelope(intent.json()) or {}).get("items") or []
        if not isinstance(items, list):
            items = []
        if len(items) != len(files):
            raise DashboardAPIError(
                status_code=intent.status_code,
                message=f"Upload intent returned {len(items)} URLs for {len(files)} files",
            )

        by_index: dict[int, dict[str, Any]] = {}
        for position, item in enumerate(items):
            index = item.get("index", position) if isinstance(item, dict) else None
            if (
                not isinstance(index, int)
                or index in by_index
                or not item.get("upload_url")
                or item.get("document_id") is None
            ):
                raise DashboardAPIError(
                    status_code=intent.status_code,
                    message=f"Upload intent returned a malformed item at position {position}",
                    response_body=intent.text,
                )
            by_index[index] = item
        if set(by_index) != set(range(len(files))):
            raise DashboardAPIError(
                status_code=intent.status_code,
                message=f"Upload intent indexes {sorted(by_index)} do not match {len(files)} files",
                response_body=intent.text,
            )

        await asyncio.gather(
            *(
                self._put_to_storage(by_index[position]["upload_url"], f)
                for position, f in enumerate(files)
            )
        )

        confirm = await self._request(
            "POST",
            confirm_path,
            json_data={"document_ids": [by_index[p]["document_id"] for p in range(len(files))]},
        )
        return unwrap_envelope(confirm.json()) or {}

    async def _put_to_storage(self, upload_url: str, upload: UploadFile) -> None:
        """PUT one file to a presigned storage URL (no dashboard auth header)."""
        request = self._client.build_request(
            "PUT",
            upload_url,
            content=upload.content,
            headers={"Content-Type": upload.content_type},
        )
        # Presigned URLs carry their own signature
        request.headers.pop("Authorization", None)
        try:
            response = await self._client.send(request)
        except httpx.TimeoutException as e:
            raise DashboardConnectionError(f"Storage upload of {upload.filename} timed out: {e}")
        except httpx.TransportError as e:
            raise DashboardConnectionError(f"Storage upload of {upload.filename} failed: {e}")

        if response.is_error:
            raise DashboardAPIError(
                status_code=response.status_code,
                message=f"Storage upload failed for {upload.filename}",
                response_body=response.text,
            )

    async def get_job_status(self, path_template: str, job_id: str) -> dict[str, Any]:
        """
        Get the status payload of one job.

        Raises:
            SessionNotFoundError: The backend does not know the job
        """
        response = await self._request(
            "GET",
            path_template.format(job_id=job_id),
            not_found_is_session=True,
        )
        return unwrap_envelope(response.json()) or {}

    async def stream_events(self, path: str) -> AsyncIterator[dict[str, Any]]:
        """
        Stream server-sent events from path, yielding each decoded payload.

        Blank lines, comments and undecodable payloads are skipped. The
        stream ends when the server closes it.

        Raises:
            SessionNotFoundError: The stream endpoint answered 404
            DashboardConnectionError: The stream could not be opened or broke
        """
        try:
            async with self._client.stream(
                "GET", path, headers={"Accept": "text/event-stream"}
            ) as response:
                if response.status_code == 404:
                    raise SessionNotFoundError(f"Progress stream not found: {path}")
                if response.is_error:
                    raise DashboardAPIError(response.status_code, response.reason_phrase)

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    try:
                        payload = json.loads(line[5:].strip())
                    except json.JSONDecodeError:
                        logger.debug(f"Skipping undecodable event on {path}: {line!r}")
                        continue
                    if isinstance(payload, dict):
                        yield payload
        except httpx.TimeoutException as e:
            raise DashboardConnectionError(f"Progress stream timed out: {e}")
        except httpx.TransportError as e:
            raise DashboardConnectionError(f"Progress stream broke: {e}")
