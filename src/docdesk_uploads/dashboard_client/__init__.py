"""
Document dashboard API client.

Provides:
- Multipart batch submission with per-file metadata
- Presigned batch upload (intent, storage PUT, confirm)
- Job status lookups (404 surfaces as SessionNotFoundError)
- Server-sent progress event streams
- Connection retries for transient network failures
"""

from .client import (
    DashboardAPIError,
    DashboardClient,
    DashboardConnectionError,
    DashboardError,
    SessionNotFoundError,
    UploadFile,
)

__all__ = [
    "DashboardClient",
    "DashboardError",
    "DashboardAPIError",
    "DashboardConnectionError",
    "SessionNotFoundError",
    "UploadFile",
]
