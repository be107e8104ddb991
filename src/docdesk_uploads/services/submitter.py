"""
Batch submission.

Validates files client-side, sends the valid remainder in one request and
folds whatever the backend answered (immediate items, server-side
failures, deferred jobs, or a batch id for push-based progress) into one
BatchSubmissionResult.
"""

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from ..dashboard_client import DashboardError, UploadFile
from ..schemas.jobs import (
    BatchSubmissionResult,
    ImmediateSuccess,
    JobDescriptor,
    LocalFailure,
)

logger = logging.getLogger(__name__)

# (files, per-file metadata, batch options) -> response payload
BatchSender = Callable[
    [list[UploadFile], list[dict[str, Any]], dict[str, Any]],
    Awaitable[Mapping[str, Any]],
]

# (file, metadata) -> rejection reason, or None when the file is acceptable
FileValidator = Callable[[UploadFile, Mapping[str, Any]], Optional[str]]


class SubmissionError(Exception):
    """
    The batch request itself failed.

    Fatal for the batch: no jobs exist and nothing from the attempt is kept.
    """

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def reject_empty_file(upload: UploadFile, metadata: Mapping[str, Any]) -> Optional[str]:
    if upload.size_bytes == 0:
        return "File is empty"
    return None


def validate_files(
    files: Sequence[UploadFile],
    per_file_metadata: Optional[Sequence[Mapping[str, Any]]] = None,
    required_metadata: Sequence[str] = (),
    validators: Sequence[FileValidator] = (),
) -> tuple[list[tuple[int, UploadFile, dict[str, Any]]], list[LocalFailure]]:
    """
    Split files into the ones to submit and local failures.

    Returns:
        (valid, failures) where valid holds (original index, file, metadata)
    """
    metadata = list(per_file_metadata or [])
    valid: list[tuple[int, UploadFile, dict[str, Any]]] = []
    failures: list[LocalFailure] = []

    for index, upload in enumerate(files):
        meta = dict(metadata[index]) if index < len(metadata) and metadata[index] else {}

        reason = None
        for key in required_metadata:
            if not meta.get(key):
                reason = f"Missing required {key.replace('_', ' ')}"
                break
        if reason is None:
            for validator in validators:
                reason = validator(upload, meta)
                if reason:
                    break

        if reason:
            failures.append(LocalFailure(filename=upload.filename, reason=reason, index=index))
        else:
            valid.append((index, upload, meta))

    return valid, failures


def _as_list(value: Any) -> list:
    return list(value) if isinstance(value, (list, tuple)) else []


def normalize_submission(
    payload: Mapping[str, Any],
    local_failures: Sequence[LocalFailure],
    submitted_indexes: Sequence[int],
) -> BatchSubmissionResult:
    """
    Fold a submission response into a BatchSubmissionResult.

    Any of jobs, items and failures may be absent. Server-side failure
    indexes refer to the submitted files and are mapped back to the
    caller's original file positions.
    """
    jobs = tuple(
        JobDescriptor(job_id=str(job["job_id"]), filename=job.get("filename") or "")
        for job in _as_list(payload.get("jobs"))
        if isinstance(job, Mapping) and job.get("job_id") is not None
    )

    items = []
    for item in _as_list(payload.get("items")):
        if not isinstance(item, Mapping):
            continue
        ref = next(
            (item[k] for k in ("document_id", "invoice_id", "statement_id") if item.get(k) is not None),
            None,
        )
        items.append(ImmediateSuccess(filename=item.get("filename") or "", result_ref=ref))

    remote_failures = []
    for failure in _as_list(payload.get("failures")):
        if not isinstance(failure, Mapping):
            continue
        server_index = failure.get("index")
        if isinstance(server_index, int) and 0 <= server_index < len(submitted_indexes):
            index = submitted_indexes[server_index]
        else:
            index = None
        detail = {
            k: failure[k] for k in ("duplicate_of", "extracted", "type") if failure.get(k) is not None
        }
        remote_failures.append(
            LocalFailure(
                filename=failure.get("filename") or failure.get("file") or "",
                reason=failure.get("reason") or "Upload failed",
                index=index,
                origin="remote",
                detail=detail,
            )
        )

    reported_total = payload.get("total_files")
    if not isinstance(reported_total, int) or reported_total < 0:
        reported_total = len(submitted_indexes)
    server_total = max(reported_total, len(jobs) + len(items) + len(remote_failures))

    batch_id = payload.get("batch_id")
    return BatchSubmissionResult(
        jobs=jobs,
        items=tuple(items),
        failures=tuple(local_failures) + tuple(remote_failures),
        total_files=len(local_failures) + server_total,
        batch_id=str(batch_id) if batch_id is not None else None,
    )


class JobSubmitter:
    """
    Sends one batch and normalizes the answer.

    Client-side rejections never block the valid remainder. If the batch
    request fails, SubmissionError is raised and nothing is kept.
    """

    def __init__(
        self,
        send_batch: BatchSender,
        required_metadata: Sequence[str] = (),
        validators: Sequence[FileValidator] = (reject_empty_file,),
    ):
        self.send_batch = send_batch
        self.required_metadata = tuple(required_metadata)
        self.validators = tuple(validators)

    async def submit(
        self,
        files: Sequence[UploadFile],
        per_file_metadata: Optional[Sequence[Mapping[str, Any]]] = None,
        batch_options: Optional[Mapping[str, Any]] = None,
    ) -> BatchSubmissionResult:
        """
        Submit a batch.

        Raises:
            SubmissionError: The batch request failed or returned nothing usable
        """
        if not files:
            raise SubmissionError("Select at least one file")

        valid, local_failures = validate_files(
            files, per_file_metadata, self.required_metadata, self.validators
        )
        if local_failures:
            logger.info(f"Rejected {len(local_failures)} of {len(files)} files before upload")

        if not valid:
            return BatchSubmissionResult(
                failures=tuple(local_failures),
                total_files=len(files),
            )

        try:
            payload = await self.send_batch(
                [upload for _, upload, _ in valid],
                [meta for _, _, meta in valid],
                dict(batch_options or {}),
            )
        except DashboardError as e:
            logger.error(f"Batch upload failed: {e}")
            raise SubmissionError(f"Upload failed: {e}") from e

        if not payload:
            logger.error("Batch upload returned an empty response")
            raise SubmissionError("Upload failed: empty response from server")

        try:
            result = normalize_submission(
                payload, local_failures, [index for index, _, _ in valid]
            )
        except ValueError as e:
            logger.error(f"Batch upload returned an inconsistent response: {e}")
            raise SubmissionError(f"Upload failed: {e}") from e

        logger.info(
            f"Submitted batch of {len(valid)} files: {len(result.jobs)} jobs, "
            f"{len(result.items)} immediate, {len(result.failures)} failed"
            + (f", batch {result.batch_id}" if result.batch_id else "")
        )
        return result
