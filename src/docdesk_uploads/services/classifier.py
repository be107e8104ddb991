"""
Failure classification.

A failure is a Duplicate if and only if the backend payload carries a
populated duplicate_of reference. Everything else is an Error with a
reason. A populated duplicate reference never lands in the Error bucket.
"""

import logging
from typing import Any, Iterable, Mapping, Optional

from ..schemas.jobs import JobState, JobStatus, LocalFailure
from ..schemas.results import (
    DuplicateFailure,
    DuplicateReference,
    ErrorFailure,
    FailureRecord,
    ResultSummary,
)

logger = logging.getLogger(__name__)

DEFAULT_REASON = "Processing failed"
UNKNOWN_FILE = "<unknown>"

_REFERENCE_FIELDS = ("id", "vendor_name", "invoice_no", "invoice_date", "total", "status")


def _is_populated(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, Mapping):
        return any(_is_populated(v) for v in value.values())
    return True


def _parse_reference(value: Any) -> Optional[DuplicateReference]:
    """Turn a duplicate_of payload (mapping or bare id) into a reference."""
    if not _is_populated(value):
        return None
    if isinstance(value, Mapping):
        known = {k: value.get(k) for k in _REFERENCE_FIELDS}
        if not any(v is not None for v in known.values()):
            # Populated, but with keys we do not know; keep it a duplicate
            logger.debug(f"Duplicate reference without known fields: {dict(value)}")
        return DuplicateReference(**known)
    return DuplicateReference(id=value)


class ResultClassifier:
    """
    Splits raw failure records into duplicates and errors.

    Raw records use the backend's failed_files shape:
    {file | filename, reason | error_message, extracted?, duplicate_of?}
    """

    def __init__(self, default_reason: str = DEFAULT_REASON):
        self.default_reason = default_reason

    def classify(self, raw_failure: Mapping[str, Any] | None) -> FailureRecord:
        """Classify one raw failure record."""
        raw = raw_failure or {}
        file = raw.get("file") or raw.get("filename") or UNKNOWN_FILE

        reference = _parse_reference(raw.get("duplicate_of"))
        if reference is not None:
            extracted = raw.get("extracted")
            return DuplicateFailure(
                file=file,
                duplicate_of=reference,
                extracted_fields=dict(extracted) if isinstance(extracted, Mapping) else {},
            )

        reason = raw.get("reason") or raw.get("error_message") or self.default_reason
        return ErrorFailure(file=file, reason=str(reason))

    def classify_local(self, failure: LocalFailure) -> FailureRecord:
        """Classify a failure that never became a job."""
        payload: dict[str, Any] = {"file": failure.filename, "reason": failure.reason}
        payload.update(failure.detail)
        return self.classify(payload)

    def classify_job(self, state: JobState) -> FailureRecord:
        """Classify a job that ended FAILED."""
        return self.classify(state.as_failure_payload())

    def summarize(self, states: Iterable[JobState]) -> ResultSummary:
        """
        Build the result summary over every known job state.

        Synthesized failures (local and server-side rejections) and polled
        jobs that ended FAILED go through the same classification.
        """
        created = 0
        failed_files: list[FailureRecord] = []
        for state in states:
            if state.status is JobStatus.SUCCESS:
                created += 1
            elif state.status is JobStatus.FAILED:
                failed_files.append(self.classify_job(state))
        return ResultSummary(
            created=created,
            failed=len(failed_files),
            failed_files=tuple(failed_files),
        )


def classify_failure(raw_failure: Mapping[str, Any] | None) -> FailureRecord:
    """Classify one raw failure record with the default reason."""
    return ResultClassifier().classify(raw_failure)
