"""
The dashboard's three batch upload flows.

- invoices: multipart batch, progress pushed over a per-batch event stream
- supporting_documents: multipart batch with per-file document type, polled
- bank_statements: presigned three-step upload, polled with a tick cap

Every flow submits through JobSubmitter and tracks through a source that
publishes TrackerSnapshot values, so sessions drive them identically.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncGenerator, Callable, Mapping, Optional, Sequence

from ..config import (
    FLOW_SUPPORTING_DOCUMENTS,
    TRANSPORT_SSE,
    Config,
    FlowConfig,
)
from ..dashboard_client import DashboardClient, SessionNotFoundError, UploadFile
from ..schemas.jobs import (
    BatchSubmissionResult,
    JobState,
    JobStatus,
    JobStatusReport,
    parse_job_status,
)
from ..schemas.progress import TrackerSnapshot
from .progress_stream import follow_progress_stream
from .submitter import FileValidator, JobSubmitter, SubmissionError, reject_empty_file
from .tracker import CancellationToken, PollOne, PollOptions, poll_until_terminal

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = ("delivery_order", "transfer_note", "purchase_order", "payment_voucher")
DIRECTIONS = ("AP", "AR", "NEUTRAL")

FieldBuilder = Callable[[Mapping[str, Any]], dict[str, str]]


def make_status_poller(client: DashboardClient, status_path: str) -> PollOne:
    """Build the per-job poll function for a status endpoint."""

    async def poll_one(job_id: str) -> JobStatusReport:
        try:
            payload = await client.get_job_status(status_path, job_id)
        except SessionNotFoundError:
            return JobStatusReport(job_id=job_id, status=JobStatus.NOT_FOUND)
        return parse_job_status(job_id, payload)

    return poll_one


def check_document_type(upload: UploadFile, metadata: Mapping[str, Any]) -> Optional[str]:
    document_type = metadata.get("document_type")
    if document_type and document_type not in DOCUMENT_TYPES:
        return f"Unknown document type: {document_type}"
    return None


def check_direction(upload: UploadFile, metadata: Mapping[str, Any]) -> Optional[str]:
    direction = metadata.get("direction")
    if direction and direction not in DIRECTIONS:
        return f"Unknown direction: {direction}"
    return None


def _flag(value: Any) -> str:
    # Checkbox semantics of the upload form
    return "on" if value else ""


def invoice_fields(options: Mapping[str, Any]) -> dict[str, str]:
    return {
        "use_ocr": _flag(options.get("use_ocr", True)),
        "auto_classify": _flag(options.get("auto_classify", True)),
        "batch_remark": str(options.get("batch_remark") or ""),
    }


def supporting_document_fields(options: Mapping[str, Any]) -> dict[str, str]:
    return {"remark": str(options.get("remark") or "")}


def supporting_document_metadata(meta: Mapping[str, Any]) -> dict[str, Any]:
    entry = {"document_type": meta.get("document_type")}
    if meta.get("direction"):
        entry["direction"] = meta["direction"]
    return entry


class UploadFlow(ABC):
    """One upload call site: how a batch is submitted and how it is tracked."""

    def __init__(
        self,
        client: DashboardClient,
        config: FlowConfig,
        validators: Sequence[FileValidator] = (reject_empty_file,),
        build_fields: Optional[FieldBuilder] = None,
    ):
        self.client = client
        self.config = config
        self.build_fields = build_fields
        # Browser URL for links to existing records; set by build_flow
        self.external_url: Optional[str] = None
        self.submitter = JobSubmitter(
            self._send_batch,
            required_metadata=config.required_metadata,
            validators=validators,
        )

    @property
    def name(self) -> str:
        return self.config.name

    async def submit(
        self,
        files: Sequence[UploadFile],
        per_file_metadata: Optional[Sequence[Mapping[str, Any]]] = None,
        batch_options: Optional[Mapping[str, Any]] = None,
    ) -> BatchSubmissionResult:
        return await self.submitter.submit(files, per_file_metadata, batch_options)

    @abstractmethod
    async def _send_batch(
        self,
        files: list[UploadFile],
        metadata: list[dict[str, Any]],
        options: dict[str, Any],
    ) -> Mapping[str, Any]:
        """Send the validated files; returns the response payload."""

    @abstractmethod
    def track(
        self, submission: BatchSubmissionResult, token: CancellationToken
    ) -> AsyncGenerator[TrackerSnapshot, None]:
        """Status source for a submitted batch."""

    def refresh(
        self, states: Sequence[JobState], token: CancellationToken
    ) -> Optional[AsyncGenerator[TrackerSnapshot, None]]:
        """One more status pass over unfinished jobs, if the flow supports it."""
        return None


class PolledUploadFlow(UploadFlow):
    """Flow whose jobs are polled one by one until terminal."""

    def __init__(
        self,
        client: DashboardClient,
        config: FlowConfig,
        validators: Sequence[FileValidator] = (reject_empty_file,),
        build_fields: Optional[FieldBuilder] = None,
        build_metadata: Optional[Callable[[Mapping[str, Any]], dict[str, Any]]] = None,
    ):
        super().__init__(client, config, validators, build_fields)
        self.build_metadata = build_metadata
        self.poll_one = make_status_poller(client, config.status_path)
        self.options = PollOptions(
            interval_seconds=config.polling.interval_seconds,
            max_attempts=config.polling.max_attempts,
        )

    async def _send_batch(
        self,
        files: list[UploadFile],
        metadata: list[dict[str, Any]],
        options: dict[str, Any],
    ) -> Mapping[str, Any]:
        if self.config.uses_presigned_upload:
            return await self.client.presigned_batch_upload(
                self.config.submit_path, self.config.confirm_path, files
            )
        return await self.client.submit_batch(
            self.config.submit_path,
            files,
            fields=self.build_fields(options) if self.build_fields else None,
            metadata=[self.build_metadata(m) for m in metadata] if self.build_metadata else None,
        )

    def track(
        self, submission: BatchSubmissionResult, token: CancellationToken
    ) -> AsyncGenerator[TrackerSnapshot, None]:
        return poll_until_terminal(submission.initial_states(), self.poll_one, self.options, token)

    def refresh(
        self, states: Sequence[JobState], token: CancellationToken
    ) -> AsyncGenerator[TrackerSnapshot, None]:
        single_pass = PollOptions(interval_seconds=self.options.interval_seconds, max_attempts=1)
        return poll_until_terminal(states, self.poll_one, single_pass, token)


class StreamedUploadFlow(UploadFlow):
    """Flow whose batch progress is pushed over a server-sent event stream."""

    async def _send_batch(
        self,
        files: list[UploadFile],
        metadata: list[dict[str, Any]],
        options: dict[str, Any],
    ) -> Mapping[str, Any]:
        payload = await self.client.submit_batch(
            self.config.submit_path,
            files,
            fields=self.build_fields(options) if self.build_fields else None,
        )
        if payload and payload.get("batch_id") is None:
            raise SubmissionError("Upload failed: server did not return a batch id")
        return payload

    def track(
        self, submission: BatchSubmissionResult, token: CancellationToken
    ) -> AsyncGenerator[TrackerSnapshot, None]:
        states = submission.initial_states()
        if submission.batch_id is None:
            # Nothing reached the server; only local rejections to report
            return poll_until_terminal(states, _never_polled, PollOptions(), token)
        path = self.config.progress_path.format(batch_id=submission.batch_id)
        return follow_progress_stream(
            self.client.stream_events(path), token, states, submission.batch_id
        )


async def _never_polled(job_id: str) -> JobStatusReport:
    raise RuntimeError(f"Job {job_id} has no status endpoint")


def build_flow(name: str, client: DashboardClient, config: Config) -> UploadFlow:
    """Build the upload flow configured under name."""
    flow_config = config.flow(name)

    flow: UploadFlow
    if flow_config.transport == TRANSPORT_SSE:
        flow = StreamedUploadFlow(client, flow_config, build_fields=invoice_fields)
    elif name == FLOW_SUPPORTING_DOCUMENTS:
        flow = PolledUploadFlow(
            client,
            flow_config,
            validators=(reject_empty_file, check_document_type, check_direction),
            build_fields=supporting_document_fields,
            build_metadata=supporting_document_metadata,
        )
    else:
        flow = PolledUploadFlow(client, flow_config)

    flow.external_url = config.dashboard.get_external_url()
    return flow
