"""
Tests for batch submission and response normalization.
"""

import pytest

from docdesk_uploads.dashboard_client import DashboardAPIError, DashboardConnectionError
from docdesk_uploads.schemas import JobStatus, LocalFailure
from docdesk_uploads.services.submitter import (
    JobSubmitter,
    SubmissionError,
    normalize_submission,
    validate_files,
)


class RecordingSender:
    """send_batch replacement returning a fixed payload."""

    def __init__(self, payload=None, error=None):
        self.payload = payload
        self.error = error
        self.calls = []

    async def __call__(self, files, metadata, options):
        self.calls.append((files, metadata, options))
        if self.error is not None:
            raise self.error
        return self.payload


class TestValidateFiles:
    """Test client-side validation."""

    def test_missing_required_metadata(self, make_file):
        """Test files without required metadata are rejected locally."""
        files = [make_file("a.pdf"), make_file("b.pdf")]

        valid, failures = validate_files(
            files,
            [{"document_type": "delivery_order"}, {}],
            required_metadata=["document_type"],
        )

        assert [(i, f.filename) for i, f, _ in valid] == [(0, "a.pdf")]
        assert len(failures) == 1
        assert failures[0].filename == "b.pdf"
        assert failures[0].reason == "Missing required document type"
        assert failures[0].index == 1
        assert failures[0].origin == "local"

    def test_validators_run_after_required_metadata(self, make_file):
        """Test custom validators reject files with their own reason."""
        def too_big(upload, meta):
            return "File too large" if upload.size_bytes > 4 else None

        valid, failures = validate_files(
            [make_file("small.pdf", b"1234"), make_file("big.pdf", b"123456")],
            validators=[too_big],
        )

        assert [f.filename for _, f, _ in valid] == ["small.pdf"]
        assert failures[0].reason == "File too large"


class TestNormalizeSubmission:
    """Test folding response shapes into one result."""

    def test_mixed_response(self):
        """Test items, jobs and server failures in one response."""
        payload = {
            "items": [{"filename": "a.pdf", "document_id": 11}],
            "jobs": [{"job_id": "J1", "filename": "b.pdf"}],
            "failures": [{"index": 2, "filename": "c.pdf", "reason": "Unsupported format"}],
            "total_files": 3,
        }

        result = normalize_submission(payload, [], [0, 1, 2])

        assert result.total_files == 3
        assert result.items[0].result_ref == 11
        assert result.jobs[0].job_id == "J1"
        assert result.failures[0].origin == "remote"
        assert result.failures[0].index == 2
        assert result.failures[0].reason == "Unsupported format"

    def test_failure_indexes_map_to_original_positions(self):
        """Test server indexes refer to submitted files only."""
        payload = {"failures": [{"index": 0, "filename": "c.pdf", "reason": "Bad"}]}

        # Original file 1 was rejected locally; original file 2 was submitted first
        result = normalize_submission(payload, [], [2])

        assert result.failures[0].index == 2

    def test_failures_with_and_without_index_stay_distinct(self):
        """Test a failure without an index never shadows one with an index."""
        payload = {
            "items": [{"filename": "c.pdf", "document_id": 3}],
            "failures": [
                {"index": 1, "filename": "a.pdf", "reason": "Unreadable"},
                {"filename": "b.pdf", "reason": "Unsupported format"},
            ],
            "total_files": 3,
        }
        local = [LocalFailure("x.pdf", "File is empty", index=1)]

        result = normalize_submission(payload, local, [0, 1, 2])
        states = result.initial_states()

        assert [f.index for f in result.failures] == [1, 1, None]
        assert len({s.job_id for s in states}) == len(states) == 4
        assert [s.filename for s in states if s.status.is_terminal] == ["x.pdf", "a.pdf", "b.pdf", "c.pdf"]

    def test_total_counts_local_failures(self):
        """Test total_files includes files that never reached the server."""
        local = [LocalFailure("x.pdf", "File is empty", index=0)]
        result = normalize_submission({"jobs": [{"job_id": "J1", "filename": "y.pdf"}]}, local, [1])

        assert result.total_files == 2

    def test_duplicate_detail_survives(self, sample_duplicate_failure):
        """Test server failures keep their duplicate reference."""
        payload = {"failures": [dict(sample_duplicate_failure, index=0)]}

        result = normalize_submission(payload, [], [0])

        assert result.failures[0].filename == "inv-0042.pdf"
        assert result.failures[0].detail["duplicate_of"]["id"] == 42

    def test_batch_id_only(self):
        """Test a push-tracked batch has no jobs but a batch id."""
        result = normalize_submission({"batch_id": 981, "total_files": 4}, [], [0, 1, 2, 3])

        assert result.batch_id == "981"
        assert result.total_files == 4
        assert not result.has_pending_jobs


class TestJobSubmitter:
    """Test the submitter end to end."""

    @pytest.mark.asyncio
    async def test_no_files(self):
        """Test an empty selection is refused."""
        submitter = JobSubmitter(RecordingSender({}))
        with pytest.raises(SubmissionError, match="at least one file"):
            await submitter.submit([])

    @pytest.mark.asyncio
    async def test_valid_remainder_is_sent(self, make_file):
        """Test local rejections do not block the other files."""
        sender = RecordingSender({"jobs": [{"job_id": "J2", "filename": "b.pdf"}]})
        submitter = JobSubmitter(sender, required_metadata=["document_type"])

        result = await submitter.submit(
            [make_file("a.pdf"), make_file("b.pdf")],
            [{}, {"document_type": "transfer_note"}],
            {"remark": "November"},
        )

        files, metadata, options = sender.calls[0]
        assert [f.filename for f in files] == ["b.pdf"]
        assert metadata == [{"document_type": "transfer_note"}]
        assert options == {"remark": "November"}
        assert result.total_files == 2
        assert [s.status for s in result.initial_states()] == [
            JobStatus.FAILED,
            JobStatus.PENDING,
        ]

    @pytest.mark.asyncio
    async def test_all_rejected_makes_no_request(self, make_file):
        """Test locally rejected files never reach the network."""
        sender = RecordingSender({})
        submitter = JobSubmitter(sender)

        result = await submitter.submit([make_file("empty.pdf", b"")])

        assert sender.calls == []
        assert result.total_files == 1
        assert result.failures[0].reason == "File is empty"
        assert not result.has_pending_jobs

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [
            DashboardAPIError(500, "Internal server error"),
            DashboardConnectionError("connection refused"),
        ],
    )
    async def test_request_failure_is_fatal(self, make_file, error):
        """Test a failed batch request raises and keeps nothing."""
        submitter = JobSubmitter(RecordingSender(error=error))

        with pytest.raises(SubmissionError) as excinfo:
            await submitter.submit([make_file("a.pdf")])

        assert "Upload failed" in excinfo.value.message

    @pytest.mark.asyncio
    async def test_empty_response_is_fatal(self, make_file):
        """Test an empty response body is a submission failure."""
        submitter = JobSubmitter(RecordingSender({}))

        with pytest.raises(SubmissionError, match="empty response"):
            await submitter.submit([make_file("a.pdf")])

    @pytest.mark.asyncio
    async def test_inconsistent_response_is_fatal(self, make_file):
        """Test duplicate job ids from the server fail the submission."""
        sender = RecordingSender(
            {"jobs": [{"job_id": "J1", "filename": "a"}, {"job_id": "J1", "filename": "b"}]}
        )

        with pytest.raises(SubmissionError, match="unique"):
            await JobSubmitter(sender).submit([make_file("a.pdf"), make_file("b.pdf")])
