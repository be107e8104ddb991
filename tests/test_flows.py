"""
Tests for the three dashboard upload flows.
"""

import httpx
import pytest

from docdesk_uploads.config import ConfigValidationError
from docdesk_uploads.schemas import BatchCondition, JobStatus
from docdesk_uploads.services.flows import (
    PolledUploadFlow,
    StreamedUploadFlow,
    build_flow,
    check_direction,
    check_document_type,
    invoice_fields,
    make_status_poller,
    supporting_document_metadata,
)
from docdesk_uploads.services.submitter import SubmissionError
from docdesk_uploads.services.tracker import CancellationToken


class TestBuildFlow:
    """Test flow construction from configuration."""

    def test_flow_kinds(self, make_client, fast_config):
        client = make_client(lambda request: httpx.Response(200, json={}))

        assert isinstance(build_flow("invoices", client, fast_config), StreamedUploadFlow)
        supporting = build_flow("supporting_documents", client, fast_config)
        bank = build_flow("bank_statements", client, fast_config)

        assert isinstance(supporting, PolledUploadFlow)
        assert isinstance(bank, PolledUploadFlow)
        assert bank.config.uses_presigned_upload
        assert bank.options.max_attempts == 120
        assert supporting.options.max_attempts is None

    def test_unknown_flow(self, make_client, fast_config):
        client = make_client(lambda request: httpx.Response(200, json={}))
        with pytest.raises(ConfigValidationError, match="Unknown upload flow"):
            build_flow("receipts", client, fast_config)


class TestFieldBuilders:
    """Test batch options and per-file metadata encoding."""

    def test_invoice_fields(self):
        """Test checkbox options are sent as 'on' or empty."""
        assert invoice_fields({"use_ocr": False, "batch_remark": "Q4"}) == {
            "use_ocr": "",
            "auto_classify": "on",
            "batch_remark": "Q4",
        }

    def test_supporting_document_metadata(self):
        """Test an empty direction is left out."""
        assert supporting_document_metadata({"document_type": "purchase_order", "direction": ""}) == {
            "document_type": "purchase_order"
        }

    def test_document_type_and_direction_checks(self, make_file):
        upload = make_file("a.pdf")
        assert check_document_type(upload, {"document_type": "payment_voucher"}) is None
        assert check_document_type(upload, {"document_type": "receipt"}) == "Unknown document type: receipt"
        assert check_direction(upload, {"direction": "AR"}) is None
        assert check_direction(upload, {}) is None
        assert check_direction(upload, {"direction": "IN"}) == "Unknown direction: IN"


class TestStatusPoller:
    """Test the per-job poll function."""

    @pytest.mark.asyncio
    async def test_404_becomes_not_found(self, make_client):
        client = make_client(lambda request: httpx.Response(404, json={"message": "gone"}))
        poll_one = make_status_poller(client, "/api/v1/bank-statements/jobs/{job_id}")

        async with client:
            report = await poll_one("J1")

        assert report.status is JobStatus.NOT_FOUND

    @pytest.mark.asyncio
    async def test_parses_status(self, make_client):
        client = make_client(
            lambda request: httpx.Response(200, json={"data": {"status": "SUCCESS", "statement_id": 3}, "success": True})
        )
        poll_one = make_status_poller(client, "/api/v1/bank-statements/jobs/{job_id}")

        async with client:
            report = await poll_one("J1")

        assert report.status is JobStatus.SUCCESS
        assert report.result_ref == 3


class TestSupportingDocumentsFlow:
    """Test multipart submission with per-file metadata."""

    @pytest.mark.asyncio
    async def test_invalid_type_rejected_locally(self, make_client, make_file, fast_config, status_routes):
        """Test unknown document types never reach the server."""
        routes = status_routes(
            {
                ("POST", "/api/v1/supporting-documents/batch-upload"): {
                    "jobs": [{"job_id": "J1", "filename": "ok.pdf"}],
                    "total_files": 1,
                }
            }
        )
        flow = build_flow("supporting_documents", make_client(routes), fast_config)

        result = await flow.submit(
            [make_file("ok.pdf"), make_file("bad.pdf")],
            [{"document_type": "delivery_order", "direction": "AP"}, {"document_type": "receipt"}],
            {"remark": "Batch 7"},
        )

        assert result.total_files == 2
        assert result.failures[0].filename == "bad.pdf"
        assert result.failures[0].reason == "Unknown document type: receipt"
        body = routes.requests[0].content
        assert b"bad.pdf" not in body
        assert b'"direction": "AP"' in body
        assert b"Batch 7" in body


class TestInvoicesFlow:
    """Test the batch-id + event stream flow."""

    @pytest.mark.asyncio
    async def test_missing_batch_id_is_fatal(self, make_client, make_file, fast_config, status_routes):
        routes = status_routes({("POST", "/ap/invoices/batch"): {"message": "accepted"}})
        flow = build_flow("invoices", make_client(routes), fast_config)

        with pytest.raises(SubmissionError, match="batch id"):
            await flow.submit([make_file("a.pdf")])

    @pytest.mark.asyncio
    async def test_nothing_submitted_completes_without_stream(self, make_client, make_file, fast_config, status_routes):
        """Test a batch of only local rejections never opens a stream."""
        routes = status_routes()
        flow = build_flow("invoices", make_client(routes), fast_config)

        result = await flow.submit([make_file("empty.pdf", b"")])
        snapshots = [s async for s in flow.track(result, CancellationToken())]

        assert routes.requests == []
        assert snapshots[-1].condition is BatchCondition.COMPLETED
        assert snapshots[-1].states[0].status is JobStatus.FAILED
