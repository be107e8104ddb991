"""
Batch result summary.

FailureRecord is a tagged variant:
- DuplicateFailure: the backend matched an existing record
- ErrorFailure: anything else, with a plain reason

Both submission-time rejections and jobs that ended FAILED are rendered
through the same records, so the results table does not care which path
produced a failure.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union


@dataclass(frozen=True)
class DuplicateReference:
    """The pre-existing record a duplicate upload collided with."""

    id: Optional[Union[int, str]] = None
    vendor_name: Optional[str] = None
    invoice_no: Optional[str] = None
    invoice_date: Optional[str] = None
    total: Optional[float] = None
    status: Optional[str] = None

    @property
    def label(self) -> str:
        """Short label for the existing record, e.g. '#42 (verified)'."""
        if self.id is None:
            return "-"
        return f"#{self.id} ({self.status or '-'})"

    def record_url(self, external_url: str) -> Optional[str]:
        """Browser link to the existing record, if it has an id."""
        if self.id is None:
            return None
        return f"{external_url.rstrip('/')}/ap/invoices/{self.id}"


@dataclass(frozen=True)
class DuplicateFailure:
    """Upload rejected because it matches an existing record."""

    file: str
    duplicate_of: DuplicateReference
    extracted_fields: Mapping[str, Any] = field(default_factory=dict)

    kind = "duplicate"

    def display_value(self, name: str) -> Any:
        """Extracted value, falling back to the existing record's value."""
        value = self.extracted_fields.get(name)
        if value is None:
            value = getattr(self.duplicate_of, name, None)
        return value if value is not None else "-"


@dataclass(frozen=True)
class ErrorFailure:
    """Upload that failed for any reason other than a duplicate."""

    file: str
    reason: str

    kind = "error"


FailureRecord = Union[DuplicateFailure, ErrorFailure]


@dataclass(frozen=True)
class ResultSummary:
    """Final tally of a batch."""

    created: int = 0
    failed: int = 0
    failed_files: tuple[FailureRecord, ...] = ()

    @property
    def duplicates(self) -> list[DuplicateFailure]:
        return [f for f in self.failed_files if isinstance(f, DuplicateFailure)]

    @property
    def errors(self) -> list[ErrorFailure]:
        return [f for f in self.failed_files if isinstance(f, ErrorFailure)]

    def to_dict(self, external_url: Optional[str] = None) -> dict[str, Any]:
        """
        Result table rows.

        With external_url, duplicate rows link to the existing record.
        """
        rows: list[dict[str, Any]] = []
        for record in self.failed_files:
            if isinstance(record, DuplicateFailure):
                rows.append(
                    {
                        "file": record.file,
                        "type": record.kind,
                        "extracted": dict(record.extracted_fields),
                        "duplicate_of": {
                            "id": record.duplicate_of.id,
                            "vendor_name": record.duplicate_of.vendor_name,
                            "invoice_no": record.duplicate_of.invoice_no,
                            "invoice_date": record.duplicate_of.invoice_date,
                            "total": record.duplicate_of.total,
                            "status": record.duplicate_of.status,
                        },
                        "record_url": (
                            record.duplicate_of.record_url(external_url) if external_url else None
                        ),
                    }
                )
            else:
                rows.append({"file": record.file, "type": record.kind, "reason": record.reason})
        return {"created": self.created, "failed": self.failed, "failed_files": rows}
