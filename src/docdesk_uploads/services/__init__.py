"""
Batch upload services.

Provides:
- Submission and client-side validation (JobSubmitter)
- Status sources: per-job polling (JobTracker) and per-batch event streams (StreamTracker)
- Progress aggregation and failure classification
- The three dashboard upload flows
- Owned, cancellable upload sessions
"""

from .aggregator import ProgressAggregator, aggregate
from .classifier import ResultClassifier, classify_failure
from .flows import PolledUploadFlow, StreamedUploadFlow, UploadFlow, build_flow
from .progress_stream import StreamTracker, follow_progress_stream
from .session import BatchUploadSession, SessionObserver, SessionState, UploadController
from .submitter import JobSubmitter, SubmissionError
from .timing import TimingClock
from .tracker import CancellationToken, JobTracker, PollOptions, poll_until_terminal, track

__all__ = [
    "ProgressAggregator",
    "aggregate",
    "ResultClassifier",
    "classify_failure",
    "UploadFlow",
    "PolledUploadFlow",
    "StreamedUploadFlow",
    "build_flow",
    "StreamTracker",
    "follow_progress_stream",
    "BatchUploadSession",
    "SessionObserver",
    "SessionState",
    "UploadController",
    "JobSubmitter",
    "SubmissionError",
    "TimingClock",
    "CancellationToken",
    "JobTracker",
    "PollOptions",
    "poll_until_terminal",
    "track",
]
