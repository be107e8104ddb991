"""
Configuration management (SSOT).

This module defines ALL configuration for the batch upload orchestrator.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- base_url is for API calls; external_url is for browser links
- Every upload flow has exactly one status transport: "poll" or "sse"
- max_attempts of None means a polled flow never gives up on its own
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


TRANSPORT_POLL = "poll"
TRANSPORT_SSE = "sse"
KNOWN_TRANSPORTS = (TRANSPORT_POLL, TRANSPORT_SSE)

FLOW_INVOICES = "invoices"
FLOW_SUPPORTING_DOCUMENTS = "supporting_documents"
FLOW_BANK_STATEMENTS = "bank_statements"


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@dataclass
class DashboardConfig:
    """Dashboard backend configuration.

    SSOT for URL handling:
    - base_url: URL for API calls
    - external_url: Browser-accessible URL, used for links to existing records

    If external_url is not set, falls back to base_url.
    """

    base_url: str
    token: str = ""
    external_url: str | None = None
    # Request timeout (seconds)
    timeout_seconds: int = 30
    # Connection retries for transient network failures
    max_retries: int = 3

    def get_external_url(self) -> str:
        """Get the URL for browser links (external or fallback to base)."""
        return self.external_url or self.base_url


@dataclass
class PollingConfig:
    """Polling loop settings for one flow."""

    interval_seconds: float = 2.0
    # None: keep polling until every job is terminal
    max_attempts: int | None = None


@dataclass
class FlowConfig:
    """One upload flow (one call site in the dashboard)."""

    name: str
    submit_path: str
    status_path: str = ""
    transport: str = TRANSPORT_POLL
    # SSE flows: per-batch progress stream, formatted with batch_id
    progress_path: str | None = None
    # Presigned flows: confirm step after files are PUT to storage
    confirm_path: str | None = None
    polling: PollingConfig = field(default_factory=PollingConfig)
    # Per-file metadata keys that must be present before submission
    required_metadata: list[str] = field(default_factory=list)

    @property
    def uses_presigned_upload(self) -> bool:
        return self.confirm_path is not None


@dataclass
class TimingConfig:
    """Elapsed-time display settings."""

    resolution_seconds: float = 0.1


def default_flows() -> dict[str, FlowConfig]:
    """The three upload flows of the dashboard with their stock endpoints."""
    return {
        FLOW_INVOICES: FlowConfig(
            name=FLOW_INVOICES,
            submit_path="/ap/invoices/batch",
            transport=TRANSPORT_SSE,
            progress_path="/api/batch-progress/{batch_id}",
        ),
        FLOW_SUPPORTING_DOCUMENTS: FlowConfig(
            name=FLOW_SUPPORTING_DOCUMENTS,
            submit_path="/api/v1/supporting-documents/batch-upload",
            status_path="/api/v1/supporting-documents/batch-jobs/{job_id}",
            polling=PollingConfig(interval_seconds=2.0, max_attempts=None),
            required_metadata=["document_type"],
        ),
        FLOW_BANK_STATEMENTS: FlowConfig(
            name=FLOW_BANK_STATEMENTS,
            submit_path="/api/v1/bank-statements/batch-upload",
            confirm_path="/api/v1/bank-statements/batch-confirm",
            status_path="/api/v1/bank-statements/jobs/{job_id}",
            polling=PollingConfig(interval_seconds=5.0, max_attempts=120),
        ),
    }


@dataclass
class Config:
    """Application configuration (SSOT).

    All configuration is centralized here. No other module should define
    configuration keys or defaults.
    """

    dashboard: DashboardConfig
    flows: dict[str, FlowConfig] = field(default_factory=default_flows)
    timing: TimingConfig = field(default_factory=TimingConfig)

    def flow(self, name: str) -> FlowConfig:
        """Look up a flow by name."""
        try:
            return self.flows[name]
        except KeyError:
            raise ConfigValidationError(
                f"Unknown upload flow '{name}' (known: {', '.join(sorted(self.flows))})"
            )

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []

        if not self.dashboard.base_url:
            errors.append("dashboard.base_url is required")
        if self.dashboard.timeout_seconds <= 0:
            errors.append("dashboard.timeout_seconds must be positive")

        if self.timing.resolution_seconds <= 0:
            errors.append("timing.resolution_seconds must be positive")

        for name, flow in self.flows.items():
            if flow.transport not in KNOWN_TRANSPORTS:
                errors.append(f"flows.{name}.transport must be one of {KNOWN_TRANSPORTS}")
            if not flow.submit_path:
                errors.append(f"flows.{name}.submit_path is required")
            if flow.transport == TRANSPORT_SSE and not flow.progress_path:
                errors.append(f"flows.{name}.progress_path is required for sse flows")
            if flow.transport == TRANSPORT_POLL:
                if not flow.status_path:
                    errors.append(f"flows.{name}.status_path is required for poll flows")
                if flow.polling.interval_seconds <= 0:
                    errors.append(f"flows.{name}.polling.interval_seconds must be positive")
                if flow.polling.max_attempts is not None and flow.polling.max_attempts <= 0:
                    errors.append(f"flows.{name}.polling.max_attempts must be positive or null")

        return errors


def _parse_max_attempts(value: Any) -> Optional[int]:
    """Parse a max_attempts value; 0, "none" and null disable the cap."""
    if value is None:
        return None
    if isinstance(value, str):
        if value.strip().lower() in ("", "none", "null"):
            return None
        value = int(value)
    value = int(value)
    return value if value > 0 else None


def _load_flow(name: str, data: dict, base: FlowConfig | None) -> FlowConfig:
    """Merge a flow section from YAML over its stock definition."""
    base = base or FlowConfig(name=name, submit_path="")
    polling_data = data.get("polling", {})
    polling = PollingConfig(
        interval_seconds=float(
            polling_data.get("interval_seconds", base.polling.interval_seconds)
        ),
        max_attempts=_parse_max_attempts(
            polling_data.get("max_attempts", base.polling.max_attempts)
        ),
    )
    return FlowConfig(
        name=name,
        submit_path=data.get("submit_path", base.submit_path),
        status_path=data.get("status_path", base.status_path),
        transport=data.get("transport", base.transport),
        progress_path=data.get("progress_path", base.progress_path),
        confirm_path=data.get("confirm_path", base.confirm_path),
        polling=polling,
        required_metadata=list(data.get("required_metadata", base.required_metadata)),
    )


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - DOCDESK_URL
    - DOCDESK_TOKEN
    - DOCDESK_EXTERNAL_URL
    - DOCDESK_TIMEOUT (request timeout in seconds)
    - DOCDESK_POLL_INTERVAL (seconds, applies to every polled flow)
    - DOCDESK_POLL_MAX_ATTEMPTS (0 or "none" disables the cap)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Dashboard config
    dashboard_data = data.get("dashboard", {})
    dashboard = DashboardConfig(
        base_url=os.environ.get(
            "DOCDESK_URL", dashboard_data.get("base_url", "http://localhost:8000")
        ),
        token=os.environ.get("DOCDESK_TOKEN", dashboard_data.get("token", "")),
        external_url=os.environ.get("DOCDESK_EXTERNAL_URL", dashboard_data.get("external_url")),
        timeout_seconds=int(
            os.environ.get("DOCDESK_TIMEOUT", dashboard_data.get("timeout_seconds", 30))
        ),
        max_retries=dashboard_data.get("max_retries", 3),
    )

    # Flows: stock definitions, overlaid by the file
    flows = default_flows()
    for name, flow_data in (data.get("flows") or {}).items():
        flows[name] = _load_flow(name, flow_data or {}, flows.get(name))

    interval_env = os.environ.get("DOCDESK_POLL_INTERVAL", "")
    max_attempts_env = os.environ.get("DOCDESK_POLL_MAX_ATTEMPTS")
    for flow in flows.values():
        if flow.transport != TRANSPORT_POLL:
            continue
        if interval_env:
            try:
                flow.polling.interval_seconds = float(interval_env)
            except ValueError:
                pass  # Keep configured value
        if max_attempts_env is not None:
            try:
                flow.polling.max_attempts = _parse_max_attempts(max_attempts_env)
            except ValueError:
                pass  # Keep configured value

    timing_data = data.get("timing", {})
    timing = TimingConfig(
        resolution_seconds=float(timing_data.get("resolution_seconds", 0.1)),
    )

    return Config(dashboard=dashboard, flows=flows, timing=timing)


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Document dashboard batch upload configuration
#
# URL Configuration (SSOT):
# - base_url: URL for API calls
# - external_url: Browser-accessible URL for links to existing records
#
# If external_url is not set, base_url is used for both.

dashboard:
  base_url: "http://localhost:8000"       # API URL
  external_url: null                      # Browser URL (set if different from base_url)
  token: "YOUR_DASHBOARD_TOKEN"
  timeout_seconds: 30
  max_retries: 3                          # Connection retries per request

# Upload flows. Each flow has one status transport:
# - poll: one GET per pending job per tick
# - sse: one server-sent event stream for the whole batch
flows:
  invoices:
    transport: sse
    submit_path: "/ap/invoices/batch"
    progress_path: "/api/batch-progress/{batch_id}"

  supporting_documents:
    transport: poll
    submit_path: "/api/v1/supporting-documents/batch-upload"
    status_path: "/api/v1/supporting-documents/batch-jobs/{job_id}"
    required_metadata: ["document_type"]
    polling:
      interval_seconds: 2
      max_attempts: null                   # Poll until every job is done

  bank_statements:
    transport: poll
    submit_path: "/api/v1/bank-statements/batch-upload"      # Presigned upload intent
    confirm_path: "/api/v1/bank-statements/batch-confirm"
    status_path: "/api/v1/bank-statements/jobs/{job_id}"
    polling:
      interval_seconds: 5
      max_attempts: 120                    # ~10 minutes, then check back later

# Elapsed-time display
timing:
  resolution_seconds: 0.1
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
