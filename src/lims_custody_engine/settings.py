"""Service settings for lims-custody-engine.

All settings use the LIMS_CUSTODY_ environment prefix and cover:
- Resource Store connection (FHIR REST server, or in-memory when unset)
- Reference data files (locations/stations, regulatory requirements)
- Compliance policy constants (gap thresholds, verdict threshold, penalties)
- Live event stream buffering
- Logging
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings for lims-custody-engine.

    Environment variable prefix: LIMS_CUSTODY_
    """

    service_name: str = "lims-custody-engine"
    host: str = Field(default="0.0.0.0", description="Interface the HTTP server binds to.")
    port: int = Field(default=8000, description="Port the HTTP server listens on.")

    # -------------------------------------------------------------------------
    # Resource Store — FHIR REST server holding Specimen and AuditEvent resources
    # -------------------------------------------------------------------------

    resource_store_url: str = Field(
        default="",
        description="Base URL of the FHIR REST server (e.g., https://fhir.example.org/fhir/R4). "
        "Leave empty to run against the in-memory store.",
    )
    resource_store_token: str = Field(
        default="",
        description="Bearer token sent to the Resource Store. Empty disables the Authorization header.",
    )
    resource_store_timeout_s: float = Field(
        default=10.0,
        description="Request timeout in seconds for Resource Store calls.",
    )

    # -------------------------------------------------------------------------
    # Reference data
    # -------------------------------------------------------------------------

    registry_file: str = Field(
        default="",
        description="Optional YAML file with locations and workflow stations. "
        "Empty uses the built-in laboratory layout.",
    )
    requirements_file: str = Field(
        default="",
        description="Optional YAML file with regulatory requirements. "
        "Empty uses the built-in CAP and CLIA requirements.",
    )

    # -------------------------------------------------------------------------
    # Compliance policy constants
    # -------------------------------------------------------------------------

    gap_threshold_minutes: float = Field(
        default=30.0,
        description="Interval between consecutive location changes above which a custody gap is recorded.",
    )
    high_severity_gap_minutes: float = Field(
        default=120.0,
        description="Gap duration above which the gap is high severity and integrity is broken.",
    )
    max_high_violations: int = Field(
        default=2,
        description="Number of high-severity violations tolerated before the verdict is non-compliant.",
    )
    broken_integrity_penalty: int = Field(
        default=30,
        description="Handling score deduction when chain-of-custody integrity is broken.",
    )
    questionable_integrity_penalty: int = Field(
        default=15,
        description="Handling score deduction when chain-of-custody integrity is questionable.",
    )
    failure_event_penalty: int = Field(
        default=10,
        description="Handling score deduction per event with a failure outcome.",
    )
    long_gap_timeliness_penalty: int = Field(
        default=25,
        description="Timeliness score deduction when the longest gap exceeds the high-severity threshold.",
    )
    malformed_record_penalty: int = Field(
        default=10,
        description="Documentation score deduction per audit record skipped as malformed.",
    )

    # -------------------------------------------------------------------------
    # Live event stream and reporting
    # -------------------------------------------------------------------------

    stream_queue_size: int = Field(
        default=256,
        description="Per-subscriber buffer size. A full buffer drops new messages for that subscriber only.",
    )
    report_deadline_seconds: float | None = Field(
        default=None,
        description="Default deadline for compliance report generation. None disables the deadline.",
    )

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    log_level: str = Field(default="INFO", description="Minimum log level.")
    log_json: bool = Field(default=False, description="Emit JSON log lines instead of console output.")

    model_config = SettingsConfigDict(env_prefix="LIMS_CUSTODY_")
