"""Runtime configuration for the run orchestrator and KPI engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_FORMULA_VERSIONS = ("kpi-v1",)
SEVERITY_LEVELS = ("SEV1", "SEV2", "SEV3", "SEV4")


@dataclass(slots=True)
class TenantSettings:
    """Tenant context; every run and snapshot is scoped to one tenant."""

    tenant_id: str = "default_tenant"


@dataclass(slots=True)
class WorkerSettings:
    """Dispatcher worker settings."""

    worker_id: str = "worker-local"
    poll_interval_seconds: float = 2.0
    pool_size: int = 1


@dataclass(slots=True)
class RunSettings:
    """Per-kind run policy knobs."""

    analysis_timeout_seconds: int = 900
    report_timeout_seconds: int = 600
    export_timeout_seconds: int = 300
    incident_evaluation_timeout_seconds: int = 120
    analysis_reuse_failed: bool = False
    analysis_retention_hours: int = 24
    report_approval_gate: bool = True


@dataclass(slots=True)
class AggregationSettings:
    """KPI formula parameters that can be tuned without a formula version bump."""

    formula_version: str = "kpi-v1"
    min_classified_items: int = 20
    severity_thresholds: tuple[float, float, float] = (80.0, 60.0, 40.0)
    neutral_weight: float = 0.5
    window_days: int = 7
    scopes: tuple[str, ...] = ("brand", "competitor")


@dataclass(slots=True)
class IncidentSettings:
    """Incident trigger rules."""

    riesgo_bound: float = 60.0
    severity_tiers: tuple[str, ...] = ("SEV1", "SEV2")


@dataclass(slots=True)
class ReportSettings:
    """Report generation settings."""

    confidence_threshold: float = 0.65
    artifacts_dir: Path = Path(".brand_monitor_artifacts")


@dataclass(slots=True)
class ClassifierSettings:
    """External sentiment classifier command."""

    command_template: str = ""
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".brand_monitor.db")
    sqlite_busy_timeout_ms: int = 5_000
    feed_page_cap: int = 50
    tenant: TenantSettings = field(default_factory=TenantSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    runs: RunSettings = field(default_factory=RunSettings)
    aggregation: AggregationSettings = field(default_factory=AggregationSettings)
    incidents: IncidentSettings = field(default_factory=IncidentSettings)
    reports: ReportSettings = field(default_factory=ReportSettings)
    classifier: ClassifierSettings = field(default_factory=ClassifierSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        settings = cls(
            db_path=db_path or Path(os.getenv("BRAND_MONITOR_DB_PATH", ".brand_monitor.db")),
            sqlite_busy_timeout_ms=int(os.getenv("BRAND_MONITOR_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            feed_page_cap=int(os.getenv("BRAND_MONITOR_FEED_PAGE_CAP", "50")),
            tenant=TenantSettings(
                tenant_id=os.getenv("BRAND_MONITOR_TENANT_ID", "default_tenant"),
            ),
            worker=WorkerSettings(
                worker_id=os.getenv("BRAND_MONITOR_WORKER_ID", "worker-local"),
                poll_interval_seconds=float(
                    os.getenv("BRAND_MONITOR_WORKER_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                pool_size=int(os.getenv("BRAND_MONITOR_WORKER_POOL_SIZE", "1")),
            ),
            runs=RunSettings(
                analysis_timeout_seconds=int(
                    os.getenv("BRAND_MONITOR_ANALYSIS_TIMEOUT_SECONDS", "900"),
                ),
                report_timeout_seconds=int(
                    os.getenv("BRAND_MONITOR_REPORT_TIMEOUT_SECONDS", "600"),
                ),
                export_timeout_seconds=int(
                    os.getenv("BRAND_MONITOR_EXPORT_TIMEOUT_SECONDS", "300"),
                ),
                incident_evaluation_timeout_seconds=int(
                    os.getenv("BRAND_MONITOR_INCIDENT_EVALUATION_TIMEOUT_SECONDS", "120"),
                ),
                analysis_reuse_failed=_env_bool(
                    "BRAND_MONITOR_ANALYSIS_REUSE_FAILED",
                    default=False,
                ),
                analysis_retention_hours=int(
                    os.getenv("BRAND_MONITOR_ANALYSIS_RETENTION_HOURS", "24"),
                ),
                report_approval_gate=_env_bool(
                    "BRAND_MONITOR_REPORT_APPROVAL_GATE",
                    default=True,
                ),
            ),
            aggregation=AggregationSettings(
                formula_version=os.getenv("BRAND_MONITOR_FORMULA_VERSION", "kpi-v1"),
                min_classified_items=int(
                    os.getenv("BRAND_MONITOR_MIN_CLASSIFIED_ITEMS", "20"),
                ),
                severity_thresholds=_env_thresholds(
                    "BRAND_MONITOR_SEVERITY_THRESHOLDS",
                    default=(80.0, 60.0, 40.0),
                ),
                neutral_weight=float(os.getenv("BRAND_MONITOR_NEUTRAL_WEIGHT", "0.5")),
                window_days=int(os.getenv("BRAND_MONITOR_WINDOW_DAYS", "7")),
            ),
            incidents=IncidentSettings(
                riesgo_bound=float(os.getenv("BRAND_MONITOR_INCIDENT_RIESGO_BOUND", "60")),
                severity_tiers=_env_csv(
                    "BRAND_MONITOR_INCIDENT_SEVERITY_TIERS",
                    default=("SEV1", "SEV2"),
                ),
            ),
            reports=ReportSettings(
                confidence_threshold=float(
                    os.getenv("BRAND_MONITOR_REPORT_CONFIDENCE_THRESHOLD", "0.65"),
                ),
                artifacts_dir=Path(
                    os.getenv("BRAND_MONITOR_ARTIFACTS_DIR", ".brand_monitor_artifacts"),
                ),
            ),
            classifier=ClassifierSettings(
                command_template=os.getenv("BRAND_MONITOR_CLASSIFIER_COMMAND_TEMPLATE", ""),
                timeout_seconds=float(
                    os.getenv("BRAND_MONITOR_CLASSIFIER_TIMEOUT_SECONDS", "30"),
                ),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error on out-of-range values."""

        if not self.tenant.tenant_id.strip():
            raise ValueError("BRAND_MONITOR_TENANT_ID must not be empty.")
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("BRAND_MONITOR_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.feed_page_cap <= 0:
            raise ValueError("BRAND_MONITOR_FEED_PAGE_CAP must be > 0.")
        if self.worker.pool_size <= 0:
            raise ValueError("BRAND_MONITOR_WORKER_POOL_SIZE must be > 0.")
        if self.worker.poll_interval_seconds < 0:
            raise ValueError("BRAND_MONITOR_WORKER_POLL_INTERVAL_SECONDS must be >= 0.")

        for name, value in (
            ("BRAND_MONITOR_ANALYSIS_TIMEOUT_SECONDS", self.runs.analysis_timeout_seconds),
            ("BRAND_MONITOR_REPORT_TIMEOUT_SECONDS", self.runs.report_timeout_seconds),
            ("BRAND_MONITOR_EXPORT_TIMEOUT_SECONDS", self.runs.export_timeout_seconds),
            (
                "BRAND_MONITOR_INCIDENT_EVALUATION_TIMEOUT_SECONDS",
                self.runs.incident_evaluation_timeout_seconds,
            ),
        ):
            if value <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.runs.analysis_retention_hours < 0:
            raise ValueError("BRAND_MONITOR_ANALYSIS_RETENTION_HOURS must be >= 0.")

        aggregation = self.aggregation
        if aggregation.formula_version not in SUPPORTED_FORMULA_VERSIONS:
            raise ValueError(
                f"Unsupported BRAND_MONITOR_FORMULA_VERSION: {aggregation.formula_version!r}",
            )
        if aggregation.min_classified_items < 0:
            raise ValueError("BRAND_MONITOR_MIN_CLASSIFIED_ITEMS must be >= 0.")
        sev1, sev2, sev3 = aggregation.severity_thresholds
        if not 0 <= sev3 <= sev2 <= sev1 <= 100:
            raise ValueError(
                "BRAND_MONITOR_SEVERITY_THRESHOLDS must be descending values within 0..100.",
            )
        if not 0 <= aggregation.neutral_weight <= 1:
            raise ValueError("BRAND_MONITOR_NEUTRAL_WEIGHT must be within 0..1.")
        if aggregation.window_days <= 0:
            raise ValueError("BRAND_MONITOR_WINDOW_DAYS must be > 0.")

        if not 0 <= self.incidents.riesgo_bound <= 100:
            raise ValueError("BRAND_MONITOR_INCIDENT_RIESGO_BOUND must be within 0..100.")
        unknown_tiers = set(self.incidents.severity_tiers) - set(SEVERITY_LEVELS)
        if unknown_tiers:
            raise ValueError(
                f"Unknown severity tiers in BRAND_MONITOR_INCIDENT_SEVERITY_TIERS: "
                f"{sorted(unknown_tiers)}",
            )
        if not 0 <= self.reports.confidence_threshold <= 1:
            raise ValueError("BRAND_MONITOR_REPORT_CONFIDENCE_THRESHOLD must be within 0..1.")
        if self.classifier.timeout_seconds <= 0:
            raise ValueError("BRAND_MONITOR_CLASSIFIER_TIMEOUT_SECONDS must be > 0.")


def _env_thresholds(
    name: str,
    default: tuple[float, float, float],
) -> tuple[float, float, float]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    parts = [part.strip() for part in raw.split(",") if part.strip()]
    if len(parts) != 3:  # noqa: PLR2004
        raise ValueError(f"{name} must hold three comma-separated numbers, got {raw!r}")
    try:
        sev1, sev2, sev3 = (float(part) for part in parts)
    except ValueError as error:
        raise ValueError(f"Invalid number in {name}: {raw!r}") from error
    return (sev1, sev2, sev3)


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip().upper() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
