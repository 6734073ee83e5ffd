"""Prometheus metrics instrumentation for Thermotrack."""

from prometheus_client import Counter, Histogram
from prometheus_fastapi_instrumentator import Instrumentator, metrics

# Custom metrics for the temperature pipeline

readings_merged_total = Counter(
    "thermotrack_readings_merged_total",
    "Number of new per-minute readings written to day documents",
)

reading_conflicts_total = Counter(
    "thermotrack_reading_conflicts_total",
    "Number of re-imported readings whose values differed from the stored minute",
)

duplicate_files_total = Counter(
    "thermotrack_duplicate_files_total",
    "Number of uploaded files already imported for the building",
)

snapshot_writes_total = Counter(
    "thermotrack_snapshot_writes_total",
    "Number of room snapshot rows written",
    ["status"],
)

import_jobs_total = Counter(
    "thermotrack_import_jobs_total",
    "Number of import jobs reaching a terminal state",
    ["status"],
)

import_duration = Histogram(
    "thermotrack_import_duration_seconds",
    "Wall-clock duration of import runs",
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
)


def setup_metrics(app) -> Instrumentator:
    """Set up Prometheus metrics instrumentation for FastAPI app."""
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/health", "/metrics"],
        env_var_name="METRICS_ENABLED",
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
    )

    instrumentator.add(
        metrics.default(
            metric_namespace="",
            metric_subsystem="",
            latency_highr_buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )
    )

    # Upload sizes matter for CSV batches
    instrumentator.add(
        metrics.request_size(
            metric_namespace="",
            metric_subsystem="",
            should_include_handler=True,
            should_include_method=True,
            should_include_status=True,
        )
    )

    instrumentator.instrument(app)

    return instrumentator


def expose_metrics(app, instrumentator: Instrumentator) -> None:
    """Expose the /metrics endpoint."""
    instrumentator.expose(app, include_in_schema=False, should_gzip=True)


# Helper functions for updating custom metrics


def record_merge(new_readings: int, conflicts: int) -> None:
    """Count merged readings and skipped conflicts."""
    if new_readings:
        readings_merged_total.inc(new_readings)
    if conflicts:
        reading_conflicts_total.inc(conflicts)


def record_duplicate_file() -> None:
    """Increment duplicate file counter."""
    duplicate_files_total.inc()


def record_snapshot_write(status: str) -> None:
    """Increment snapshot write counter."""
    snapshot_writes_total.labels(status=status).inc()


def record_import_job(status: str, duration: float | None = None) -> None:
    """Record a terminal import job."""
    import_jobs_total.labels(status=status).inc()
    if duration is not None:
        import_duration.observe(duration)
