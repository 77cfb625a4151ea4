"""
Prometheus metrics for the facility services

Every service exposes /metrics when ENABLE_METRICS=true. Besides the
HTTP latency and request counts, the engine reports:

- Reservations created, by initial status, and lifecycle transitions
- Admission rejections by error code, and lock retries
- Bans issued and currently active
- Duration of the aggregation queries
"""

from prometheus_client import Counter, Histogram, Gauge, Info
from prometheus_fastapi_instrumentator import Instrumentator, metrics
from fastapi import FastAPI
import logging
import os
import sys
import time
import psutil

logger = logging.getLogger(__name__)

# Business metrics
reservations_total = Counter(
    'facility_reservations_total',
    'Total reservations created',
    ['status']
)

reservation_transitions_total = Counter(
    'facility_reservation_transitions_total',
    'Reservation lifecycle transitions',
    ['action']
)

admission_rejections_total = Counter(
    'facility_admission_rejections_total',
    'Admission checks that rejected a booking',
    ['code']
)

lock_retries_total = Counter(
    'facility_lock_retries_total',
    'Check-then-write sequences retried after a serialization failure'
)

bans_total = Counter(
    'facility_bans_total',
    'Bans issued'
)

bans_active = Gauge(
    'facility_bans_active',
    'Number of currently active bans'
)

# Database metrics
db_query_duration_seconds = Histogram(
    'facility_db_query_duration_seconds',
    'Duration of usage aggregation queries',
    ['query_type']
)

system_info = Info(
    'facility_system_info',
    'System information'
)


def setup_metrics(app: FastAPI):
    """
    Set up Prometheus metrics for a FastAPI application.

    Args:
        app: FastAPI application instance

    Example:
        app = FastAPI()
        setup_metrics(app)
    """
    instrumentator = Instrumentator(
        should_group_status_codes=False,
        should_ignore_untemplated=True,
        should_respect_env_var=True,
        should_instrument_requests_inprogress=True,
        excluded_handlers=["/metrics", "/health"],
        env_var_name="ENABLE_METRICS",
        inprogress_name="http_requests_inprogress",
        inprogress_labels=True,
    )

    instrumentator.add(
        metrics.latency(
            should_include_handler=True,
            should_include_method=True,
            should_include_status=True,
        )
    )

    instrumentator.add(
        metrics.requests(
            should_include_handler=True,
            should_include_method=True,
            should_include_status=True,
        )
    )

    instrumentator.instrument(app)
    instrumentator.expose(app, endpoint="/metrics", include_in_schema=False)

    system_info.info({
        'version': '1.0.0',
        'python_version': sys.version.split()[0],
        'environment': os.getenv('ENVIRONMENT', 'development')
    })


def track_reservation_created(status: str):
    """
    Track reservation creation.

    Args:
        status: Initial status (approved or pending)
    """
    reservations_total.labels(status=status).inc()


def track_transition(action: str):
    """
    Track a lifecycle transition.

    Args:
        action: approve, reject, cancel or update
    """
    reservation_transitions_total.labels(action=action).inc()


def track_admission_rejected(code: str):
    admission_rejections_total.labels(code=code).inc()


def track_lock_retry():
    lock_retries_total.inc()


def track_ban_issued():
    bans_total.inc()


def update_active_bans(count: int):
    bans_active.set(count)


def track_db_query(query_type: str, duration: float):
    """
    Record the duration of one query.

    Args:
        query_type: Type of query (leaderboard, overview, ...)
        duration: Seconds spent
    """
    db_query_duration_seconds.labels(query_type=query_type).observe(duration)


class MetricsCollector:
    """
    Time a block and record it under a query type.

    Example:
        with MetricsCollector("leaderboard"):
            rows = db.query(Reservation).all()
    """

    def __init__(self, query_type: str):
        self.query_type = query_type
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time:
            track_db_query(self.query_type, time.time() - self.start_time)


def get_metrics_summary() -> dict:
    """
    Get summary of process health.

    Returns:
        dict: CPU/memory usage and business counters
    """
    try:
        created = 0
        for metric in reservations_total.collect():
            for sample in metric.samples:
                if sample.name == 'facility_reservations_total':
                    created += sample.value

        return {
            "system": {
                "cpu_percent": psutil.cpu_percent(),
                "memory_percent": psutil.virtual_memory().percent,
            },
            "reservations": {
                "created": created,
            },
            "status": "healthy"
        }
    except Exception as e:
        logger.warning(f"Metrics summary failed: {e}")
        return {"error": str(e), "status": "error"}
