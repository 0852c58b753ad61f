"""
Prometheus metrics exporter
"""
import os
import logging
from prometheus_client import Counter, Histogram, Gauge, start_http_server
from functools import wraps
import time

logger = logging.getLogger(__name__)

# Counters
transitions = Counter('moderation_transitions_total', 'Lifecycle transitions', ['from_status', 'to_status', 'actor'])
reports_submitted = Counter('moderation_reports_total', 'Report submissions', ['reason', 'outcome'])
escalations = Counter('moderation_report_escalations_total', 'Report threshold escalations')
notifications = Counter('moderation_notifications_total', 'Notification sends', ['template', 'result'])
notification_drops = Counter('moderation_notification_drops_total', 'Intents dropped before delivery', ['template', 'cause'])
classifications = Counter('moderation_classifications_total', 'Classification outcomes', ['outcome'])
policy_rejections = Counter('moderation_policy_rejections_total', 'Requests refused by policy', ['error'])
conflict_retries = Counter('moderation_conflict_retries_total', 'Retried concurrency conflicts', ['operation'])
outbox_drained = Counter('moderation_outbox_drained_total', 'Intents taken off the outbox')

# Histograms (for latency)
classification_latency = Histogram('moderation_classification_duration_seconds', 'Classifier call duration')
operation_latency = Histogram('moderation_operation_duration_seconds', 'Operation duration', ['operation'])

# Gauges (for current state)
queue_depth = Gauge('moderation_queue_depth', 'Moderation records by status', ['status'])


def _actor_label(actor_id: str) -> str:
    """Collapse admin ids into one label to keep cardinality bounded."""
    return actor_id if actor_id.startswith("system:") else "admin"


class MetricsExporter:
    """Prometheus metrics exporter"""

    def __init__(self, port: int = 8000):
        self.port = port
        self.server_started = False

    def start(self):
        """Start Prometheus HTTP server"""
        if not self.server_started:
            start_http_server(self.port)
            self.server_started = True
            logger.info(f"Prometheus metrics server started on port {self.port}")

    @staticmethod
    def track_operation(operation: str):
        """Decorator to track operation time"""
        def decorator(func):
            @wraps(func)
            def wrapper(*args, **kwargs):
                start_time = time.time()
                try:
                    result = func(*args, **kwargs)
                    operation_latency.labels(operation=operation).observe(time.time() - start_time)
                    return result
                except Exception:
                    operation_latency.labels(operation=f"{operation}_error").observe(time.time() - start_time)
                    raise
            return wrapper
        return decorator

    @staticmethod
    def record_transition(from_status: str, to_status: str, actor_id: str):
        """Record a lifecycle transition"""
        transitions.labels(from_status=from_status, to_status=to_status, actor=_actor_label(actor_id)).inc()

    @staticmethod
    def record_report(reason: str, outcome: str):
        """Record a report submission outcome (accepted, duplicate, self_report, ...)"""
        reports_submitted.labels(reason=reason, outcome=outcome).inc()

    @staticmethod
    def record_escalation():
        escalations.inc()

    @staticmethod
    def record_notification(template: str, success: bool):
        """Record one message send"""
        notifications.labels(template=template, result="sent" if success else "failed").inc()

    @staticmethod
    def record_notification_drop(template: str, cause: str):
        notification_drops.labels(template=template, cause=cause).inc()

    @staticmethod
    def record_classification(outcome: str, duration: float = None):
        """Record classifier outcome (clean, flagged, rejected, timeout, unavailable)"""
        classifications.labels(outcome=outcome).inc()
        if duration is not None:
            classification_latency.observe(duration)

    @staticmethod
    def record_policy_rejection(error: str):
        policy_rejections.labels(error=error).inc()

    @staticmethod
    def record_conflict_retry(operation: str):
        conflict_retries.labels(operation=operation).inc()

    @staticmethod
    def record_outbox_drain(count: int):
        if count:
            outbox_drained.inc(count)

    @staticmethod
    def update_queue_depth(counts: dict):
        """Update queue depth gauges from a status -> count mapping"""
        for status, depth in counts.items():
            queue_depth.labels(status=status).set(depth)


# Singleton instance
metrics = MetricsExporter(port=int(os.getenv('METRICS_PORT', '8000')))
