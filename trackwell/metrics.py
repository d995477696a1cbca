from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


crm_mutations_total = Counter(
    "crm_mutations_total",
    "Total record lifecycle operations by kind, action and outcome",
    ["kind", "action", "status"],
)

crm_mutation_duration_seconds = Histogram(
    "crm_mutation_duration_seconds",
    "Record lifecycle operation duration in seconds",
    ["kind", "action"],
)

crm_permission_denied_total = Counter(
    "crm_permission_denied_total",
    "Total permission denials by kind and action",
    ["kind", "action"],
)

crm_audit_entries_total = Counter(
    "crm_audit_entries_total",
    "Total activity log entries by activity type",
    ["activity_type"],
)

crm_notifications_total = Counter(
    "crm_notifications_total",
    "Total notifications delivered by type",
    ["type"],
)

crm_notifications_suppressed_total = Counter(
    "crm_notifications_suppressed_total",
    "Total notifications suppressed as duplicates by type",
    ["type"],
)

crm_rejected_uploads_total = Counter(
    "crm_rejected_uploads_total",
    "Total uploads rejected for exceeding the size cap",
    ["kind"],
)

crm_business_rule_blocks_total = Counter(
    "crm_business_rule_blocks_total",
    "Total operations blocked by a business rule",
    ["rule"],
)


def observe_mutation(kind: str, action: str, status: str, duration_seconds: float) -> None:
    crm_mutations_total.labels(kind=kind, action=action, status=status).inc()
    crm_mutation_duration_seconds.labels(kind=kind, action=action).observe(max(duration_seconds, 0.0))


def observe_permission_denied(kind: str, action: str) -> None:
    crm_permission_denied_total.labels(kind=kind, action=action).inc()


def observe_audit_entry(activity_type: str) -> None:
    crm_audit_entries_total.labels(activity_type=activity_type).inc()


def observe_notification(notification_type: str) -> None:
    crm_notifications_total.labels(type=notification_type).inc()


def observe_notification_suppressed(notification_type: str) -> None:
    crm_notifications_suppressed_total.labels(type=notification_type).inc()


def observe_rejected_upload(kind: str, count: int = 1) -> None:
    if count > 0:
        crm_rejected_uploads_total.labels(kind=kind).inc(count)


def observe_business_rule_block(rule: str) -> None:
    crm_business_rule_blocks_total.labels(rule=rule).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
