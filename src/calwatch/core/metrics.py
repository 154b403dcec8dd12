"""Prometheus metrics for the reconciliation and renewal paths.

Metrics exported:
- calwatch_notifications_total: inbound webhook notifications by outcome
- calwatch_dispatches_total: reminder/invite dispatches by kind and status
- calwatch_channel_renewals_total: channel renewal attempts by status
- calwatch_channel_stops_total: watch-channel stop requests by result
"""

from __future__ import annotations

from prometheus_client import Counter

notifications_total = Counter(
    "calwatch_notifications_total",
    "Total number of inbound calendar change notifications",
    labelnames=["outcome"],
)

dispatches_total = Counter(
    "calwatch_dispatches_total",
    "Total number of reminder and invite dispatches",
    labelnames=["kind", "status"],
)

channel_renewals_total = Counter(
    "calwatch_channel_renewals_total",
    "Total number of watch-channel renewal attempts",
    labelnames=["status"],
)

channel_stops_total = Counter(
    "calwatch_channel_stops_total",
    "Total number of watch-channel stop requests",
    labelnames=["result"],
)


def record_notification(outcome: str) -> None:
    notifications_total.labels(outcome=outcome).inc()


def record_dispatch(kind: str, status: str) -> None:
    dispatches_total.labels(kind=kind, status=status).inc()


def record_renewal(status: str) -> None:
    channel_renewals_total.labels(status=status).inc()


def record_stop(result: str) -> None:
    channel_stops_total.labels(result=result).inc()
