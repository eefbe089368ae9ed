"""
Vidya Prometheus metrics — exported at /metrics by main.py.
"""
from __future__ import annotations

from prometheus_client import Counter

SUBMISSIONS = Counter(
    "vidya_submissions_total",
    "Video submissions by resulting state",
    ["state"],
)
MODERATION_DECISIONS = Counter(
    "vidya_moderation_decisions_total",
    "Moderation decisions by outcome",
    ["outcome"],
)
ENGAGEMENT_WRITES = Counter(
    "vidya_engagement_writes_total",
    "Engagement writes by kind and result",
    ["kind", "result"],
)
NOTIFICATIONS_DELIVERED = Counter(
    "vidya_notifications_delivered_total",
    "Notifications persisted by kind",
    ["kind"],
)
NOTIFICATIONS_FAILED = Counter(
    "vidya_notifications_failed_total",
    "Notification deliveries dropped after a failure",
    ["kind"],
)
