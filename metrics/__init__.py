"""
Metrics ingestion, alerting and export for Telescaler.
"""

from .store import Aggregation, MetricPoint, MetricStore, MetricStoreConfig, aggregate
from .alerts import AlertCondition, AlertEngine, AlertRule, AlertSeverity, get_default_alert_rules

__all__ = [
    'Aggregation',
    'MetricPoint',
    'MetricStore',
    'MetricStoreConfig',
    'aggregate',
    'AlertCondition',
    'AlertEngine',
    'AlertRule',
    'AlertSeverity',
    'get_default_alert_rules',
]
