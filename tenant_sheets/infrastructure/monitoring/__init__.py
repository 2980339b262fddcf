from tenant_sheets.infrastructure.monitoring.metrics_collector import MetricsCollector

__all__ = ["MetricsCollector"]
