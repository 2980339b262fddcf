"""
Application Services Package
=============================

SheetsService is the facade route handlers and jobs call. It owns no
infrastructure of its own: the composition root
(``tenant_sheets.application.container``) builds the components and hands
them in.
"""

from .sheets_service import HealthReport, ServiceMetrics, SheetsService, row_number_of

__all__ = ["HealthReport", "ServiceMetrics", "SheetsService", "row_number_of"]
