# Services module

from app.services.counting_errors import CountingError
from app.services.counting_audit_service import CountingAuditService, CountingEventType
from app.services.scope_resolver import ScopeResolver, normalize_scope
from app.services.counting_session_service import (
    CountingSessionService,
    transition_session,
)
from app.services.counting_reconciliation_service import (
    CountingReconciliationService,
    CountingReconciliationConfig,
    decide_resolution,
)
from app.services.blind_count_service import BlindCountService
from app.services.discrepancy_report_service import DiscrepancyReportService
from app.services.counting_export_service import CountingExportService

__all__ = [
    # Errors
    "CountingError",
    # Audit
    "CountingAuditService",
    "CountingEventType",
    # Sessions
    "ScopeResolver",
    "normalize_scope",
    "CountingSessionService",
    "transition_session",
    # Reconciliation
    "CountingReconciliationService",
    "CountingReconciliationConfig",
    "decide_resolution",
    # Counting
    "BlindCountService",
    # Reports
    "DiscrepancyReportService",
    "CountingExportService",
]
