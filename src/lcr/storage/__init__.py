"""
Report persistence (aiosqlite).
"""

from lcr.storage.report_store import ReportPage, ReportRepository, ReportStore, StoredReport

__all__ = [
    "ReportPage",
    "ReportRepository",
    "ReportStore",
    "StoredReport",
]
