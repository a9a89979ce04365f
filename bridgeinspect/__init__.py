"""SQLite storage, file storage, dashboard statistics and PDF reports for bridge inspections."""

__version__ = "0.1.0"
__all__ = ["database", "storage", "repositories", "stats", "report_generator"]