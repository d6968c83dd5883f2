"""Audit report artifacts.

Provides:
- AuditReportRenderer: Jinja2 HTML rendering and WeasyPrint PDF conversion
"""

from tonaudit.artifacts.pdf_renderer import AuditReportRenderer

__all__ = ["AuditReportRenderer"]
