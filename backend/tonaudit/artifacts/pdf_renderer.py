"""PDF rendering of completed audit reports using Jinja2 and WeasyPrint.

- client variant: findings with remediation, no internal verification detail
- internal variant: adds exploit paths, verification steps and engine metadata
- PDF generation runs in a thread via asyncio.to_thread()
"""

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader

from tonaudit.domain.enums import PdfExportVariant, Severity

TEMPLATE_DIR = Path(__file__).parent / "templates"

SEVERITY_ORDER = [severity.value for severity in Severity]


class AuditReportRenderer:
    """Render an AuditRun's report_json as HTML and PDF."""

    def __init__(self) -> None:
        self.env = Environment(
            loader=FileSystemLoader(str(TEMPLATE_DIR)),
            autoescape=True,
        )

    def render_html(
        self,
        report: dict[str, Any],
        variant: PdfExportVariant | str,
        project_name: str,
        audit_run: dict[str, Any],
        verification_steps: list[dict[str, Any]] | None = None,
        generated_date: str | None = None,
    ) -> str:
        variant = PdfExportVariant(variant)
        if generated_date is None:
            generated_date = datetime.now().strftime("%B %d, %Y")

        findings = sorted(
            report.get("findings") or [],
            key=lambda finding: _severity_rank(finding.get("severity", "")),
        )
        counts = {severity: 0 for severity in SEVERITY_ORDER}
        for finding in findings:
            severity = str(finding.get("severity", "")).lower()
            if severity in counts:
                counts[severity] += 1

        template = self.env.get_template("audit_report.html")
        return template.render(
            report=report,
            findings=findings,
            severity_counts=counts,
            internal=variant == PdfExportVariant.INTERNAL,
            variant=variant.value,
            project_name=project_name,
            audit_run=audit_run,
            verification_steps=verification_steps or [],
            generated_date=generated_date,
        )

    async def render_pdf(self, html_content: str) -> bytes:
        try:
            from weasyprint import HTML
            from weasyprint.text.fonts import FontConfiguration
        except ImportError as e:
            raise ImportError(
                "WeasyPrint not installed. Install with: pip install weasyprint>=68.1"
            ) from e

        font_config = FontConfiguration()
        return await asyncio.to_thread(
            lambda: HTML(string=html_content, base_url=str(TEMPLATE_DIR)).write_pdf(
                font_config=font_config,
            )
        )


def _severity_rank(severity: str) -> int:
    severity = str(severity).lower()
    return SEVERITY_ORDER.index(severity) if severity in SEVERITY_ORDER else len(SEVERITY_ORDER)
