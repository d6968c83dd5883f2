"""Deterministic job ids: one id per logical unit of work.

Re-enqueueing the same unit of work produces the same id, which the queue
deduplicates.
"""

import hashlib
from uuid import UUID

from tonaudit.domain.enums import PdfExportVariant


def ingest_job_id(revision_id: UUID | str) -> str:
    return f"ingest:{revision_id}"


def verify_job_id(audit_run_id: UUID | str) -> str:
    return f"verify:{audit_run_id}"


def audit_job_id(audit_run_id: UUID | str) -> str:
    return f"audit:{audit_run_id}"


def finding_lifecycle_job_id(audit_run_id: UUID | str) -> str:
    return f"finding-lifecycle:{audit_run_id}"


def pdf_job_id(audit_run_id: UUID | str, variant: PdfExportVariant | str) -> str:
    return f"pdf:{audit_run_id}:{PdfExportVariant(variant).value}"


def docs_crawl_job_id(seed_sitemap_url: str) -> str:
    digest = hashlib.sha256(seed_sitemap_url.encode("utf-8")).hexdigest()[:16]
    return f"docs-crawl:{digest}"


def docs_index_job_id(source_id: UUID | str) -> str:
    return f"docs-index:{source_id}"


def cleanup_job_id(run_date: str) -> str:
    """One cleanup per day, e.g. cleanup_job_id("2026-10-19")."""
    return f"cleanup:{run_date}"
