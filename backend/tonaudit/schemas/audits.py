"""Pydantic schemas for audit requests and engine reports.

Reports arrive from the external audit engine as camelCase JSON; only the
fields the lifecycle engine needs are modeled, the rest is kept in the payload.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from tonaudit.domain.enums import AuditProfile, Severity
from tonaudit.domain.paths import finding_fingerprint


class AuditOptions(BaseModel):
    """Caller-selected knobs for a new AuditRun."""

    primary_model_id: str = "google/gemini-2.5-flash"
    fallback_model_id: str = "google/gemini-2.5-flash"
    profile: AuditProfile = AuditProfile.DEEP
    include_docs_fallback_fetch: bool = True


class FindingEvidence(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    file_path: str = Field("", alias="filePath")
    start_line: int = Field(0, alias="startLine")
    end_line: int = Field(0, alias="endLine")


class ReportedFinding(BaseModel):
    """One finding as reported by the audit engine."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    finding_id: str = Field("", alias="findingId")
    severity: Severity
    title: str = ""
    evidence: FindingEvidence = Field(default_factory=FindingEvidence)

    @property
    def stable_fingerprint(self) -> str:
        """Engine-provided id, or a deterministic hash of title/location/severity."""
        if self.finding_id:
            return self.finding_id
        return finding_fingerprint(
            title=self.title,
            file_path=self.evidence.file_path,
            start_line=self.evidence.start_line,
            end_line=self.evidence.end_line,
            severity=self.severity.value,
        )


class FindingInput(BaseModel):
    """Input tuple for the finding lifecycle engine."""

    fingerprint: str
    severity: Severity
    payload: dict[str, Any] = Field(default_factory=dict)


def findings_from_report(report_json: dict[str, Any] | None) -> list[FindingInput]:
    """Extract lifecycle inputs from a report's ``findings`` array."""
    if not report_json:
        return []

    inputs = []
    for raw in report_json.get("findings") or []:
        reported = ReportedFinding.model_validate(raw)
        inputs.append(
            FindingInput(
                fingerprint=reported.stable_fingerprint,
                severity=reported.severity,
                payload=dict(raw),
            )
        )
    return inputs
