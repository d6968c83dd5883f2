"""create audit core tables

Revision ID: 3f2a9c71d0b4
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3f2a9c71d0b4"
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ENUMS = {
    "project_lifecycle_state": ("initializing", "ready", "deleted"),
    "upload_type": ("file-set", "zip"),
    "upload_status": ("initialized", "uploaded", "processing", "processed", "failed"),
    "revision_source": ("upload", "working-copy"),
    "working_copy_status": ("active", "locked", "discarded"),
    "language": ("tolk", "func", "tact", "fift", "tl-b", "unknown"),
    "audit_run_status": ("queued", "running", "completed", "failed", "cancelled"),
    "audit_profile": ("fast", "deep"),
    "verification_step_status": ("queued", "running", "completed", "failed", "skipped"),
    "finding_transition": ("opened", "resolved", "regressed", "unchanged"),
    "pdf_export_status": ("queued", "running", "completed", "failed"),
    "pdf_export_variant": ("client", "internal"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def _created_at() -> sa.Column:
    return sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))


def upgrade() -> None:
    """Create the audit core schema: enums, tables, and partial unique indexes."""
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        "projects",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("owner_user_id", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("slug", sa.String(length=140), nullable=False),
        sa.Column("lifecycle_state", _enum("project_lifecycle_state"), nullable=False, server_default="initializing"),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_projects_owner_user_id"), "projects", ["owner_user_id"], unique=False)
    op.create_index(
        "projects_owner_slug_live_unique",
        "projects",
        ["owner_user_id", "slug"],
        unique=True,
        postgresql_where=sa.text("deleted_at IS NULL"),
    )

    op.create_table(
        "uploads",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("project_id", _uuid(), nullable=False),
        sa.Column("uploader_user_id", sa.String(length=255), nullable=False),
        sa.Column("type", _enum("upload_type"), nullable=False),
        sa.Column("status", _enum("upload_status"), nullable=False, server_default="initialized"),
        sa.Column("storage_key", sa.Text(), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("content_type", sa.String(length=255), nullable=False),
        sa.Column("original_filename", sa.Text(), nullable=False),
        sa.Column("metadata", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_uploads_project_id"), "uploads", ["project_id"], unique=False)

    op.create_table(
        "file_blobs",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("sha256", sa.String(length=64), nullable=False),
        sa.Column("size_bytes", sa.Integer(), nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("content_type", sa.String(length=255), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sha256"),
    )

    op.create_table(
        "revisions",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("project_id", _uuid(), nullable=False),
        sa.Column("parent_revision_id", _uuid(), nullable=True),
        sa.Column("source", _enum("revision_source"), nullable=False),
        sa.Column("created_by_user_id", sa.String(length=255), nullable=False),
        sa.Column("is_immutable", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("description", sa.Text(), nullable=True),
        _created_at(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_revisions_project_id"), "revisions", ["project_id"], unique=False)
    op.create_index(op.f("ix_revisions_parent_revision_id"), "revisions", ["parent_revision_id"], unique=False)

    op.create_table(
        "revision_files",
        sa.Column("revision_id", _uuid(), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("blob_id", _uuid(), nullable=False),
        sa.Column("language", _enum("language"), nullable=False, server_default="unknown"),
        sa.Column("is_test_file", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.ForeignKeyConstraint(["revision_id"], ["revisions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["blob_id"], ["file_blobs.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("revision_id", "path"),
    )
    op.create_index(op.f("ix_revision_files_blob_id"), "revision_files", ["blob_id"], unique=False)

    op.create_table(
        "working_copies",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("project_id", _uuid(), nullable=False),
        sa.Column("base_revision_id", _uuid(), nullable=False),
        sa.Column("owner_user_id", sa.String(length=255), nullable=False),
        sa.Column("status", _enum("working_copy_status"), nullable=False, server_default="active"),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["base_revision_id"], ["revisions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_working_copies_project_id"), "working_copies", ["project_id"], unique=False)
    op.create_index(
        "working_copies_active_unique",
        "working_copies",
        ["project_id", "base_revision_id", "owner_user_id"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "working_copy_files",
        sa.Column("working_copy_id", _uuid(), nullable=False),
        sa.Column("path", sa.Text(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("language", _enum("language"), nullable=False, server_default="unknown"),
        sa.Column("is_test_file", sa.Boolean(), nullable=False, server_default=sa.false()),
        _updated_at(),
        sa.ForeignKeyConstraint(["working_copy_id"], ["working_copies.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("working_copy_id", "path"),
    )

    op.create_table(
        "audit_runs",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("project_id", _uuid(), nullable=False),
        sa.Column("revision_id", _uuid(), nullable=False),
        sa.Column("status", _enum("audit_run_status"), nullable=False, server_default="queued"),
        sa.Column("requested_by_user_id", sa.String(length=255), nullable=False),
        sa.Column("primary_model_id", sa.String(length=255), nullable=False),
        sa.Column("fallback_model_id", sa.String(length=255), nullable=False),
        sa.Column("profile", _enum("audit_profile"), nullable=False, server_default="deep"),
        sa.Column("engine_version", sa.String(length=100), nullable=False),
        sa.Column("report_schema_version", sa.Integer(), nullable=False),
        sa.Column("report_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["revision_id"], ["revisions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_audit_runs_project_id"), "audit_runs", ["project_id"], unique=False)
    op.create_index(op.f("ix_audit_runs_revision_id"), "audit_runs", ["revision_id"], unique=False)
    op.create_index(
        "audit_runs_project_completion_idx", "audit_runs", ["project_id", "status", "finished_at"], unique=False
    )
    op.create_index(
        "audit_runs_active_project_unique",
        "audit_runs",
        ["project_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('queued', 'running')"),
    )

    op.create_table(
        "verification_steps",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("audit_run_id", _uuid(), nullable=False),
        sa.Column("step_type", sa.String(length=100), nullable=False),
        sa.Column("toolchain", sa.String(length=100), nullable=False),
        sa.Column("status", _enum("verification_step_status"), nullable=False, server_default="queued"),
        sa.Column("stdout_key", sa.Text(), nullable=True),
        sa.Column("stderr_key", sa.Text(), nullable=True),
        sa.Column("summary", sa.Text(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["audit_run_id"], ["audit_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_verification_steps_audit_run_id"), "verification_steps", ["audit_run_id"], unique=False)

    op.create_table(
        "findings",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("project_id", _uuid(), nullable=False),
        sa.Column("stable_fingerprint", sa.String(length=255), nullable=False),
        sa.Column("first_seen_revision_id", _uuid(), nullable=False),
        sa.Column("last_seen_revision_id", _uuid(), nullable=False),
        sa.Column("current_status", _enum("finding_transition"), nullable=False, server_default="opened"),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["first_seen_revision_id"], ["revisions.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["last_seen_revision_id"], ["revisions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "stable_fingerprint", name="findings_project_fingerprint_unique"),
    )
    op.create_index(op.f("ix_findings_project_id"), "findings", ["project_id"], unique=False)

    op.create_table(
        "finding_instances",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("finding_id", _uuid(), nullable=False),
        sa.Column("audit_run_id", _uuid(), nullable=False),
        sa.Column("revision_id", _uuid(), nullable=False),
        sa.Column("severity", sa.String(length=32), nullable=False),
        sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        _created_at(),
        sa.ForeignKeyConstraint(["finding_id"], ["findings.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["audit_run_id"], ["audit_runs.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["revision_id"], ["revisions.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("finding_id", "audit_run_id", name="finding_instances_finding_run_unique"),
    )
    op.create_index(op.f("ix_finding_instances_audit_run_id"), "finding_instances", ["audit_run_id"], unique=False)

    op.create_table(
        "finding_transitions",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("finding_id", _uuid(), nullable=False),
        sa.Column("from_audit_run_id", _uuid(), nullable=False),
        sa.Column("to_audit_run_id", _uuid(), nullable=False),
        sa.Column("transition", _enum("finding_transition"), nullable=False),
        _created_at(),
        sa.ForeignKeyConstraint(["finding_id"], ["findings.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["from_audit_run_id"], ["audit_runs.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["to_audit_run_id"], ["audit_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "finding_id", "from_audit_run_id", "to_audit_run_id", name="finding_transitions_edge_unique"
        ),
    )
    op.create_index(op.f("ix_finding_transitions_finding_id"), "finding_transitions", ["finding_id"], unique=False)
    op.create_index(
        op.f("ix_finding_transitions_to_audit_run_id"), "finding_transitions", ["to_audit_run_id"], unique=False
    )

    op.create_table(
        "pdf_exports",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("audit_run_id", _uuid(), nullable=False),
        sa.Column("variant", _enum("pdf_export_variant"), nullable=False, server_default="internal"),
        sa.Column("status", _enum("pdf_export_status"), nullable=False, server_default="queued"),
        sa.Column("requested_by_user_id", sa.String(length=255), nullable=True),
        sa.Column("storage_key", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("generated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        _updated_at(),
        sa.ForeignKeyConstraint(["audit_run_id"], ["audit_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("audit_run_id", "variant", name="pdf_exports_run_variant_unique"),
    )

    op.create_table(
        "job_events",
        sa.Column("id", _uuid(), nullable=False),
        sa.Column("project_id", _uuid(), nullable=True),
        sa.Column("queue", sa.String(length=64), nullable=False),
        sa.Column("job_id", sa.String(length=255), nullable=False),
        sa.Column("event", sa.String(length=32), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        _created_at(),
        sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_job_events_project_id"), "job_events", ["project_id"], unique=False)
    op.create_index("job_events_job_created_idx", "job_events", ["job_id", "created_at"], unique=False)


def downgrade() -> None:
    """Drop the audit core schema."""
    for table in (
        "job_events",
        "pdf_exports",
        "finding_transitions",
        "finding_instances",
        "findings",
        "verification_steps",
        "audit_runs",
        "working_copy_files",
        "working_copies",
        "revision_files",
        "revisions",
        "file_blobs",
        "uploads",
        "projects",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
