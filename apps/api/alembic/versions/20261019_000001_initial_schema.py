"""create credit ledger, onboarding and generation job schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=True),
        sa.Column("credit_balance", sa.Integer(), server_default="0", nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("credit_balance >= 0", name="ck_accounts_credit_balance_non_negative"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_accounts_email"), "accounts", ["email"], unique=False)

    op.create_table(
        "credit_ledger",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("reference_id", sa.String(), nullable=True),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_credit_ledger_account_id"), "credit_ledger", ["account_id"], unique=False)
    op.create_index(op.f("ix_credit_ledger_created_at"), "credit_ledger", ["created_at"], unique=False)
    op.create_index(
        "ux_credit_ledger_account_reason_reference",
        "credit_ledger",
        ["account_id", "reason", "reference_id"],
        unique=True,
    )

    op.create_table(
        "onboarding_sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("ip_hash", sa.String(), nullable=True),
        sa.Column("user_agent", sa.String(), nullable=True),
        sa.Column("claimed_by_account_id", sa.String(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["claimed_by_account_id"], ["accounts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_onboarding_sessions_status"), "onboarding_sessions", ["status"], unique=False)
    op.create_index(
        op.f("ix_onboarding_sessions_claimed_by_account_id"),
        "onboarding_sessions",
        ["claimed_by_account_id"],
        unique=False,
    )

    op.create_table(
        "onboarding_drafts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("jd_text", sa.Text(), nullable=False),
        sa.Column("jd_source_url", sa.String(), nullable=True),
        sa.Column("jd_title", sa.String(), nullable=True),
        sa.Column("jd_company", sa.String(), nullable=True),
        sa.Column("resume_bucket", sa.String(), nullable=False),
        sa.Column("resume_object_path", sa.String(), nullable=False),
        sa.Column("resume_original_filename", sa.String(), nullable=True),
        sa.Column("resume_mime_type", sa.String(), nullable=True),
        sa.Column("resume_size_bytes", sa.Integer(), nullable=True),
        sa.Column("resume_extracted_text", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["session_id"], ["onboarding_sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_onboarding_drafts_session_id"), "onboarding_drafts", ["session_id"], unique=False)
    op.create_index(
        op.f("ix_onboarding_drafts_resume_object_path"),
        "onboarding_drafts",
        ["resume_object_path"],
        unique=False,
    )
    op.create_index(op.f("ix_onboarding_drafts_created_at"), "onboarding_drafts", ["created_at"], unique=False)

    op.create_table(
        "generation_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("account_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("progress", sa.Integer(), nullable=False),
        sa.Column("progress_stage", sa.String(), nullable=False),
        sa.Column("mode", sa.String(), nullable=False),
        sa.Column("jd_text", sa.Text(), nullable=False),
        sa.Column("resume_reference", sa.String(), nullable=False),
        sa.Column("resume_text", sa.Text(), nullable=True),
        sa.Column("session_id", sa.String(), nullable=True),
        sa.Column("draft_id", sa.String(), nullable=True),
        sa.Column("result_artifact_ref", sa.String(), nullable=True),
        sa.Column("error_message", sa.String(), nullable=True),
        sa.Column("queue_job_id", sa.String(), nullable=True),
        sa.Column("lock_id", sa.String(), nullable=True),
        sa.Column("billing_status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["session_id"], ["onboarding_sessions.id"]),
        sa.ForeignKeyConstraint(["draft_id"], ["onboarding_drafts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_generation_jobs_account_id"), "generation_jobs", ["account_id"], unique=False)
    op.create_index(op.f("ix_generation_jobs_status"), "generation_jobs", ["status"], unique=False)
    op.create_index(op.f("ix_generation_jobs_session_id"), "generation_jobs", ["session_id"], unique=False)
    op.create_index(op.f("ix_generation_jobs_queue_job_id"), "generation_jobs", ["queue_job_id"], unique=False)
    op.create_index(op.f("ix_generation_jobs_created_at"), "generation_jobs", ["created_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_generation_jobs_created_at"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_queue_job_id"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_session_id"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_status"), table_name="generation_jobs")
    op.drop_index(op.f("ix_generation_jobs_account_id"), table_name="generation_jobs")
    op.drop_table("generation_jobs")

    op.drop_index(op.f("ix_onboarding_drafts_created_at"), table_name="onboarding_drafts")
    op.drop_index(op.f("ix_onboarding_drafts_resume_object_path"), table_name="onboarding_drafts")
    op.drop_index(op.f("ix_onboarding_drafts_session_id"), table_name="onboarding_drafts")
    op.drop_table("onboarding_drafts")

    op.drop_index(op.f("ix_onboarding_sessions_claimed_by_account_id"), table_name="onboarding_sessions")
    op.drop_index(op.f("ix_onboarding_sessions_status"), table_name="onboarding_sessions")
    op.drop_table("onboarding_sessions")

    op.drop_index("ux_credit_ledger_account_reason_reference", table_name="credit_ledger")
    op.drop_index(op.f("ix_credit_ledger_created_at"), table_name="credit_ledger")
    op.drop_index(op.f("ix_credit_ledger_account_id"), table_name="credit_ledger")
    op.drop_table("credit_ledger")

    op.drop_index(op.f("ix_accounts_email"), table_name="accounts")
    op.drop_table("accounts")
