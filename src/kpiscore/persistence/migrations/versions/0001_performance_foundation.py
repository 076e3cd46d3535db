"""Performance foundation: subjects, indicators and score_records tables.

Revision ID: 0001
Revises:
Create Date: 2026-10-19

- subjects: people scored and acting, keyed per organization
- indicators: weighted KPI definitions per indicator role
- score_records: one row per (subject, indicator, month, year)
"""

from alembic import op

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create tables and indexes."""

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS subjects (
            org_id TEXT NOT NULL,
            subject_id TEXT NOT NULL,
            name TEXT NOT NULL,
            role TEXT NOT NULL,
            department TEXT NOT NULL,
            active BOOLEAN NOT NULL DEFAULT TRUE,
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ,
            PRIMARY KEY (org_id, subject_id),
            CONSTRAINT ck_subjects_role
                CHECK (role IN ('EMPLOYEE', 'DIVISION_HEAD', 'ADMINISTRATOR'))
        )
        """
    )

    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_subjects_org_department
        ON subjects (org_id, department)
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS indicators (
            indicator_id TEXT PRIMARY KEY,
            org_id TEXT NOT NULL,
            name TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            weight DOUBLE PRECISION NOT NULL,
            kind TEXT NOT NULL,
            unit TEXT NOT NULL DEFAULT '',
            target_value DOUBLE PRECISION NOT NULL,
            role TEXT NOT NULL,
            category TEXT NOT NULL,
            active BOOLEAN NOT NULL DEFAULT TRUE,
            created_by TEXT,
            last_modified_by TEXT,
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ,
            CONSTRAINT ck_indicators_weight CHECK (weight >= 0 AND weight <= 100),
            CONSTRAINT ck_indicators_target CHECK (target_value > 0),
            CONSTRAINT ck_indicators_kind CHECK (kind IN ('quantitative', 'qualitative')),
            CONSTRAINT ck_indicators_role
                CHECK (role IN ('HQ_STAFF', 'FIELD_UNIT', 'DIVISION_HEAD'))
        )
        """
    )

    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_indicators_org_role_active
        ON indicators (org_id, role, active)
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS score_records (
            score_id TEXT PRIMARY KEY,
            org_id TEXT NOT NULL,
            subject_id TEXT NOT NULL,
            indicator_id TEXT NOT NULL REFERENCES indicators (indicator_id),
            value DOUBLE PRECISION NOT NULL,
            target_snapshot DOUBLE PRECISION NOT NULL,
            month TEXT NOT NULL,
            month_ordinal SMALLINT NOT NULL,
            year INTEGER NOT NULL,
            period TEXT NOT NULL,
            final_score DOUBLE PRECISION NOT NULL,
            kind TEXT NOT NULL,
            evaluated_by TEXT,
            notes TEXT NOT NULL DEFAULT '',
            source TEXT NOT NULL DEFAULT 'manual',
            verified BOOLEAN NOT NULL DEFAULT FALSE,
            verified_by TEXT,
            verified_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ,
            CONSTRAINT ck_score_records_value CHECK (value >= 0),
            CONSTRAINT ck_score_records_final CHECK (final_score >= 0 AND final_score <= 100),
            CONSTRAINT ck_score_records_year CHECK (year >= 2020 AND year <= 2030),
            CONSTRAINT ck_score_records_month_ordinal
                CHECK (month_ordinal >= 1 AND month_ordinal <= 12)
        )
        """
    )

    op.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS ux_score_records_subject_indicator_period
        ON score_records (org_id, subject_id, indicator_id, month, year)
        """
    )

    op.execute(
        """
        CREATE INDEX IF NOT EXISTS ix_score_records_org_period
        ON score_records (org_id, year, month_ordinal)
        """
    )


def downgrade() -> None:
    """Drop all tables created by this revision."""

    op.execute("DROP INDEX IF EXISTS ix_score_records_org_period")
    op.execute("DROP INDEX IF EXISTS ux_score_records_subject_indicator_period")
    op.execute("DROP TABLE IF EXISTS score_records")

    op.execute("DROP INDEX IF EXISTS ix_indicators_org_role_active")
    op.execute("DROP TABLE IF EXISTS indicators")

    op.execute("DROP INDEX IF EXISTS ix_subjects_org_department")
    op.execute("DROP TABLE IF EXISTS subjects")
