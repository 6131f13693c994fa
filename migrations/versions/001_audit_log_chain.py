"""Create the hash-chained audit_logs table.

Database-enforced immutability: a trigger rejects every UPDATE and
DELETE on audit_logs, and unique indexes make a forked chain or a
second genesis entry impossible to insert.

Revision ID: 001_audit_log_chain
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# Revision identifiers
revision = '001_audit_log_chain'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    """Create audit_logs with its immutability trigger."""

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.BigInteger(), primary_key=True, autoincrement=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.Column('user_principal', sa.Text(), nullable=False),
        sa.Column('action', sa.Text(), nullable=False),
        sa.Column('resource_type', sa.Text(), nullable=True),
        sa.Column('resource_id', sa.Text(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=True),
        sa.Column('previous_hash', sa.String(64), nullable=False),
        sa.Column('hash', sa.String(64), nullable=False),
    )

    # Two entries sharing a previous_hash would be a fork
    op.create_index('ux_audit_logs_previous_hash', 'audit_logs', ['previous_hash'], unique=True)
    op.create_index('ix_audit_logs_resource_id', 'audit_logs', ['resource_id'])
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index(
        'ux_audit_logs_genesis',
        'audit_logs',
        ['action'],
        unique=True,
        postgresql_where=sa.text("action = 'CHAIN_GENESIS'"),
    )
    op.execute(
        "CREATE INDEX ix_audit_logs_metadata ON audit_logs USING GIN (metadata jsonb_path_ops)"
    )

    op.execute("""
        CREATE OR REPLACE FUNCTION prevent_audit_log_mutation() RETURNS TRIGGER AS $$
        BEGIN
            RAISE EXCEPTION 'Audit log entries are immutable and cannot be modified or deleted';
        END;
        $$ LANGUAGE plpgsql;
    """)

    op.execute("""
        CREATE TRIGGER audit_log_immutable
            BEFORE UPDATE OR DELETE ON audit_logs
            FOR EACH ROW EXECUTE FUNCTION prevent_audit_log_mutation();
    """)

    # TRUNCATE bypasses row triggers
    op.execute("""
        CREATE TRIGGER audit_log_no_truncate
            BEFORE TRUNCATE ON audit_logs
            FOR EACH STATEMENT EXECUTE FUNCTION prevent_audit_log_mutation();
    """)


def downgrade() -> None:
    """Drop audit_logs and its triggers."""

    op.execute("DROP TRIGGER IF EXISTS audit_log_no_truncate ON audit_logs")
    op.execute("DROP TRIGGER IF EXISTS audit_log_immutable ON audit_logs")
    op.execute("DROP FUNCTION IF EXISTS prevent_audit_log_mutation()")
    op.drop_table('audit_logs')
