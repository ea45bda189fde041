"""scan_job, finding and tenant_quota tables

Revision ID: i1_initial_schema
Revises:
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa

revision = 'i1_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ── scan_job: one row per (scan_id, scanner_id) ──
    op.create_table(
        'scan_job',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('scan_id', sa.String(128), nullable=False),
        sa.Column('scanner_id', sa.String(64), nullable=False),
        sa.Column('tenant', sa.String(64), nullable=False, server_default='default'),
        sa.Column('source_digest', sa.String(64), nullable=False),
        sa.Column('source_bytes', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('bundle_name', sa.String(63), nullable=False),
        sa.Column('unit_name', sa.String(63), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='queued'),
        sa.Column('reason', sa.String(40), nullable=True),
        sa.Column('diagnostic', sa.Text(), nullable=True),
        sa.Column('counts_json', sa.JSON(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('exit_code', sa.Integer(), nullable=True),
        sa.Column('submitted_at', sa.DateTime(), nullable=False),
        sa.Column('dispatched_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('deadline_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('collected_at', sa.DateTime(), nullable=True),
        sa.Column('terminal_state', sa.String(20), nullable=True),
        sa.Column('quota_released_at', sa.DateTime(), nullable=True),
        sa.Column('cleaned_up_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('scan_id', 'scanner_id', name='uq_scan_job_scan_scanner'),
    )
    op.create_index('ix_scan_job_scan_id', 'scan_job', ['scan_id'])
    op.create_index('ix_scan_job_tenant', 'scan_job', ['tenant'])
    op.create_index('ix_scan_job_status', 'scan_job', ['status'])
    op.create_index('ix_scan_job_collected_at', 'scan_job', ['collected_at'])

    # ── finding: database results sink ──
    op.create_table(
        'finding',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('scan_job_id', sa.Integer(), sa.ForeignKey('scan_job.id', ondelete='CASCADE'), nullable=False),
        sa.Column('scan_id', sa.String(128), nullable=False),
        sa.Column('scanner_id', sa.String(64), nullable=False),
        sa.Column('dedupe_key', sa.String(64), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('severity', sa.String(20), nullable=False),
        sa.Column('description', sa.String(4000), nullable=False, server_default=''),
        sa.Column('rule_id', sa.String(120), nullable=True),
        sa.Column('file_path', sa.String(500), nullable=True),
        sa.Column('line', sa.Integer(), nullable=True),
        sa.Column('raw_evidence', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('scan_job_id', 'dedupe_key', name='uq_finding_job_dedupe'),
    )
    op.create_index('ix_finding_scan_job_id', 'finding', ['scan_job_id'])
    op.create_index('ix_finding_scan_id', 'finding', ['scan_id'])

    # ── tenant_quota: in-flight units per tenant ──
    op.create_table(
        'tenant_quota',
        sa.Column('tenant', sa.String(64), primary_key=True),
        sa.Column('in_flight', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_in_flight', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )


def downgrade():
    op.drop_table('tenant_quota')

    op.drop_index('ix_finding_scan_id', table_name='finding')
    op.drop_index('ix_finding_scan_job_id', table_name='finding')
    op.drop_table('finding')

    op.drop_index('ix_scan_job_collected_at', table_name='scan_job')
    op.drop_index('ix_scan_job_status', table_name='scan_job')
    op.drop_index('ix_scan_job_tenant', table_name='scan_job')
    op.drop_index('ix_scan_job_scan_id', table_name='scan_job')
    op.drop_table('scan_job')
