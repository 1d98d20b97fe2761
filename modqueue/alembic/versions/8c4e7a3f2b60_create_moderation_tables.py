"""create_moderation_tables

Revision ID: 8c4e7a3f2b60
Revises: 5b1f0c2d9a11
Create Date: 2026-09-28 10:40:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '8c4e7a3f2b60'
down_revision: Union[str, None] = '5b1f0c2d9a11'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

target_type = sa.Enum('model_profile', 'model_gallery', 'model_cover', 'ppv_content', 'chat_media', 'onboarding', name='moderation_target_type')
scan_status = sa.Enum('pending_scan', 'scanning', 'approved', 'pending_review', 'rejected', 'failed', name='moderation_scan_status')
review_action = sa.Enum('approved', 'rejected', 'escalated', name='moderation_review_action')
job_type = sa.Enum('model_onboarding', 'content_upload', 'bulk_rescan', name='moderation_job_type')
job_status = sa.Enum('queued', 'processing', 'completed', 'failed', 'cancelled', name='moderation_job_status')
actor_type = sa.Enum('system', 'admin', 'moderator', name='moderation_actor_type')


def upgrade() -> None:
    op.create_table('moderation_scans',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('target_type', target_type, nullable=False),
        sa.Column('target_id', sa.String(), nullable=False),
        sa.Column('model_id', sa.Uuid(), nullable=True),
        sa.Column('creator_id', sa.Uuid(), nullable=False),
        sa.Column('storage_key', sa.String(), nullable=False),
        sa.Column('storage_url', sa.String(), nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('status', scan_status, nullable=False),
        sa.Column('flags', sa.JSON(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('detected_faces', sa.Integer(), nullable=True),
        sa.Column('face_consistency_score', sa.Integer(), nullable=True),
        sa.Column('celebrity_risk_score', sa.Integer(), nullable=True),
        sa.Column('real_person_risk_score', sa.Integer(), nullable=True),
        sa.Column('deepfake_risk_score', sa.Integer(), nullable=True),
        sa.Column('minor_risk_score', sa.Integer(), nullable=True),
        sa.Column('staff_summary', sa.Text(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('scan_model', sa.String(), nullable=True),
        sa.Column('scan_duration_ms', sa.Integer(), nullable=True),
        sa.Column('reviewed_by', sa.Uuid(), nullable=True),
        sa.Column('review_action', review_action, nullable=True),
        sa.Column('review_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('scan_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scan_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['model_id'], ['creator_models.id'], ),
        sa.ForeignKeyConstraint(['creator_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['reviewed_by'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_moderation_scans_target_id'), 'moderation_scans', ['target_id'], unique=False)
    op.create_index(op.f('ix_moderation_scans_model_id'), 'moderation_scans', ['model_id'], unique=False)
    op.create_index(op.f('ix_moderation_scans_creator_id'), 'moderation_scans', ['creator_id'], unique=False)
    op.create_index(op.f('ix_moderation_scans_status'), 'moderation_scans', ['status'], unique=False)

    op.create_table('model_anchors',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('model_id', sa.Uuid(), nullable=False),
        sa.Column('storage_key', sa.String(), nullable=False),
        sa.Column('storage_url', sa.String(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('added_by', sa.Uuid(), nullable=True),
        sa.Column('note', sa.Text(), nullable=True),
        sa.Column('source_scan_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deactivated_by', sa.Uuid(), nullable=True),
        sa.ForeignKeyConstraint(['model_id'], ['creator_models.id'], ),
        sa.ForeignKeyConstraint(['added_by'], ['users.id'], ),
        sa.ForeignKeyConstraint(['deactivated_by'], ['users.id'], ),
        sa.ForeignKeyConstraint(['source_scan_id'], ['moderation_scans.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_model_anchors_model_id'), 'model_anchors', ['model_id'], unique=False)

    op.create_table('moderation_jobs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('job_type', job_type, nullable=False),
        sa.Column('scan_id', sa.Uuid(), nullable=True),
        sa.Column('scan_ids', sa.JSON(), nullable=False),
        sa.Column('status', job_status, nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False),
        sa.Column('worker_id', sa.String(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('max_attempts', sa.Integer(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['scan_id'], ['moderation_scans.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_moderation_jobs_scan_id'), 'moderation_jobs', ['scan_id'], unique=False)
    op.create_index(op.f('ix_moderation_jobs_status'), 'moderation_jobs', ['status'], unique=False)
    # Claim query: queued jobs by priority, then age
    op.create_index('ix_moderation_jobs_queue_order', 'moderation_jobs', ['status', 'priority', 'created_at'], unique=False)

    op.create_table('moderation_audit_log',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('scan_id', sa.Uuid(), nullable=True),
        sa.Column('model_id', sa.Uuid(), nullable=True),
        sa.Column('creator_id', sa.Uuid(), nullable=True),
        sa.Column('actor_id', sa.Uuid(), nullable=True),
        sa.Column('actor_type', actor_type, nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('previous_status', sa.String(), nullable=True),
        sa.Column('new_status', sa.String(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_moderation_audit_log_scan_id'), 'moderation_audit_log', ['scan_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_moderation_audit_log_scan_id'), table_name='moderation_audit_log')
    op.drop_table('moderation_audit_log')
    op.drop_index('ix_moderation_jobs_queue_order', table_name='moderation_jobs')
    op.drop_index(op.f('ix_moderation_jobs_status'), table_name='moderation_jobs')
    op.drop_index(op.f('ix_moderation_jobs_scan_id'), table_name='moderation_jobs')
    op.drop_table('moderation_jobs')
    op.drop_index(op.f('ix_model_anchors_model_id'), table_name='model_anchors')
    op.drop_table('model_anchors')
    op.drop_index(op.f('ix_moderation_scans_status'), table_name='moderation_scans')
    op.drop_index(op.f('ix_moderation_scans_creator_id'), table_name='moderation_scans')
    op.drop_index(op.f('ix_moderation_scans_model_id'), table_name='moderation_scans')
    op.drop_index(op.f('ix_moderation_scans_target_id'), table_name='moderation_scans')
    op.drop_table('moderation_scans')
    bind = op.get_bind()
    for enum in (actor_type, job_status, job_type, review_action, scan_status, target_type):
        enum.drop(bind, checkfirst=True)
