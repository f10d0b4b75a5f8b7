"""create pipeline tables

Revision ID: 3c9e1f27a4b8
Revises:
Create Date: 2026-10-12 09:41:17.204315

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '3c9e1f27a4b8'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('user_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('username', sa.String(255), nullable=False, unique=True),
        sa.Column('email', sa.String(255), unique=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
    )

    op.create_table(
        'projects',
        sa.Column('project_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('users.user_id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('source_url', sa.String(2048), nullable=True),
        sa.Column('target_framework', sa.String(100), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('pipeline_step', sa.String(100), nullable=True),
        sa.Column('checkpoint', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('left_analysis_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('right_analysis_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('confidence_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('error_context', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('current_slice_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('build_job_id', sa.String(100), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False),
    )
    op.create_index('idx_user_projects', 'projects', ['user_id', 'created_at'])
    op.create_index('idx_projects_status', 'projects', ['status'])

    op.create_table(
        'vertical_slices',
        sa.Column('slice_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('projects.project_id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('dependencies', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('confidence_score', sa.Float(), nullable=False, server_default='0'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('code_contract', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('behavioral_contract', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(), nullable=False),
    )
    op.create_index('idx_slices_project_priority', 'vertical_slices', ['project_id', 'priority'])

    op.create_table(
        'agent_events',
        sa.Column('event_id', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('project_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('projects.project_id', ondelete='CASCADE'), nullable=False),
        sa.Column('slice_id', postgresql.UUID(as_uuid=True),
                  sa.ForeignKey('vertical_slices.slice_id', ondelete='SET NULL'), nullable=True),
        sa.Column('event_type', sa.String(30), nullable=False),
        sa.Column('content', sa.Text(), nullable=False, server_default=''),
        sa.Column('metadata', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('confidence_delta', sa.Float(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
    )
    op.create_index('idx_events_project_created', 'agent_events',
                    ['project_id', 'created_at', 'event_id'])

    op.create_table(
        'pipeline_jobs',
        sa.Column('job_id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('job_type', sa.String(30), nullable=False),
        sa.Column('project_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('next_attempt_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('worker_id', sa.String(100), nullable=True),
        sa.Column('heartbeat_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('dedupe_key', sa.String(255), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(), nullable=False),
        sa.Column('started_at', sa.TIMESTAMP(), nullable=True),
        sa.Column('completed_at', sa.TIMESTAMP(), nullable=True),
    )
    op.create_index('idx_pipeline_jobs_status_created', 'pipeline_jobs', ['status', 'created_at'])
    op.create_index('idx_pipeline_jobs_project_status', 'pipeline_jobs', ['project_id', 'status'])
    op.create_index('idx_pipeline_jobs_dedupe', 'pipeline_jobs', ['dedupe_key', 'status'])


def downgrade() -> None:
    op.drop_index('idx_pipeline_jobs_dedupe', table_name='pipeline_jobs')
    op.drop_index('idx_pipeline_jobs_project_status', table_name='pipeline_jobs')
    op.drop_index('idx_pipeline_jobs_status_created', table_name='pipeline_jobs')
    op.drop_table('pipeline_jobs')
    op.drop_index('idx_events_project_created', table_name='agent_events')
    op.drop_table('agent_events')
    op.drop_index('idx_slices_project_priority', table_name='vertical_slices')
    op.drop_table('vertical_slices')
    op.drop_index('idx_projects_status', table_name='projects')
    op.drop_index('idx_user_projects', table_name='projects')
    op.drop_table('projects')
    op.drop_table('users')
