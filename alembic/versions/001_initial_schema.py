"""Initial session security and audit schema

Revision ID: 001_initial
Revises: 
Create Date: 2026-10-17 00:00:00.000000

Tags: schema, initial
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import mysql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = ('schema',)
depends_on: Union[str, Sequence[str], None] = None

PreciseDateTime = sa.DateTime().with_variant(mysql.DATETIME(fsp=6), "mysql")


def upgrade() -> None:
    """
    Creates users, sessions, session preferences, session activity, login codes and audit events.
    """
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(100), nullable=False),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('role', sa.String(50), nullable=False, server_default='clinician'),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=True, server_default=sa.true()),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_username', 'users', ['username'], unique=True)
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'user_sessions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('session_token', sa.String(64), nullable=False),
        sa.Column('previous_token', sa.String(64), nullable=True),
        sa.Column('device_info', sa.String(255), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('fingerprint', sa.String(64), nullable=True),
        sa.Column('role', sa.String(50), nullable=True),
        sa.Column('csrf_token_hash', sa.String(64), nullable=True),
        sa.Column('csrf_issued_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_activity', sa.DateTime(), nullable=False),
        sa.Column('last_regenerated_at', sa.DateTime(), nullable=True),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('end_reason', sa.String(50), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
    )
    op.create_index('ix_user_sessions_id', 'user_sessions', ['id'])
    op.create_index('ix_user_sessions_user_id', 'user_sessions', ['user_id'])
    op.create_index('ix_user_sessions_session_token', 'user_sessions', ['session_token'], unique=True)
    op.create_index('ix_user_sessions_previous_token', 'user_sessions', ['previous_token'])
    op.create_index('ix_user_sessions_created_at', 'user_sessions', ['created_at'])
    op.create_index('ix_user_sessions_last_activity', 'user_sessions', ['last_activity'])
    op.create_index('ix_user_sessions_expires_at', 'user_sessions', ['expires_at'])
    op.create_index('ix_user_sessions_is_active', 'user_sessions', ['is_active'])

    op.create_table(
        'user_preferences',
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), primary_key=True),
        sa.Column('idle_timeout', sa.Integer(), nullable=False, server_default='1800'),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
    )

    op.create_table(
        'session_activity_log',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('user_sessions.id', ondelete='SET NULL'), nullable=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True),
        sa.Column('event_type', sa.String(20), nullable=False),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.String(255), nullable=True),
        sa.Column('event_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_session_activity_log_id', 'session_activity_log', ['id'])
    op.create_index('ix_session_activity_log_session_id', 'session_activity_log', ['session_id'])
    op.create_index('ix_session_activity_log_user_id', 'session_activity_log', ['user_id'])
    op.create_index('ix_session_activity_log_event_type', 'session_activity_log', ['event_type'])
    op.create_index('ix_session_activity_log_ip_address', 'session_activity_log', ['ip_address'])
    op.create_index('ix_session_activity_log_created_at', 'session_activity_log', ['created_at'])

    op.create_table(
        'login_otps',
        sa.Column('otp_id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('code_hash', sa.String(64), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('consumed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_login_otps_otp_id', 'login_otps', ['otp_id'])
    op.create_index('ix_login_otps_user_id', 'login_otps', ['user_id'])
    op.create_index('ix_login_otps_code_hash', 'login_otps', ['code_hash'])
    op.create_index('ix_login_otps_expires_at', 'login_otps', ['expires_at'])
    op.create_index('ix_login_otps_consumed', 'login_otps', ['consumed'])
    op.create_index('ix_login_otps_created_at', 'login_otps', ['created_at'])

    op.create_table(
        'audit_events',
        sa.Column('audit_id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('subject_type', sa.String(50), nullable=False),
        sa.Column('subject_id', sa.String(100), nullable=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('occurred_at', PreciseDateTime, nullable=False),
        sa.Column('source_ip', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('checksum', sa.String(64), nullable=True),
        sa.Column('flagged', sa.Boolean(), nullable=False, server_default=sa.false()),
    )
    for column in ('audit_id', 'user_id', 'subject_type', 'subject_id', 'action', 'occurred_at', 'source_ip', 'flagged'):
        op.create_index(f'ix_audit_events_{column}', 'audit_events', [column])
    op.create_index('ix_audit_events_subject', 'audit_events', ['subject_type', 'subject_id', 'occurred_at'])


def downgrade() -> None:
    op.drop_table('audit_events')
    op.drop_table('login_otps')
    op.drop_table('session_activity_log')
    op.drop_table('user_preferences')
    op.drop_table('user_sessions')
    op.drop_table('users')
