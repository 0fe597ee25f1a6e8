"""Create security core tables

Revision ID: 20261018090000
Revises:
Create Date: 2026-10-18 09:00:00

This migration adds:
- users: identity with typed admin / active / MFA columns
- user_sessions: hashed opaque session tokens with both timeouts
- mfa_backup_codes: hashed single-use codes, unique per user
- failed_login_attempts: lockout window source
- security_audit_log / admin_audit_log: append-only event records
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '20261018090000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the security core schema."""

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('hashed_password', sa.String(128), nullable=False),
        sa.Column('name', sa.String(200), nullable=True),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('mfa_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('mfa_secret', sa.String(64), nullable=True),
        sa.Column('mfa_enrolled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_mfa_challenge', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('last_login', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'user_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('token_hash', sa.String(64), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_activity', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('mfa_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_user_sessions_id', 'user_sessions', ['id'])
    op.create_index('ix_user_sessions_token_hash', 'user_sessions', ['token_hash'], unique=True)
    op.create_index('ix_user_sessions_user_id', 'user_sessions', ['user_id'])
    op.create_index('ix_user_sessions_user_expires', 'user_sessions', ['user_id', 'expires_at'])
    op.create_index('ix_user_sessions_last_activity', 'user_sessions', ['last_activity'])

    op.create_table(
        'mfa_backup_codes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('code_hash', sa.String(64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('user_id', 'code_hash', name='uq_mfa_backup_codes_user_code'),
    )
    op.create_index('ix_mfa_backup_codes_id', 'mfa_backup_codes', ['id'])
    op.create_index('ix_mfa_backup_codes_user_id', 'mfa_backup_codes', ['user_id'])

    op.create_table(
        'failed_login_attempts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(320), nullable=False),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.Column('attempt_type', sa.String(50), nullable=False),
        sa.Column('attempt_time', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_failed_login_attempts_id', 'failed_login_attempts', ['id'])
    op.create_index('ix_failed_login_email_time', 'failed_login_attempts', ['email', 'attempt_time'])

    op.create_table(
        'security_audit_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(50), nullable=False),
        sa.Column('resource', sa.String(100), nullable=False),
        sa.Column('resource_id', sa.String(100), nullable=True),
        sa.Column('ip_address', sa.String(45), nullable=True),
        sa.Column('user_agent', sa.String(500), nullable=True),
        sa.Column('request_method', sa.String(10), nullable=True),
        sa.Column('request_path', sa.String(500), nullable=True),
        sa.Column('status_code', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('metadata_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_security_audit_log_id', 'security_audit_log', ['id'])
    op.create_index('ix_security_audit_log_user_id', 'security_audit_log', ['user_id'])
    op.create_index('ix_security_audit_log_action', 'security_audit_log', ['action'])
    op.create_index('ix_security_audit_log_created_at', 'security_audit_log', ['created_at'])
    op.create_index('ix_security_audit_user_action', 'security_audit_log', ['user_id', 'action'])

    op.create_table(
        'admin_audit_log',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('admin_user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('resource', sa.String(100), nullable=False),
        sa.Column('details_json', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['admin_user_id'], ['users.id'], ondelete='SET NULL'),
    )
    op.create_index('ix_admin_audit_log_id', 'admin_audit_log', ['id'])
    op.create_index('ix_admin_audit_log_admin_user_id', 'admin_audit_log', ['admin_user_id'])
    op.create_index('ix_admin_audit_log_action', 'admin_audit_log', ['action'])
    op.create_index('ix_admin_audit_log_created_at', 'admin_audit_log', ['created_at'])


def downgrade() -> None:
    """Drop the security core schema."""
    op.drop_table('admin_audit_log')
    op.drop_table('security_audit_log')
    op.drop_table('failed_login_attempts')
    op.drop_table('mfa_backup_codes')
    op.drop_table('user_sessions')
    op.drop_table('users')
