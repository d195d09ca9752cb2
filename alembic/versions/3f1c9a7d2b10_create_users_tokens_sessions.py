"""create users, tokens and user_sessions

Revision ID: 3f1c9a7d2b10
Revises:
Create Date: 2026-10-18 10:12:44.118204
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1c9a7d2b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

auth_strategy = sa.Enum('local', 'googleOAuth', name='auth_strategy')
token_purpose = sa.Enum('resetPassword', 'verifyEmail', name='token_purpose')


def upgrade() -> None:
    """Upgrade schema."""
    # Step 1️⃣: users
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('external_id', sa.String(length=256), nullable=True),
        sa.Column('email', sa.String(length=256), nullable=False),
        sa.Column('password_hash', sa.String(length=60), nullable=True),
        sa.Column('name', sa.String(length=256), nullable=False),
        sa.Column('auth_strategy', auth_strategy, nullable=False),
        sa.Column('is_email_verified', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('last_active_at', sa.DateTime(), nullable=True),
        sa.Column('login_count', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('auth_strategy', 'external_id', name='uq_users_auth_strategy_external_id'),
        sa.CheckConstraint("auth_strategy != 'local' OR password_hash IS NOT NULL",
                           name='ck_users_local_has_password'),
        sa.CheckConstraint("auth_strategy = 'local' OR external_id IS NOT NULL",
                           name='ck_users_external_has_id'),
        sa.CheckConstraint('login_count >= 0', name='ck_users_login_count_non_negative'),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)
    op.create_index('ix_users_last_active_at', 'users', ['last_active_at'])

    # Step 2️⃣: 單次使用 token
    op.create_table(
        'tokens',
        sa.Column('token', sa.String(length=44), nullable=False),
        sa.Column('purpose', token_purpose, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expire', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('token'),
    )
    op.create_index('ix_tokens_user_id', 'tokens', ['user_id'])
    op.create_index('ix_tokens_expire', 'tokens', ['expire'])
    op.create_index('ix_tokens_user_id_purpose', 'tokens', ['user_id', 'purpose'])

    # Step 3️⃣: 伺服器端 session
    op.create_table(
        'user_sessions',
        sa.Column('sid_hash', sa.String(length=64), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('csrf_secret', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expire', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('sid_hash'),
    )
    op.create_index('ix_user_sessions_user_id', 'user_sessions', ['user_id'])
    op.create_index('ix_user_sessions_expire', 'user_sessions', ['expire'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('ix_user_sessions_expire', table_name='user_sessions')
    op.drop_index('ix_user_sessions_user_id', table_name='user_sessions')
    op.drop_table('user_sessions')
    op.drop_index('ix_tokens_user_id_purpose', table_name='tokens')
    op.drop_index('ix_tokens_expire', table_name='tokens')
    op.drop_index('ix_tokens_user_id', table_name='tokens')
    op.drop_table('tokens')
    op.drop_index('ix_users_last_active_at', table_name='users')
    op.drop_index('ix_users_email', table_name='users')
    op.drop_index('ix_users_id', table_name='users')
    op.drop_table('users')
    token_purpose.drop(op.get_bind(), checkfirst=True)
    auth_strategy.drop(op.get_bind(), checkfirst=True)
