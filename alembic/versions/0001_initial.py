"""
users, linked facebook credentials, team members, subscriptions and adbox tables

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('email', sa.String(length=256), nullable=True, unique=True, index=True),
        sa.Column('name', sa.String(length=256), nullable=True),
        sa.Column('plan', sa.String(length=16), nullable=False, server_default='FREE'),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_table(
        'oauth_accounts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(length=64), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('provider', sa.String(length=32), nullable=False, index=True),
        sa.Column('provider_account_id', sa.String(length=128), nullable=False),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
        sa.UniqueConstraint('provider', 'provider_account_id'),
    )
    op.create_table(
        'meta_accounts',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=64), sa.ForeignKey('users.id'), nullable=False, unique=True, index=True),
        sa.Column('meta_user_id', sa.String(length=64), nullable=False, index=True),
        sa.Column('access_token_enc', sa.Text(), nullable=False),
        sa.Column('access_token_expires', sa.Integer(), nullable=True),
        sa.Column('updated_at', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_table(
        'team_members',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=64), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('member_type', sa.String(length=16), nullable=False, index=True),
        sa.Column('facebook_user_id', sa.String(length=64), nullable=True, unique=True),
        sa.Column('facebook_name', sa.String(length=256), nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('access_token_expires', sa.Integer(), nullable=True),
        sa.Column('member_email', sa.String(length=256), nullable=True, index=True),
        sa.Column('role', sa.String(length=16), nullable=False, server_default='EMPLOYEE'),
        sa.Column('updated_at', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('user_id', sa.String(length=64), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='trial'),
        sa.Column('expires_at', sa.Integer(), nullable=False),
        sa.Column('selected_page_ids', sa.Text(), nullable=True),
        sa.Column('selected_ad_account_ids', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_table(
        'conversations',
        sa.Column('id', sa.String(length=160), primary_key=True),
        sa.Column('page_id', sa.String(length=64), nullable=False, index=True),
        sa.Column('participant_id', sa.String(length=64), nullable=False, index=True),
        sa.Column('participant_name', sa.String(length=256), nullable=True),
        sa.Column('snippet', sa.String(length=256), nullable=True),
        sa.Column('unread_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ad_id', sa.String(length=64), nullable=True),
        sa.Column('last_message_at', sa.Integer(), nullable=False, index=True),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
    )
    op.create_table(
        'messages',
        sa.Column('id', sa.String(length=160), primary_key=True),
        sa.Column('conversation_id', sa.String(length=160), sa.ForeignKey('conversations.id'), nullable=False, index=True),
        sa.Column('sender_id', sa.String(length=64), nullable=False),
        sa.Column('sender_name', sa.String(length=256), nullable=True),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('attachments', sa.Text(), nullable=True),
        sa.Column('sticker_url', sa.String(length=1024), nullable=True),
        sa.Column('is_from_page', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.Integer(), nullable=False, server_default='0'),
    )


def downgrade() -> None:
    op.drop_table('messages')
    op.drop_table('conversations')
    op.drop_table('subscriptions')
    op.drop_table('team_members')
    op.drop_table('meta_accounts')
    op.drop_table('oauth_accounts')
    op.drop_table('users')
