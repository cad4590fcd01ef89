"""create bank link tables

Revision ID: 3c1e9a7d5b20
Revises:
Create Date: 2026-10-18 09:14:02.118734

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c1e9a7d5b20'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table('bank_connections',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('owner_id', sa.String(), nullable=False),
    sa.Column('institution_id', sa.String(), nullable=False),
    sa.Column('institution_name', sa.String(), nullable=False),
    sa.Column('status', sa.String(), nullable=False),
    sa.Column('consent_id', sa.String(), nullable=True),
    sa.Column('flow_id', sa.String(), nullable=True),
    sa.Column('access_token', sa.String(), nullable=True),
    sa.Column('token_expires_at', sa.DateTime(), nullable=True),
    sa.Column('consent_expires_at', sa.DateTime(), nullable=True),
    sa.Column('last_synced_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('flow_id')
    )
    op.create_index(op.f('ix_bank_connections_owner_id'), 'bank_connections', ['owner_id'], unique=False)
    op.create_index(op.f('ix_bank_connections_consent_id'), 'bank_connections', ['consent_id'], unique=False)
    op.create_index('ix_bank_connections_owner_status', 'bank_connections', ['owner_id', 'status'], unique=False)

    op.create_table('bank_accounts',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('connection_id', sa.String(length=36), nullable=False),
    sa.Column('owner_id', sa.String(), nullable=False),
    sa.Column('external_id', sa.String(), nullable=False),
    sa.Column('name', sa.String(), nullable=True),
    sa.Column('account_type', sa.String(), nullable=True),
    sa.Column('account_number', sa.String(), nullable=False),
    sa.Column('currency', sa.String(length=3), nullable=True),
    sa.Column('balance', sa.Numeric(precision=18, scale=4), nullable=False),
    sa.Column('available_balance', sa.Numeric(precision=18, scale=4), nullable=False),
    sa.Column('last_synced_at', sa.DateTime(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['connection_id'], ['bank_connections.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('connection_id', 'external_id', name='uix_bank_account_connection_external')
    )
    op.create_index(op.f('ix_bank_accounts_owner_id'), 'bank_accounts', ['owner_id'], unique=False)

    op.create_table('bank_transactions',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('account_id', sa.String(length=36), nullable=False),
    sa.Column('owner_id', sa.String(), nullable=False),
    sa.Column('external_id', sa.String(), nullable=False),
    sa.Column('amount', sa.Numeric(precision=18, scale=4), nullable=False),
    sa.Column('currency', sa.String(length=3), nullable=True),
    sa.Column('credit_debit', sa.String(), nullable=False),
    sa.Column('description', sa.String(), nullable=True),
    sa.Column('merchant_name', sa.String(), nullable=True),
    sa.Column('category', sa.String(), nullable=False),
    sa.Column('category_group', sa.String(), nullable=True),
    sa.Column('booked_at', sa.DateTime(), nullable=False),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.ForeignKeyConstraint(['account_id'], ['bank_accounts.id'], ondelete='CASCADE'),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('account_id', 'external_id', name='uix_bank_transaction_account_external')
    )
    op.create_index(op.f('ix_bank_transactions_owner_id'), 'bank_transactions', ['owner_id'], unique=False)
    op.create_index('ix_bank_transactions_account_booked', 'bank_transactions', ['account_id', 'booked_at'], unique=False)

    op.create_table('consent_intents',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('owner_id', sa.String(), nullable=False),
    sa.Column('consent_id', sa.String(), nullable=False),
    sa.Column('flow_id', sa.String(), nullable=True),
    sa.Column('status', sa.String(), nullable=False),
    sa.Column('expires_at', sa.DateTime(), nullable=True),
    sa.Column('revoked_at', sa.DateTime(), nullable=True),
    sa.Column('revocation_reason', sa.String(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.Column('updated_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id'),
    sa.UniqueConstraint('flow_id')
    )
    op.create_index(op.f('ix_consent_intents_owner_id'), 'consent_intents', ['owner_id'], unique=False)
    op.create_index(op.f('ix_consent_intents_consent_id'), 'consent_intents', ['consent_id'], unique=False)

    op.create_table('audit_logs',
    sa.Column('id', sa.String(length=36), nullable=False),
    sa.Column('owner_id', sa.String(), nullable=True),
    sa.Column('event_type', sa.String(), nullable=False),
    sa.Column('subject_id', sa.String(), nullable=True),
    sa.Column('event_metadata', sa.Text(), nullable=True),
    sa.Column('created_at', sa.DateTime(), nullable=True),
    sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_audit_logs_owner_id'), 'audit_logs', ['owner_id'], unique=False)
    op.create_index(op.f('ix_audit_logs_event_type'), 'audit_logs', ['event_type'], unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index(op.f('ix_audit_logs_event_type'), table_name='audit_logs')
    op.drop_index(op.f('ix_audit_logs_owner_id'), table_name='audit_logs')
    op.drop_table('audit_logs')
    op.drop_index(op.f('ix_consent_intents_consent_id'), table_name='consent_intents')
    op.drop_index(op.f('ix_consent_intents_owner_id'), table_name='consent_intents')
    op.drop_table('consent_intents')
    op.drop_index('ix_bank_transactions_account_booked', table_name='bank_transactions')
    op.drop_index(op.f('ix_bank_transactions_owner_id'), table_name='bank_transactions')
    op.drop_table('bank_transactions')
    op.drop_index(op.f('ix_bank_accounts_owner_id'), table_name='bank_accounts')
    op.drop_table('bank_accounts')
    op.drop_index('ix_bank_connections_owner_status', table_name='bank_connections')
    op.drop_index(op.f('ix_bank_connections_consent_id'), table_name='bank_connections')
    op.drop_index(op.f('ix_bank_connections_owner_id'), table_name='bank_connections')
    op.drop_table('bank_connections')
