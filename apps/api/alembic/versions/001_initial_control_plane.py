"""Initial control-plane schema.

Revision ID: 001
Revises:
Create Date: 2026-10-01
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'identity_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('provider', sa.String(length=100), nullable=False),
        sa.Column('provider_subject', sa.String(length=255), nullable=False),
        sa.Column('human_hash', sa.String(length=64), nullable=False),
        sa.Column('contact_email', sa.String(length=255), nullable=True),
        sa.Column('contact_phone', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'provider_subject', name='uq_identity_provider_subject'),
    )
    op.create_index('ix_identity_records_id', 'identity_records', ['id'])
    op.create_index('ix_identity_records_human_hash', 'identity_records', ['human_hash'], unique=True)

    op.create_table(
        'voting_identifiers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('voting_id', sa.String(length=64), nullable=False),
        sa.Column('human_hash', sa.String(length=64), nullable=False),
        sa.Column('scope', sa.String(length=255), nullable=False),
        sa.Column('identity_record_id', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['identity_record_id'], ['identity_records.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('human_hash', 'scope', name='uq_voting_identifier_human_scope'),
    )
    op.create_index('ix_voting_identifiers_id', 'voting_identifiers', ['id'])
    op.create_index('ix_voting_identifiers_voting_id', 'voting_identifiers', ['voting_id'], unique=True)
    op.create_index('ix_voting_identifiers_human_hash', 'voting_identifiers', ['human_hash'])
    op.create_index('ix_voting_identifiers_identity_record_id', 'voting_identifiers', ['identity_record_id'])

    op.create_table(
        'elections',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('election_id', sa.String(length=255), nullable=False),
        sa.Column('display_name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('opens_at', sa.DateTime(), nullable=True),
        sa.Column('closes_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_elections_id', 'elections', ['id'])
    op.create_index('ix_elections_election_id', 'elections', ['election_id'], unique=True)

    op.create_table(
        'issued_tokens',
        sa.Column('nonce_hash', sa.String(length=64), nullable=False),
        sa.Column('voting_id', sa.String(length=64), nullable=False),
        sa.Column('election_id', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('consumed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('nonce_hash'),
    )
    op.create_index(
        'ix_issued_tokens_pair_status', 'issued_tokens', ['voting_id', 'election_id', 'status']
    )

    op.create_table(
        'audit_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_id', sa.String(length=36), nullable=False),
        sa.Column('event_hash', sa.String(length=64), nullable=False),
        sa.Column('election_id', sa.String(length=255), nullable=False),
        sa.Column('voter_hash', sa.String(length=64), nullable=True),
        sa.Column('kind', sa.String(length=50), nullable=False),
        sa.Column('correlation_id', sa.String(length=255), nullable=True),
        sa.Column('detail_json', sa.JSON(), nullable=False),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.Column('recorded_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_events_id', 'audit_events', ['id'])
    op.create_index('ix_audit_events_event_id', 'audit_events', ['event_id'], unique=True)
    op.create_index('ix_audit_events_event_hash', 'audit_events', ['event_hash'])
    op.create_index('ix_audit_events_election_id', 'audit_events', ['election_id'])
    op.create_index('ix_audit_events_voter_hash', 'audit_events', ['voter_hash'])
    op.create_index('ix_audit_events_kind', 'audit_events', ['kind'])
    op.create_index('ix_audit_events_correlation_id', 'audit_events', ['correlation_id'])
    op.create_index('ix_audit_events_occurred_at', 'audit_events', ['occurred_at'])

    op.create_table(
        'anomaly_flags',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('election_id', sa.String(length=255), nullable=False),
        sa.Column('voter_hash', sa.String(length=64), nullable=False),
        sa.Column('rule', sa.String(length=100), nullable=False),
        sa.Column('event_count', sa.Integer(), nullable=False),
        sa.Column('first_seen_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('election_id', 'voter_hash', 'rule', name='uq_anomaly_flag_voter_rule'),
    )
    op.create_index('ix_anomaly_flags_id', 'anomaly_flags', ['id'])
    op.create_index('ix_anomaly_flags_election_id', 'anomaly_flags', ['election_id'])
    op.create_index('ix_anomaly_flags_voter_hash', 'anomaly_flags', ['voter_hash'])

    op.create_table(
        'api_clients',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('label', sa.String(length=255), nullable=False),
        sa.Column('prefix', sa.String(length=16), nullable=False),
        sa.Column('digest', sa.String(length=64), nullable=False),
        sa.Column('scopes', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('revoked_at', sa.DateTime(), nullable=True),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('label'),
        sa.UniqueConstraint('digest'),
    )
    op.create_index('ix_api_clients_id', 'api_clients', ['id'])
    op.create_index('ix_api_clients_prefix', 'api_clients', ['prefix'])


def downgrade() -> None:
    op.drop_index('ix_api_clients_prefix', table_name='api_clients')
    op.drop_index('ix_api_clients_id', table_name='api_clients')
    op.drop_table('api_clients')
    op.drop_index('ix_anomaly_flags_voter_hash', table_name='anomaly_flags')
    op.drop_index('ix_anomaly_flags_election_id', table_name='anomaly_flags')
    op.drop_index('ix_anomaly_flags_id', table_name='anomaly_flags')
    op.drop_table('anomaly_flags')
    for index in (
        'ix_audit_events_occurred_at',
        'ix_audit_events_correlation_id',
        'ix_audit_events_kind',
        'ix_audit_events_voter_hash',
        'ix_audit_events_election_id',
        'ix_audit_events_event_hash',
        'ix_audit_events_event_id',
        'ix_audit_events_id',
    ):
        op.drop_index(index, table_name='audit_events')
    op.drop_table('audit_events')
    op.drop_index('ix_issued_tokens_pair_status', table_name='issued_tokens')
    op.drop_table('issued_tokens')
    op.drop_index('ix_elections_election_id', table_name='elections')
    op.drop_index('ix_elections_id', table_name='elections')
    op.drop_table('elections')
    op.drop_index('ix_voting_identifiers_identity_record_id', table_name='voting_identifiers')
    op.drop_index('ix_voting_identifiers_human_hash', table_name='voting_identifiers')
    op.drop_index('ix_voting_identifiers_voting_id', table_name='voting_identifiers')
    op.drop_index('ix_voting_identifiers_id', table_name='voting_identifiers')
    op.drop_table('voting_identifiers')
    op.drop_index('ix_identity_records_human_hash', table_name='identity_records')
    op.drop_index('ix_identity_records_id', table_name='identity_records')
    op.drop_table('identity_records')
