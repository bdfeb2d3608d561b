"""Classification persistence schema

Revision ID: 001
Revises:
Create Date: 2026-10-18 12:00:00.000000

Creates 3 tables:
- classifications (mutable case row with session metadata)
- decisions (append-only, ordered by position)
- audit_entries (append-only hash chain)
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create classifications table
    op.create_table(
        'classifications',
        sa.Column('classification_id', sa.String(length=64), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('current_step', sa.String(length=32), nullable=False),
        sa.Column('final_code', sa.String(length=16), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=True),
        sa.Column('created_at', sa.String(length=40), nullable=False),
        sa.Column('updated_at', sa.String(length=40), nullable=False),
        sa.Column('metadata_json', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.PrimaryKeyConstraint('classification_id')
    )
    op.create_index(op.f('ix_classifications_status'), 'classifications', ['status'], unique=False)

    # Create decisions table
    op.create_table(
        'decisions',
        sa.Column('decision_id', sa.String(length=64), nullable=False),
        sa.Column('classification_id', sa.String(length=64), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('step', sa.String(length=32), nullable=False),
        sa.Column('kind', sa.String(length=32), nullable=False),
        sa.Column('question', sa.Text(), nullable=False),
        sa.Column('answer', sa.Text(), nullable=False),
        sa.Column('reasoning', sa.Text(), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('legal_basis', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('timestamp', sa.String(length=40), nullable=False),
        sa.Column('evidence', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('supersedes', sa.String(length=64), nullable=True),
        sa.ForeignKeyConstraint(['classification_id'], ['classifications.classification_id'], ),
        sa.PrimaryKeyConstraint('decision_id'),
        sa.UniqueConstraint('classification_id', 'position', name='uq_decision_position')
    )
    op.create_index(op.f('ix_decisions_classification_id'), 'decisions', ['classification_id'], unique=False)

    # Create audit_entries table
    op.create_table(
        'audit_entries',
        sa.Column('entry_id', sa.String(length=64), nullable=False),
        sa.Column('classification_id', sa.String(length=64), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('actor', sa.String(length=128), nullable=False),
        sa.Column('details', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('timestamp', sa.String(length=40), nullable=False),
        sa.Column('prev_hash', sa.String(length=64), nullable=False),
        sa.Column('hash', sa.String(length=64), nullable=False),
        sa.ForeignKeyConstraint(['classification_id'], ['classifications.classification_id'], ),
        sa.PrimaryKeyConstraint('entry_id'),
        sa.UniqueConstraint('classification_id', 'sequence', name='uq_audit_sequence')
    )
    op.create_index('idx_audit_classification_sequence', 'audit_entries', ['classification_id', 'sequence'], unique=False)


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_index('idx_audit_classification_sequence', table_name='audit_entries')
    op.drop_table('audit_entries')

    op.drop_index(op.f('ix_decisions_classification_id'), table_name='decisions')
    op.drop_table('decisions')

    op.drop_index(op.f('ix_classifications_status'), table_name='classifications')
    op.drop_table('classifications')
