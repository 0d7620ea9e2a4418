"""Initial follow-along schema

Revision ID: 5c1f0e7a2b91
Revises:
Create Date: 2026-09-02 10:12:44.201733

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c1f0e7a2b91'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the job, transcript, alignment and library tables."""
    conn = op.get_bind()
    inspector = sa.inspect(conn)
    tables = inspector.get_table_names()

    if 'settings' not in tables:
        op.create_table(
            'settings',
            sa.Column('key', sa.String(255), primary_key=True),
            sa.Column('value', sa.Text(), nullable=True),
        )

    op.create_table(
        'chapters',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('book_id', sa.String(255), nullable=False),
        sa.Column('order_index', sa.Integer(), nullable=False),
        sa.Column('title', sa.String(500), nullable=True),
        sa.Column('file_path', sa.String(1000), nullable=False),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
        sa.UniqueConstraint('book_id', 'order_index', name='uq_chapter_book_order'),
    )
    op.create_index('ix_chapters_book_id', 'chapters', ['book_id'])

    op.create_table(
        'documents',
        sa.Column('id', sa.String(255), primary_key=True),
        sa.Column('book_id', sa.String(255), nullable=False),
        sa.Column('filename', sa.String(500), nullable=True),
        sa.Column('file_path', sa.String(1000), nullable=False),
        sa.Column('page_count', sa.Integer(), nullable=True),
        sa.Column('is_scanned', sa.Boolean(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_documents_book_id', 'documents', ['book_id'])

    # Job statuses: pending, extracting, transcribing, aligning, completed, failed, cancelled
    op.create_table(
        'transcription_jobs',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('job_type', sa.String(20), nullable=False),
        sa.Column('subject_id', sa.String(255), nullable=False),
        sa.Column('book_id', sa.String(255), nullable=False),
        sa.Column('document_id', sa.String(255), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('progress', sa.Integer(), nullable=True),
        sa.Column('status_message', sa.String(500), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_transcription_jobs_subject_id', 'transcription_jobs', ['subject_id'])
    op.create_index('ix_transcription_jobs_book_id', 'transcription_jobs', ['book_id'])
    op.create_index('ix_transcription_jobs_status', 'transcription_jobs', ['status'])

    op.create_table(
        'chapter_transcripts',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('book_id', sa.String(255), nullable=False),
        sa.Column('chapter_index', sa.Integer(), nullable=False),
        sa.Column('sentences_json', sa.Text(), nullable=False),
        sa.Column('is_synthetic', sa.Boolean(), nullable=True),
        sa.Column('duration', sa.Float(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('book_id', 'chapter_index', name='uq_transcript_book_chapter'),
    )
    op.create_index('ix_chapter_transcripts_book_id', 'chapter_transcripts', ['book_id'])

    op.create_table(
        'document_alignments',
        sa.Column('subject_id', sa.String(255), primary_key=True),
        sa.Column('alignment_json', sa.Text(), nullable=False),
        sa.Column('quality', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    """Drop the follow-along tables."""
    op.drop_table('document_alignments')
    op.drop_index('ix_chapter_transcripts_book_id', table_name='chapter_transcripts')
    op.drop_table('chapter_transcripts')
    op.drop_index('ix_transcription_jobs_status', table_name='transcription_jobs')
    op.drop_index('ix_transcription_jobs_book_id', table_name='transcription_jobs')
    op.drop_index('ix_transcription_jobs_subject_id', table_name='transcription_jobs')
    op.drop_table('transcription_jobs')
    op.drop_index('ix_documents_book_id', table_name='documents')
    op.drop_table('documents')
    op.drop_index('ix_chapters_book_id', table_name='chapters')
    op.drop_table('chapters')
    op.drop_table('settings')
