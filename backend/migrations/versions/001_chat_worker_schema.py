"""Initial schema for the chat worker.

Revision ID: 001_chat_worker_schema
Revises: None
Create Date: 2025-09-22

Creates:
- documents and document_chunks (written by ingestion, read by the worker)
- chat_sessions, chat_messages (with claim/status columns)
- chat_message_citations
"""
from alembic import op
import sqlalchemy as sa


revision = '001_chat_worker_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ========== DOCUMENTS ==========
    op.create_table(
        'documents',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('original_filename', sa.String(255), nullable=True),
        sa.Column('mime_type', sa.String(100), nullable=True),
        sa.Column('storage_bucket', sa.String(255), nullable=False),
        sa.Column('storage_path', sa.Text, nullable=False),
        sa.Column('page_count', sa.Integer, nullable=True),
        sa.Column('status', sa.String(30), nullable=False, server_default='uploaded'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_documents_user_id', 'documents', ['user_id'])

    op.create_table(
        'document_chunks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('document_id', sa.String(36), sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('chunk_index', sa.Integer, nullable=False),
        sa.Column('text', sa.Text, nullable=False),
        sa.Column('page_number', sa.Integer, nullable=True),
        sa.Column('slide_number', sa.Integer, nullable=True),
        sa.Column('char_start', sa.Integer, nullable=True),
        sa.Column('char_end', sa.Integer, nullable=True),
        sa.Column('tokens', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('document_id', 'chunk_index', name='uq_document_chunks_document_index'),
        sa.CheckConstraint(
            'char_start IS NULL OR char_end IS NULL OR char_end >= char_start',
            name='ck_document_chunks_char_range'
        ),
    )
    op.create_index('idx_document_chunks_document_id', 'document_chunks', ['document_id'])
    op.create_index('idx_document_chunks_page', 'document_chunks', ['page_number'])

    # ========== CHAT ==========
    op.create_table(
        'chat_sessions',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(100), nullable=False),
        sa.Column('document_id', sa.String(36), sa.ForeignKey('documents.id', ondelete='SET NULL'), nullable=True),
        sa.Column('title', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'document_id', name='uq_chat_sessions_user_document'),
    )
    op.create_index('idx_chat_sessions_user_id', 'chat_sessions', ['user_id'])
    op.create_index('idx_chat_sessions_document_id', 'chat_sessions', ['document_id'])

    op.create_table(
        'chat_messages',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('session_id', sa.String(36), sa.ForeignKey('chat_sessions.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(100), nullable=True),
        sa.Column('role', sa.String(20), nullable=False),
        sa.Column('content', sa.Text, nullable=False),
        sa.Column('tokens_in', sa.Integer, nullable=True),
        sa.Column('tokens_out', sa.Integer, nullable=True),
        sa.Column('processed', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('claimed_by', sa.String(255), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('error_type', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column(
            'reply_to_id', sa.String(36),
            sa.ForeignKey('chat_messages.id', ondelete='CASCADE'),
            nullable=True, unique=True
        ),
        sa.Column('grounded', sa.Boolean, nullable=True),
        sa.Column('model_used', sa.String(100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('idx_chat_messages_session_time', 'chat_messages', ['session_id', 'created_at'])
    op.create_index('idx_chat_messages_pending', 'chat_messages', ['role', 'processed', 'status'])

    op.create_table(
        'chat_message_citations',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('message_id', sa.String(36), sa.ForeignKey('chat_messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('chunk_id', sa.String(36), sa.ForeignKey('document_chunks.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('similarity', sa.Float, nullable=True),
        sa.Column('start_offset', sa.Integer, nullable=True),
        sa.Column('end_offset', sa.Integer, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint(
            'message_id', 'chunk_id', 'start_offset', 'end_offset',
            name='uq_chat_message_citations_span'
        ),
    )
    op.create_index('idx_chat_message_citations_message', 'chat_message_citations', ['message_id'])
    op.create_index('idx_chat_message_citations_chunk', 'chat_message_citations', ['chunk_id'])


def downgrade() -> None:
    op.drop_table('chat_message_citations')
    op.drop_table('chat_messages')
    op.drop_table('chat_sessions')
    op.drop_table('document_chunks')
    op.drop_table('documents')
