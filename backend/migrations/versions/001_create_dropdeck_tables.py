"""Create DropDeck group, message and lifecycle tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute('CREATE EXTENSION IF NOT EXISTS "pgcrypto"')

    # user
    op.create_table(
        'user',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('email', sa.Text(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_user')
    )
    op.create_index('ix_user_email', 'user', ['email'], unique=True)

    # chat_group
    op.create_table(
        'chat_group',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('creator_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('access_type', sa.Text(), server_default=sa.text("'public'"), nullable=False),
        sa.Column('expiry_time', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_chat_group'),
        sa.ForeignKeyConstraint(['creator_id'], ['user.id'], name='fk_chat_group_creator_id_user', ondelete='RESTRICT'),
        sa.CheckConstraint("access_type IN ('public', 'private', 'approval')", name='ck_chat_group_access_type')
    )
    # The sweep selects by expiry_time
    op.create_index('ix_chat_group_expiry_time', 'chat_group', ['expiry_time'])

    # group_member
    op.create_table(
        'group_member',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('group_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('role', sa.Text(), server_default=sa.text("'member'"), nullable=False),
        sa.Column('joined_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_group_member'),
        sa.ForeignKeyConstraint(['group_id'], ['chat_group.id'], name='fk_group_member_group_id_chat_group', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], name='fk_group_member_user_id_user', ondelete='CASCADE'),
        sa.UniqueConstraint('group_id', 'user_id', name='uq_group_member_group_user'),
        sa.CheckConstraint("role IN ('admin', 'moderator', 'member')", name='ck_group_member_role')
    )

    # message (content is ciphertext)
    op.create_table(
        'message',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('group_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('content', sa.Text(), nullable=True),
        sa.Column('message_type', sa.Text(), server_default=sa.text("'text'"), nullable=False),
        sa.Column('reply_to', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_message'),
        sa.ForeignKeyConstraint(['group_id'], ['chat_group.id'], name='fk_message_group_id_chat_group', ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['user_id'], ['user.id'], name='fk_message_user_id_user', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['reply_to'], ['message.id'], name='fk_message_reply_to_message', ondelete='SET NULL'),
        sa.CheckConstraint(
            "message_type IN ('text', 'file', 'poll', 'reply', 'code')",
            name='ck_message_message_type'
        )
    )
    op.create_index('ix_message_group_created', 'message', ['group_id', 'created_at'])

    # attachment (file_path is ciphertext, erased_at is the per-file erase marker)
    op.create_table(
        'attachment',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('file_path', sa.Text(), nullable=False),
        sa.Column('file_name', sa.Text(), nullable=False),
        sa.Column('file_size', sa.BigInteger(), nullable=False),
        sa.Column('file_type', sa.Text(), nullable=False),
        sa.Column('uploaded_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('erased_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_attachment'),
        sa.ForeignKeyConstraint(['message_id'], ['message.id'], name='fk_attachment_message_id_message', ondelete='CASCADE')
    )
    op.create_index('ix_attachment_message_id', 'attachment', ['message_id'])

    # export_artifact (no FK: outlives the purged group)
    op.create_table(
        'export_artifact',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('group_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('group_name', sa.Text(), nullable=False),
        sa.Column('file_path', sa.Text(), nullable=False),
        sa.Column('sha256', sa.Text(), nullable=False),
        sa.Column('size_bytes', sa.BigInteger(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_export_artifact'),
        sa.CheckConstraint("sha256 <> ''", name='ck_export_artifact_sha256_not_empty')
    )
    op.create_index('ix_export_artifact_group_id', 'export_artifact', ['group_id'], unique=True)
    op.create_index('ix_export_artifact_created_at', 'export_artifact', ['created_at'])

    # sweep_run
    op.create_table(
        'sweep_run',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('group_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('status', sa.String(20), server_default=sa.text("'PENDING'"), nullable=False),
        sa.Column('attempts', sa.Integer(), server_default=sa.text('0'), nullable=False),
        sa.Column('started_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=False),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('notified_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('export_artifact_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('error_json', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('claimed_by', sa.Text(), nullable=True),
        sa.Column('claimed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_sweep_run'),
        sa.CheckConstraint(
            "status IN ('PENDING', 'EXPORTING', 'NOTIFYING', 'ERASING', 'PURGED', 'FAILED')",
            name='ck_sweep_run_status'
        )
    )
    op.create_index('ix_sweep_run_group_id', 'sweep_run', ['group_id'], unique=True)
    op.create_index('ix_sweep_run_status', 'sweep_run', ['status'])


def downgrade():
    op.drop_table('sweep_run')
    op.drop_table('export_artifact')
    op.drop_table('attachment')
    op.drop_table('message')
    op.drop_table('group_member')
    op.drop_table('chat_group')
    op.drop_table('user')
