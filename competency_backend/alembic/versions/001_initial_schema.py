"""Initial competency schema

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

def upgrade():
    # Create competency_assessment table
    op.create_table(
        'competency_assessment',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('title', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_competency_assessment')
    )
    op.create_index(
        'ix_competency_assessment_active', 'competency_assessment', ['active']
    )

    # Create competency_question table
    op.create_table(
        'competency_question',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('assessment_id', sa.String(64), nullable=False),
        sa.Column('domain_key', sa.String(100), nullable=False),
        sa.Column('question_type', sa.String(20), nullable=False),
        sa.Column('prompt', sa.Text(), nullable=False),
        sa.Column('max_score', sa.Float(), nullable=False),
        sa.Column('options', sa.JSON(), nullable=True),
        sa.Column('correct_option', sa.Text(), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_competency_question'),
        sa.ForeignKeyConstraint(
            ['assessment_id'], ['competency_assessment.id'],
            name='fk_competency_question_assessment_id_competency_assessment'
        )
    )
    op.create_index(
        'ix_competency_question_assessment_id', 'competency_question', ['assessment_id']
    )

    # Create competency_attempt table; one attempt per teacher and assessment
    op.create_table(
        'competency_attempt',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('teacher_id', sa.String(255), nullable=False),
        sa.Column('assessment_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('answers', sa.JSON(), nullable=False),
        sa.Column('selected_questions', sa.JSON(), nullable=False),
        sa.Column('retry_count', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('submitted_at', sa.DateTime(), nullable=True),
        sa.Column('evaluated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_competency_attempt'),
        sa.ForeignKeyConstraint(
            ['assessment_id'], ['competency_assessment.id'],
            name='fk_competency_attempt_assessment_id_competency_assessment'
        ),
        sa.UniqueConstraint(
            'teacher_id', 'assessment_id', name='uq_competency_attempt_teacher_id'
        )
    )
    op.create_index(
        'idx_competency_attempt_status_submitted',
        'competency_attempt',
        ['status', 'submitted_at']
    )

    # Create competency_result table; one result per attempt
    op.create_table(
        'competency_result',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('attempt_id', sa.String(64), nullable=False),
        sa.Column('teacher_id', sa.String(255), nullable=False),
        sa.Column('assessment_id', sa.String(64), nullable=False),
        sa.Column('overall_score', sa.Float(), nullable=False),
        sa.Column('proficiency_level', sa.String(20), nullable=False),
        sa.Column('domain_scores', sa.JSON(), nullable=False),
        sa.Column('strength_domains', sa.JSON(), nullable=False),
        sa.Column('gap_domains', sa.JSON(), nullable=False),
        sa.Column('recommended_micro_pds', sa.JSON(), nullable=False),
        sa.Column('question_results', sa.JSON(), nullable=False),
        sa.Column('raw_feedback', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_competency_result'),
        sa.ForeignKeyConstraint(
            ['attempt_id'], ['competency_attempt.id'],
            name='fk_competency_result_attempt_id_competency_attempt'
        ),
        sa.UniqueConstraint('attempt_id', name='uq_competency_result_attempt_id')
    )
    op.create_index(
        'ix_competency_result_teacher_id', 'competency_result', ['teacher_id']
    )

    # Create competency_event table
    op.create_table(
        'competency_event',
        sa.Column('id', sa.String(64), nullable=False),
        sa.Column('teacher_id', sa.String(255), nullable=False),
        sa.Column('attempt_id', sa.String(64), nullable=False),
        sa.Column('event_type', sa.String(20), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_competency_event'),
        sa.ForeignKeyConstraint(
            ['attempt_id'], ['competency_attempt.id'],
            name='fk_competency_event_attempt_id_competency_attempt'
        )
    )
    op.create_index(
        'ix_competency_event_attempt_id', 'competency_event', ['attempt_id']
    )

def downgrade():
    op.drop_index('ix_competency_event_attempt_id', table_name='competency_event')
    op.drop_table('competency_event')
    op.drop_index('ix_competency_result_teacher_id', table_name='competency_result')
    op.drop_table('competency_result')
    op.drop_index('idx_competency_attempt_status_submitted', table_name='competency_attempt')
    op.drop_table('competency_attempt')
    op.drop_index('ix_competency_question_assessment_id', table_name='competency_question')
    op.drop_table('competency_question')
    op.drop_index('ix_competency_assessment_active', table_name='competency_assessment')
    op.drop_table('competency_assessment')
