"""Create retest lifecycle tables.

Revision ID: create_retest_tables
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = 'create_retest_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum types are created below with a guarded DO block
ENUMS = {
    'assessmenttype': (
        'MULTIPLE_CHOICE', 'TRUE_FALSE', 'INPUT', 'MATCHING_TYPE',
        'WORD_MATCHING', 'DRAWING', 'FILL_BLANKS', 'SPEAKING',
    ),
    'scoringpolicy': ('BEST', 'LATEST'),
    'reteststatus': ('PENDING', 'IN_PROGRESS', 'PASSED', 'FAILED', 'EXPIRED'),
    'auditaction': (
        'RETEST_CREATED', 'RETEST_CANCELLED', 'RETEST_TARGETS_EXPIRED', 'ATTEMPT_REGRADED',
    ),
}

assessmenttype = postgresql.ENUM(*ENUMS['assessmenttype'], name='assessmenttype', create_type=False)
scoringpolicy = postgresql.ENUM(*ENUMS['scoringpolicy'], name='scoringpolicy', create_type=False)
reteststatus = postgresql.ENUM(*ENUMS['reteststatus'], name='reteststatus', create_type=False)
auditaction = postgresql.ENUM(*ENUMS['auditaction'], name='auditaction', create_type=False)


def table_exists(table_name: str) -> bool:
    """Check if a table exists."""
    conn = op.get_bind()
    result = conn.execute(sa.text(f"""
        SELECT EXISTS (
            SELECT FROM information_schema.tables 
            WHERE table_name = '{table_name}'
        );
    """))
    return result.scalar()


def index_exists(index_name: str) -> bool:
    """Check if an index exists."""
    conn = op.get_bind()
    result = conn.execute(sa.text(f"""
        SELECT EXISTS (
            SELECT 1 FROM pg_indexes WHERE indexname = '{index_name}'
        );
    """))
    return result.scalar()


def timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    """Create assessments, retest, attempt and audit tables."""
    conn = op.get_bind()

    for name, values in ENUMS.items():
        labels = ", ".join(f"'{value}'" for value in values)
        conn.execute(sa.text(f"""
            DO $$ BEGIN
                CREATE TYPE {name} AS ENUM ({labels});
            EXCEPTION
                WHEN duplicate_object THEN null;
            END $$;
        """))

    if not table_exists('assessments'):
        op.create_table(
            'assessments',
            sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
            *timestamps(),
            sa.Column('test_type', assessmenttype, nullable=False),
            sa.Column('test_name', sa.String(255), nullable=False),
            sa.Column('teacher_id', sa.String(50), nullable=False),
            sa.Column('subject_id', sa.String(50), nullable=True),
            sa.PrimaryKeyConstraint('id'),
        )
    if not index_exists('ix_assessments_test_type'):
        op.create_index('ix_assessments_test_type', 'assessments', ['test_type'])
    if not index_exists('ix_assessments_teacher_id'):
        op.create_index('ix_assessments_teacher_id', 'assessments', ['teacher_id'])

    if not table_exists('retest_assignments'):
        op.create_table(
            'retest_assignments',
            sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
            *timestamps(),
            sa.Column('test_type', assessmenttype, nullable=False),
            sa.Column('test_id', sa.BigInteger(), nullable=False),
            sa.Column('teacher_id', sa.String(50), nullable=False),
            sa.Column('subject_id', sa.String(50), nullable=True),
            sa.Column('grade', sa.String(20), nullable=True),
            sa.Column('class_name', sa.String(20), nullable=True),
            sa.Column('passing_threshold', sa.Numeric(5, 2), nullable=False, server_default='50.00'),
            sa.Column('scoring_policy', scoringpolicy, nullable=False, server_default='BEST'),
            sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='1'),
            sa.Column('window_start', sa.DateTime(timezone=True), nullable=False),
            sa.Column('window_end', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['test_id'], ['assessments.id'], ondelete='CASCADE'),
            sa.CheckConstraint('max_attempts >= 1', name='ck_retest_max_attempts_positive'),
            sa.CheckConstraint('window_start <= window_end', name='ck_retest_window_order'),
            sa.CheckConstraint(
                'passing_threshold >= 0 AND passing_threshold <= 100',
                name='ck_retest_threshold_range',
            ),
        )
    if not index_exists('ix_retest_assignments_test_id'):
        op.create_index('ix_retest_assignments_test_id', 'retest_assignments', ['test_id'])
    if not index_exists('ix_retest_assignments_teacher_id'):
        op.create_index('ix_retest_assignments_teacher_id', 'retest_assignments', ['teacher_id'])

    if not table_exists('retest_targets'):
        op.create_table(
            'retest_targets',
            sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
            *timestamps(),
            sa.Column('assignment_id', sa.BigInteger(), nullable=False),
            sa.Column('student_id', sa.String(50), nullable=False),
            sa.Column('attempt_number', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('max_attempts', sa.Integer(), nullable=False),
            sa.Column('attempt_offset', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('is_completed', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('passed', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('status', reteststatus, nullable=False, server_default='PENDING'),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['assignment_id'], ['retest_assignments.id'], ondelete='CASCADE'),
            sa.UniqueConstraint('assignment_id', 'student_id', name='uq_retest_target_assignment_student'),
            sa.CheckConstraint(
                'attempt_number >= 0 AND attempt_number <= max_attempts',
                name='ck_retest_target_attempt_bounds',
            ),
        )
    if not index_exists('ix_retest_targets_assignment_id'):
        op.create_index('ix_retest_targets_assignment_id', 'retest_targets', ['assignment_id'])
    if not index_exists('ix_retest_targets_student_id'):
        op.create_index('ix_retest_targets_student_id', 'retest_targets', ['student_id'])
    if not index_exists('ix_retest_targets_status'):
        op.create_index('ix_retest_targets_status', 'retest_targets', ['status'])

    if not table_exists('assessment_results'):
        op.create_table(
            'assessment_results',
            sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
            sa.Column('test_type', assessmenttype, nullable=False),
            sa.Column('test_id', sa.BigInteger(), nullable=False),
            sa.Column('student_id', sa.String(50), nullable=False),
            sa.Column('score', sa.Numeric(10, 2), nullable=True),
            sa.Column('max_score', sa.Numeric(10, 2), nullable=True),
            sa.Column('retest_offered', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('retest_assignment_id', sa.BigInteger(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['test_id'], ['assessments.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['retest_assignment_id'], ['retest_assignments.id'], ondelete='SET NULL'),
        )
    if not index_exists('ix_assessment_results_type_student_test'):
        op.create_index(
            'ix_assessment_results_type_student_test',
            'assessment_results',
            ['test_type', 'student_id', 'test_id'],
        )

    if not table_exists('attempts'):
        op.create_table(
            'attempts',
            sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
            *timestamps(),
            sa.Column('student_id', sa.String(50), nullable=False),
            sa.Column('test_id', sa.BigInteger(), nullable=False),
            sa.Column('attempt_number', sa.Integer(), nullable=False),
            sa.Column('score', sa.Numeric(10, 2), nullable=True),
            sa.Column('max_score', sa.Numeric(10, 2), nullable=True),
            sa.Column('percentage', sa.Numeric(5, 2), nullable=True),
            sa.Column('is_completed', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('submitted_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('retest_assignment_id', sa.BigInteger(), nullable=True),
            sa.Column('idempotency_key', sa.String(100), nullable=True),
            sa.Column('answers', postgresql.JSONB(), nullable=True),
            sa.Column('time_taken', sa.Integer(), nullable=True),
            sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('caught_cheating', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('visibility_change_times', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('test_name', sa.String(255), nullable=True),
            sa.Column('teacher_id', sa.String(50), nullable=True),
            sa.Column('subject_id', sa.String(50), nullable=True),
            sa.Column('grade', sa.String(20), nullable=True),
            sa.Column('class_name', sa.String(20), nullable=True),
            sa.Column('student_number', sa.String(20), nullable=True),
            sa.Column('student_name', sa.String(255), nullable=True),
            sa.Column('student_surname', sa.String(255), nullable=True),
            sa.Column('student_nickname', sa.String(255), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['test_id'], ['assessments.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['retest_assignment_id'], ['retest_assignments.id'], ondelete='SET NULL'),
            sa.UniqueConstraint('student_id', 'test_id', 'attempt_number', name='uq_attempt_student_test_number'),
            sa.UniqueConstraint('student_id', 'test_id', 'idempotency_key', name='uq_attempt_idempotency'),
        )
    if not index_exists('ix_attempts_test_id'):
        op.create_index('ix_attempts_test_id', 'attempts', ['test_id'])
    if not index_exists('ix_attempts_retest_assignment_id'):
        op.create_index('ix_attempts_retest_assignment_id', 'attempts', ['retest_assignment_id'])

    if not table_exists('best_attempts'):
        op.create_table(
            'best_attempts',
            sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
            sa.Column('student_id', sa.String(50), nullable=False),
            sa.Column('test_id', sa.BigInteger(), nullable=False),
            sa.Column('attempt_id', sa.BigInteger(), nullable=False),
            sa.Column('attempt_number', sa.Integer(), nullable=False),
            sa.Column('best_score', sa.Numeric(10, 2), nullable=True),
            sa.Column('best_max_score', sa.Numeric(10, 2), nullable=True),
            sa.Column('best_percentage', sa.Numeric(5, 2), nullable=True),
            sa.Column('attempt_count', sa.Integer(), nullable=False),
            sa.Column('refreshed_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['test_id'], ['assessments.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['attempt_id'], ['attempts.id'], ondelete='CASCADE'),
            sa.UniqueConstraint('student_id', 'test_id', name='uq_best_attempt_student_test'),
        )
    if not index_exists('ix_best_attempts_test_id'):
        op.create_index('ix_best_attempts_test_id', 'best_attempts', ['test_id'])

    if not table_exists('audit_logs'):
        op.create_table(
            'audit_logs',
            sa.Column('id', sa.BigInteger(), autoincrement=True, nullable=False),
            sa.Column('actor_role', sa.String(20), nullable=True),
            sa.Column('actor_id', sa.String(50), nullable=True),
            sa.Column('action', auditaction, nullable=False),
            sa.Column('resource_type', sa.String(100), nullable=False),
            sa.Column('resource_id', sa.String(100), nullable=True),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('extra_data', postgresql.JSONB(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.PrimaryKeyConstraint('id'),
        )
    if not index_exists('ix_audit_logs_actor_id'):
        op.create_index('ix_audit_logs_actor_id', 'audit_logs', ['actor_id'])
    if not index_exists('ix_audit_logs_action'):
        op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    if not index_exists('ix_audit_logs_created_at'):
        op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])


def downgrade() -> None:
    """Drop retest lifecycle tables."""
    for table_name in (
        'audit_logs',
        'best_attempts',
        'attempts',
        'assessment_results',
        'retest_targets',
        'retest_assignments',
        'assessments',
    ):
        if table_exists(table_name):
            op.drop_table(table_name)

    conn = op.get_bind()
    for name in ENUMS:
        conn.execute(sa.text(f"DROP TYPE IF EXISTS {name};"))
