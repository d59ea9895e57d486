"""Report retest targets and attempts that break the lifecycle invariants."""
from sqlalchemy import text

from retest_backend.core.database import engine

CHECKS = {
    "attempt_number outside 0..max_attempts": """
        SELECT id, assignment_id, student_id FROM retest_targets
        WHERE attempt_number < 0 OR attempt_number > max_attempts
    """,
    "completed target with an open status": """
        SELECT id, assignment_id, student_id FROM retest_targets
        WHERE is_completed AND status IN ('PENDING', 'IN_PROGRESS')
    """,
    "terminal status on a target that is not completed": """
        SELECT id, assignment_id, student_id FROM retest_targets
        WHERE NOT is_completed AND status IN ('PASSED', 'FAILED', 'EXPIRED')
    """,
    "passed target whose status is not PASSED": """
        SELECT id, assignment_id, student_id FROM retest_targets
        WHERE passed AND status <> 'PASSED'
    """,
    "completed target without completed_at": """
        SELECT id, assignment_id, student_id FROM retest_targets
        WHERE is_completed AND completed_at IS NULL
    """,
    "open target on a closed window (waiting for the expiry sweep)": """
        SELECT t.id, t.assignment_id, t.student_id FROM retest_targets t
        JOIN retest_assignments a ON a.id = t.assignment_id
        WHERE NOT t.is_completed AND a.window_end < CURRENT_TIMESTAMP
    """,
    "best attempt pointing at another student's or test's attempt": """
        SELECT b.id, b.test_id, b.student_id FROM best_attempts b
        JOIN attempts a ON a.id = b.attempt_id
        WHERE a.student_id <> b.student_id OR a.test_id <> b.test_id
    """,
}

problems = 0
with engine.connect() as conn:
    for label, query in CHECKS.items():
        rows = conn.execute(text(query)).all()
        if not rows:
            print(f"OK    {label}")
            continue
        problems += len(rows)
        print(f"FAIL  {label}: {len(rows)} row(s)")
        for row in rows[:20]:
            print(f"      id={row[0]} {row[1]}/{row[2]}")

print(f"\n{problems} problem row(s) found")
raise SystemExit(1 if problems else 0)
