from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine, text

from mediapulse.db.migrations import MIGRATIONS, apply_migrations


def _index_names(conn, table_name: str) -> set[str]:
    rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
    return {str(row["name"]) for row in rows}


def test_apply_migrations_resolves_duplicate_active_jobs(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    engine = create_engine(f"sqlite:///{db_path.as_posix()}", future=True)

    with engine.begin() as conn:
        conn.execute(
            text(
                """
                CREATE TABLE jobs (
                    id VARCHAR(36) PRIMARY KEY,
                    fingerprint VARCHAR(64) NOT NULL,
                    canonical_path TEXT NOT NULL,
                    state VARCHAR(32) NOT NULL,
                    debounce_deadline DATETIME NOT NULL,
                    next_retry_at DATETIME,
                    lease_expires_at DATETIME,
                    error_code VARCHAR(64),
                    error_message TEXT,
                    created_at DATETIME NOT NULL,
                    finished_at DATETIME
                )
                """
            )
        )
        conn.execute(
            text(
                """
                INSERT INTO jobs (id, fingerprint, canonical_path, state, debounce_deadline, created_at)
                VALUES
                    ('old', 'fp-1', '/media/a', 'debouncing', '2024-01-01 00:00:10', '2024-01-01 00:00:00'),
                    ('new', 'fp-1', '/media/a', 'partially_failed', '2024-01-01 00:01:10', '2024-01-01 00:01:00'),
                    ('done', 'fp-1', '/media/a', 'completed', '2023-12-31 00:00:10', '2023-12-31 00:00:00'),
                    ('other', 'fp-2', '/media/b', 'debouncing', '2024-01-01 00:00:10', '2024-01-01 00:00:00')
                """
            )
        )

    apply_migrations(engine)

    with engine.connect() as conn:
        states = dict(conn.execute(text("SELECT id, state FROM jobs")).all())
        assert states == {"old": "failed", "new": "partially_failed", "done": "completed", "other": "debouncing"}
        error_code = conn.execute(text("SELECT error_code FROM jobs WHERE id = 'old'")).scalar_one()
        assert error_code == "DUPLICATE_ACTIVE_JOB"

        indexes = _index_names(conn, "jobs")
        assert "ux_jobs_active_fingerprint" in indexes
        assert "ix_jobs_state_deadline" in indexes
        assert "ix_jobs_state_retry" in indexes

        versions = [row[0] for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version"))]
        assert versions == [step.version for step in MIGRATIONS]


def test_apply_migrations_is_idempotent(tmp_path: Path) -> None:
    engine = create_engine(f"sqlite:///{(tmp_path / 'fresh.sqlite3').as_posix()}", future=True)

    apply_migrations(engine)
    apply_migrations(engine)

    with engine.connect() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM schema_migrations")).scalar_one()
        assert count == len(MIGRATIONS)
