from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from sqlalchemy import Connection, Engine, inspect, text


@dataclass(frozen=True)
class MigrationStep:
    version: int
    name: str
    apply: Callable[[Connection], None]


def _ensure_schema_migrations_table(conn: Connection) -> None:
    conn.execute(
        text(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name VARCHAR(255) NOT NULL,
                applied_at DATETIME NOT NULL DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
    )


def _table_exists(conn: Connection, table_name: str) -> bool:
    inspector = inspect(conn)
    return inspector.has_table(table_name)


def _index_exists(conn: Connection, table_name: str, index_name: str) -> bool:
    if not _table_exists(conn, table_name):
        return False

    if conn.engine.dialect.name == "sqlite":
        rows = conn.execute(text(f"PRAGMA index_list('{table_name}')")).mappings().all()
        return any(str(row["name"]) == index_name for row in rows)

    inspector = inspect(conn)
    indexes = inspector.get_indexes(table_name)
    return any(index.get("name") == index_name for index in indexes)


def _migration_0001_baseline(_conn: Connection) -> None:
    return


def _resolve_duplicate_active_fingerprints(conn: Connection) -> None:
    # keep the newest active job per fingerprint, fail the rest
    conn.execute(
        text(
            """
            UPDATE jobs
            SET state = 'failed',
                error_code = 'DUPLICATE_ACTIVE_JOB',
                error_message = 'Superseded by a newer active job for the same fingerprint',
                finished_at = CURRENT_TIMESTAMP
            WHERE id IN (
                SELECT id FROM (
                    SELECT id,
                           ROW_NUMBER() OVER (PARTITION BY fingerprint ORDER BY created_at DESC, id DESC) AS row_num
                    FROM jobs
                    WHERE state IN ('pending', 'debouncing', 'dispatching', 'partially_failed')
                ) ranked
                WHERE row_num > 1
            )
            """
        )
    )


def _migration_0002_single_active_job_per_fingerprint(conn: Connection) -> None:
    if not _table_exists(conn, "jobs"):
        return
    _resolve_duplicate_active_fingerprints(conn)
    if not _index_exists(conn, "jobs", "ux_jobs_active_fingerprint"):
        conn.execute(
            text(
                "CREATE UNIQUE INDEX ux_jobs_active_fingerprint "
                "ON jobs (fingerprint) "
                "WHERE state IN ('pending', 'debouncing', 'dispatching', 'partially_failed')"
            )
        )


def _migration_0003_due_job_indexes(conn: Connection) -> None:
    if not _table_exists(conn, "jobs"):
        return
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_jobs_state_deadline ON jobs (state, debounce_deadline)"))
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_jobs_state_retry ON jobs (state, next_retry_at)"))
    conn.execute(text("CREATE INDEX IF NOT EXISTS ix_jobs_state_lease ON jobs (state, lease_expires_at)"))
    if _table_exists(conn, "job_targets"):
        conn.execute(
            text("CREATE INDEX IF NOT EXISTS ix_job_targets_job_position ON job_targets (job_id, position)")
        )


MIGRATIONS: tuple[MigrationStep, ...] = (
    MigrationStep(version=1, name="baseline", apply=_migration_0001_baseline),
    MigrationStep(
        version=2,
        name="single_active_job_per_fingerprint",
        apply=_migration_0002_single_active_job_per_fingerprint,
    ),
    MigrationStep(version=3, name="due_job_indexes", apply=_migration_0003_due_job_indexes),
)


def apply_migrations(engine: Engine) -> None:
    with engine.begin() as conn:
        _ensure_schema_migrations_table(conn)

        existing_versions = {
            int(row[0])
            for row in conn.execute(text("SELECT version FROM schema_migrations ORDER BY version ASC")).all()
        }

        for step in MIGRATIONS:
            if step.version in existing_versions:
                continue

            step.apply(conn)
            conn.execute(
                text("INSERT INTO schema_migrations(version, name) VALUES (:version, :name)"),
                {"version": step.version, "name": step.name},
            )
