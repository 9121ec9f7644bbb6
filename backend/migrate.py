from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config

from quizroom.db import check_db_connection, count_live_sessions


def run_migrations() -> None:
    root = Path(__file__).resolve().parent
    alembic_cfg = Config(str(root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(root / "alembic"))
    command.upgrade(alembic_cfg, "head")


if __name__ == "__main__":
    run_migrations()
    check_db_connection()
    print(f"Migrations complete. Live sessions: {count_live_sessions()}")
