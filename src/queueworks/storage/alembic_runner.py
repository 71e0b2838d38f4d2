"""Run the queueworks job-store migrations (``alembic/versions``) from code."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _config(db_path: Path | None = None) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    if db_path is not None:
        config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Create or upgrade the jobs, job events and schedule slot tables."""

    command.upgrade(_config(db_path), "head")


def head_revision() -> str | None:
    """Newest migration revision shipped with the package."""

    return ScriptDirectory.from_config(_config()).get_current_head()
