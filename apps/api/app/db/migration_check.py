from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine

from app.config import is_production_mode, settings
from app.db.base import Base
from app.observability import log_event

_ALEMBIC_VERSION_TABLE = "alembic_version"


@dataclass(frozen=True)
class SchemaState:
    current: Optional[str]
    head: str

    @property
    def up_to_date(self) -> bool:
        return self.current == self.head


def _alembic_ini_path() -> Path:
    return Path(__file__).resolve().parents[2] / "alembic.ini"


def _alembic_config() -> Config:
    ini_path = _alembic_ini_path()
    config = Config(str(ini_path))
    # script_location in alembic.ini is relative to apps/api
    config.set_main_option("script_location", str(ini_path.parent / "app" / "db" / "migrations"))
    return config


def get_alembic_head_revision() -> str:
    script = ScriptDirectory.from_config(_alembic_config())
    return script.get_current_head()


def get_current_db_revision(engine: Engine) -> Optional[str]:
    inspector = inspect(engine)
    if not inspector.has_table(_ALEMBIC_VERSION_TABLE):
        return None

    with engine.connect() as connection:
        result = connection.execute(text("SELECT version_num FROM alembic_version LIMIT 1"))
        return result.scalar_one_or_none()


def read_schema_state(engine: Engine) -> SchemaState:
    return SchemaState(current=get_current_db_revision(engine), head=get_alembic_head_revision())


def assert_db_is_up_to_date(engine: Engine) -> None:
    state = read_schema_state(engine)
    if not state.up_to_date:
        log_event(f"schema_out_of_date:{state.current}->{state.head}", level=logging.ERROR)
        raise RuntimeError("Database schema not up to date. Run: alembic upgrade head")


def maybe_create_schema(engine: Engine) -> None:
    if not settings.auto_create_schema:
        return
    if is_production_mode():
        raise RuntimeError("ORDERFLOW_AUTO_CREATE_SCHEMA must be disabled in production mode")

    Base.metadata.create_all(bind=engine)
