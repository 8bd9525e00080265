import pytest
from sqlalchemy import inspect

from backend.db.config import create_db_engine, drop_db, get_db, init_db
from backend.models.database import Entry, Setting


def test_get_db_commits_on_success(session_factory) -> None:
    with get_db(session_factory) as db:
        db.add(Setting(key="k", value="v"))

    with get_db(session_factory) as db:
        assert db.get(Setting, "k").value == "v"


def test_get_db_rolls_back_and_reraises(session_factory) -> None:
    with pytest.raises(RuntimeError):
        with get_db(session_factory) as db:
            db.add(Entry(id="x", title="never stored"))
            db.flush()
            raise RuntimeError("boom")

    with get_db(session_factory) as db:
        assert db.get(Entry, "x") is None


def test_init_and_drop_tables() -> None:
    engine = create_db_engine("sqlite://")

    init_db(engine)
    assert {"entries", "settings"} <= set(inspect(engine).get_table_names())

    drop_db(engine)
    assert inspect(engine).get_table_names() == []

    engine.dispose()
