from carebot.database import build_engine_url


def test_sqlite_url_is_left_alone():
    assert build_engine_url("sqlite+aiosqlite:///./test.db") == ("sqlite+aiosqlite:///./test.db", {})


def test_postgres_url_is_made_asyncpg():
    url, connect_args = build_engine_url("postgres://user:pw@db.example.com:5432/carebot?sslmode=require")
    assert url == "postgresql+asyncpg://user:pw@db.example.com:5432/carebot"
    assert connect_args == {"ssl": "require"}


def test_other_query_params_survive():
    url, connect_args = build_engine_url("postgresql://user@localhost/carebot?application_name=bot")
    assert url == "postgresql+asyncpg://user@localhost/carebot?application_name=bot"
    assert connect_args == {}
