from marketsync.db.session import create_engine_from_env


def test_engine_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'market.db'}")
    engine = create_engine_from_env()
    assert engine.dialect.name == "sqlite"
    engine.dispose()
