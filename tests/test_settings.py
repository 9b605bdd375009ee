from scrapeflow.settings import DEAD_LETTER_TOPIC, Settings, get_db_connection_string


def _clear(monkeypatch):
    for name in ("DATABASE_URL", "PG_DSN", "PG_HOST", "PG_PORT", "PG_USER", "PG_PASS", "PG_DB"):
        monkeypatch.delenv(name, raising=False)


def test_connection_string_precedence(monkeypatch):
    _clear(monkeypatch)
    monkeypatch.setenv("PG_HOST", "db")
    monkeypatch.setenv("PG_DB", "jobs")
    assert get_db_connection_string() == "postgresql://scrapeflow:scrapeflow@db:5432/jobs"

    monkeypatch.setenv("PG_DSN", "postgresql://pg-dsn")
    assert get_db_connection_string() == "postgresql://pg-dsn"

    monkeypatch.setenv("DATABASE_URL", "postgresql://database-url")
    assert get_db_connection_string() == "postgresql://database-url"


def test_from_env(monkeypatch, tmp_path):
    _clear(monkeypatch)
    env_file = tmp_path / ".env"
    env_file.write_text("SCRAPEFLOW_PARTITIONS=8\nSCRAPEFLOW_HEADLESS=false\n")
    monkeypatch.setenv("SCRAPEFLOW_POLL_INTERVAL", "0.25")
    # Registered so that values loaded from the file are removed afterwards.
    for name in ("SCRAPEFLOW_PARTITIONS", "SCRAPEFLOW_HEADLESS"):
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)

    settings = Settings.from_env(env_file)
    assert settings.partitions == 8
    assert settings.headless is False
    assert settings.poll_interval == 0.25
    assert settings.dead_letter_topic == DEAD_LETTER_TOPIC
    assert settings.dsn.startswith("postgresql://")
