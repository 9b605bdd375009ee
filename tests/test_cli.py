import json

from click.testing import CliRunner

from scrapeflow import cli as cli_module
from scrapeflow.channel import MemoryChannel
from scrapeflow.errors import PersistenceError
from scrapeflow.store import MemoryTaskStore


class DownStore(MemoryTaskStore):
    def create_task(self, task):
        raise PersistenceError("could not connect to server")


def _enqueue(monkeypatch, tmp_path, store, channel, product_config):
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps(product_config))
    monkeypatch.setattr(cli_module, "_connect", lambda settings: (store, channel))
    return CliRunner().invoke(
        cli_module.cli,
        [
            "enqueue",
            "--url",
            "https://x.com/list",
            "--data-type",
            "product",
            "--config",
            str(config_path),
        ],
    )


def test_enqueue(monkeypatch, tmp_path, store, channel, product_config):
    result = _enqueue(monkeypatch, tmp_path, store, channel, product_config)
    assert result.exit_code == 0
    assert "Enqueued task" in result.output
    assert store.stats() == {"pending": 1}


def test_enqueue_store_failure_exits_cleanly(monkeypatch, tmp_path, channel, product_config):
    result = _enqueue(monkeypatch, tmp_path, DownStore(), channel, product_config)
    assert result.exit_code == 1
    assert not isinstance(result.exception, PersistenceError)
    assert channel.messages("scraping-tasks") == []
