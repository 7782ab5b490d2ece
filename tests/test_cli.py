"""Tests for the umfab command line."""

import asyncio
import json
from unittest.mock import patch

import pytest
import yaml

from umfab import cli
from umfab.registry import ServiceDescriptor, ServiceRegistry
from umfab.store import MemoryStore

DESCRIPTOR = ServiceDescriptor(
    service_name="test-service", service_type="test", host="127.0.0.1", port=5000,
)


@pytest.fixture
def populated_store() -> MemoryStore:
    store = MemoryStore()
    asyncio.run(ServiceRegistry(store).register(DESCRIPTOR))
    return store


def _run_cli(store, argv):
    with patch("umfab.fabric.RedisStore.from_config", return_value=store):
        cli.main(argv)


def test_no_command_prints_help(capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli.main([])
    assert excinfo.value.code == 1
    assert "usage" in capsys.readouterr().out


def test_show_config(capsys, tmp_path):
    path = tmp_path / "umfab.yaml"
    path.write_text("service_name: from-file\nredis:\n  port: 6380\n")
    cli.main(["show-config", "--config", str(path), "--service-port", "5000", "--redis-host", "redis.local"])

    data = yaml.safe_load(capsys.readouterr().out)
    assert data["service_name"] == "from-file"
    assert data["service_port"] == 5000
    assert data["redis"]["url"] == "redis.local"
    assert data["redis"]["port"] == 6380


def test_services_text(capsys, populated_store):
    _run_cli(populated_store, ["services"])
    out = capsys.readouterr().out
    assert "test-service  type=test" in out
    assert "instances=1" in out


def test_presence_json(capsys, populated_store):
    _run_cli(populated_store, ["presence", "test-service", "--format", "json"])
    records = json.loads(capsys.readouterr().out)
    assert records[0]["instance_id"] == DESCRIPTOR.instance_id
    assert records[0]["process_id"] > 0


def test_find_missing_service_exits_with_error(capsys):
    with pytest.raises(SystemExit) as excinfo:
        _run_cli(MemoryStore(), ["find", "no-such-service"])
    assert excinfo.value.code == 1
    assert "Can't find no-such-service service" in capsys.readouterr().err


def test_send_reports_receivers(capsys):
    _run_cli(MemoryStore(), ["send", "test-service:/", "--body", '{"title": "hi"}', "--format", "json"])
    result = json.loads(capsys.readouterr().out)
    assert result["receivers"] == 0
    assert result["channel"] == "umfab:service:test-service:channel"


def test_send_rejects_bad_body(capsys):
    with pytest.raises(SystemExit):
        _run_cli(MemoryStore(), ["send", "test-service:/", "--body", "{not json"])
    assert "--body is not valid JSON" in capsys.readouterr().err


def test_formatters_handle_empty_results():
    assert cli._format_services([], {}, "text") == "(no services)"
    assert cli._format_presence([], "text") == "(no live instances)"
