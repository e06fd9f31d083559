import socket
from types import SimpleNamespace

import psycopg2
import pytest
import requests

from frameworks_automation.health import (
    CheckTarget,
    ClickHouseChecker,
    HTTPChecker,
    KafkaChecker,
    PostgresChecker,
    TCPChecker,
    YugabyteChecker,
    check_all,
    new_checker,
    run_check,
)
from frameworks_automation.health import kafka as kafka_module
from frameworks_automation.health.postgres import detect_flavor


@pytest.fixture
def listener():
    server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    server.bind(("127.0.0.1", 0))
    server.listen(1)
    yield server
    server.close()


def _closed_port():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = probe.getsockname()[1]
    probe.close()
    return port


def test_tcp_checker_open_and_closed(listener):
    port = listener.getsockname()[1]
    result = TCPChecker(timeout=1.0, name="redis-platform").check("127.0.0.1", port)
    assert result.ok
    assert result.name == "redis-platform"
    assert result.latency is not None

    closed = TCPChecker(timeout=1.0).check("127.0.0.1", _closed_port())
    assert not closed.ok
    assert closed.status == "unhealthy"
    assert closed.name.startswith("tcp://127.0.0.1:")


class FakeResponse:
    def __init__(self, status_code, text="ok"):
        self.status_code = status_code
        self.text = text


@pytest.mark.parametrize(
    "code,ok,status",
    [(200, True, "healthy"), (204, True, "healthy"), (404, False, "degraded"), (503, False, "unhealthy")],
)
def test_http_checker_status_mapping(monkeypatch, code, ok, status):
    seen = {}

    def fake_get(url, timeout, verify):
        seen.update(url=url, timeout=timeout)
        return FakeResponse(code)

    monkeypatch.setattr(requests, "get", fake_get)
    result = HTTPChecker(path="health", timeout=2.0).check("10.0.0.1", 18001)
    assert (result.ok, result.status) == (ok, status)
    assert seen == {"url": "http://10.0.0.1:18001/health", "timeout": 2.0}
    assert result.metadata["status_code"] == code


def test_http_checker_connection_error(monkeypatch):
    def fake_get(url, timeout, verify):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(requests, "get", fake_get)
    result = new_checker("https", path="/status").check("10.0.0.1", 443)
    assert not result.ok
    assert result.error == "connection refused"
    assert result.metadata["url"] == "https://10.0.0.1:443/status"


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows
        self.queries = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, query, params=None):
        self.queries.append((query, params))

    def fetchone(self):
        query = self.queries[-1][0]
        if "version()" in query:
            return ("PostgreSQL 11.2-YB-2.20.1.0 on x86_64, YugabyteDB",)
        if "pg_stat_activity" in query:
            return (4,)
        return (1,)

    def fetchall(self):
        return self.rows


class FakeConnection:
    def __init__(self, rows=()):
        self.cursor_obj = FakeCursor(list(rows))
        self.closed = False

    def cursor(self):
        return self.cursor_obj

    def close(self):
        self.closed = True


def test_postgres_checker_reports_flavor(monkeypatch):
    connections = []

    def fake_connect(**params):
        connections.append(params)
        conn = FakeConnection()
        connections.append(conn)
        return conn

    monkeypatch.setattr(psycopg2, "connect", fake_connect)
    result = YugabyteChecker(password="secret").check("10.0.0.1", 5433)
    params, conn = connections
    assert params["user"] == "yugabyte"
    assert params["dbname"] == "yugabyte"
    assert params["password"] == "secret"
    assert result.ok
    assert result.metadata["flavor"] == "yugabyte"
    assert result.metadata["active_connections"] == 4
    assert conn.closed


def test_postgres_checker_connection_failure(monkeypatch):
    def fake_connect(**params):
        raise psycopg2.OperationalError("could not connect to server: Connection refused\n\tIs the server running?")

    monkeypatch.setattr(psycopg2, "connect", fake_connect)
    result = PostgresChecker().check("10.0.0.1", 5432)
    assert not result.ok
    assert result.error == "could not connect to server: Connection refused"


def test_postgres_database_check(monkeypatch):
    monkeypatch.setattr(psycopg2, "connect", lambda **params: FakeConnection([("commodore", True), ("purser", False)]))
    checker = PostgresChecker(name="postgres-databases")
    result = checker.check_databases("10.0.0.1", 5432, ["purser", "commodore", "periscope"])
    assert not result.ok
    assert "missing: periscope" in result.error
    assert "connections disallowed: purser" in result.error

    monkeypatch.setattr(psycopg2, "connect", lambda **params: FakeConnection([("commodore", True)]))
    assert checker.check_databases("10.0.0.1", 5432, ["commodore"]).ok


def test_detect_flavor():
    assert detect_flavor("PostgreSQL 16.2 on x86_64-pc-linux-gnu") == "postgres"
    assert detect_flavor("PostgreSQL 11.2-YB-2.20.1.0 YugabyteDB") == "yugabyte"


class FakeAdmin:
    controller_id = 1
    settings = None

    def __init__(self, settings):
        FakeAdmin.settings = settings

    def list_topics(self, timeout):
        return SimpleNamespace(
            topics={"analytics_events": object(), "__consumer_offsets": object()},
            brokers={1: object()},
            controller_id=self.controller_id,
        )


def test_kafka_checker(monkeypatch):
    monkeypatch.setattr(kafka_module, "AdminClient", FakeAdmin)
    result = KafkaChecker(timeout=2.0).check("10.0.0.1", 9092)
    assert result.ok
    assert result.metadata == {"topics": 1, "brokers": 1, "controller_id": 1}
    assert FakeAdmin.settings["bootstrap.servers"] == "10.0.0.1:9092"
    assert FakeAdmin.settings["socket.timeout.ms"] == 2000


def test_kafka_checker_without_controller_is_degraded(monkeypatch):
    class Leaderless(FakeAdmin):
        controller_id = -1

    monkeypatch.setattr(kafka_module, "AdminClient", Leaderless)
    result = KafkaChecker().check("10.0.0.1", 9092)
    assert not result.ok
    assert result.status == "degraded"


class FakeClickHouse:
    def __init__(self, alive=True):
        self.alive = alive
        self.closed = False

    def ping(self):
        return self.alive

    def command(self, query, parameters=None):
        if "version()" in query:
            return "24.3.1.2672"
        if "uptime()" in query:
            return 3600
        if "system.tables" in query:
            return 12
        return 1

    def close(self):
        self.closed = True


def test_clickhouse_checker(monkeypatch):
    import clickhouse_connect

    seen = {}

    def fake_client(**kwargs):
        seen.update(kwargs)
        return FakeClickHouse()

    monkeypatch.setattr(clickhouse_connect, "get_client", fake_client)
    result = ClickHouseChecker(user="frameworks", password="pw", database="periscope").check("10.0.0.2", 8123)
    assert result.ok
    assert result.message == "clickhouse 24.3.1.2672"
    assert result.metadata["tables"] == 12
    assert (seen["host"], seen["port"], seen["username"]) == ("10.0.0.2", 8123, "frameworks")

    monkeypatch.setattr(clickhouse_connect, "get_client", lambda **kwargs: FakeClickHouse(alive=False))
    failed = ClickHouseChecker().check("10.0.0.2", 8123)
    assert not failed.ok
    assert failed.error == "ping failed"


def test_new_checker_rejects_unknown_protocol():
    with pytest.raises(ValueError, match="unknown health check protocol 'smtp'"):
        new_checker("smtp")


def test_run_check_reports_unavailable_checker():
    result = run_check(CheckTarget("mail", "smtp", "10.0.0.1", 25))
    assert not result.ok
    assert result.status == "unknown"
    assert "smtp" in result.error


def test_check_all_preserves_order(listener):
    open_port = listener.getsockname()[1]
    targets = [
        CheckTarget("closed", "tcp", "127.0.0.1", _closed_port()),
        CheckTarget("open", "tcp", "127.0.0.1", open_port),
        CheckTarget("mystery", "gopher", "127.0.0.1", 70),
    ]
    results = check_all(targets, timeout=1.0)
    assert [r.name for r in results] == ["closed", "open", "mystery"]
    assert [r.ok for r in results] == [False, True, False]
    assert check_all([]) == []


def test_result_to_dict():
    result = TCPChecker(name="zookeeper-1").unhealthy("10.0.0.1", 2181, "refused", 0.25, attempts={1, 2})
    data = result.to_dict()
    assert data["name"] == "zookeeper-1"
    assert data["status"] == "unhealthy"
    assert data["error"] == "refused"
    assert data["latency"] == 0.25
    assert sorted(data["metadata"]["attempts"]) == [1, 2]
    assert "checked_at" in data


class BrokenClickHouse(FakeClickHouse):
    def command(self, query, parameters=None):
        raise RuntimeError("Code: 516. DB::Exception: default: Authentication failed\nStack trace:")


def test_clickhouse_checker_closes_client_on_failure(monkeypatch):
    import clickhouse_connect

    clients = []

    def fake_client(factory):
        def make(**kwargs):
            clients.append(factory())
            return clients[-1]

        return make

    monkeypatch.setattr(clickhouse_connect, "get_client", fake_client(lambda: FakeClickHouse(alive=False)))
    assert ClickHouseChecker().check("10.0.0.2", 8123).error == "ping failed"

    monkeypatch.setattr(clickhouse_connect, "get_client", fake_client(BrokenClickHouse))
    failed = ClickHouseChecker().check("10.0.0.2", 8123)
    assert failed.error == "Code: 516. DB::Exception: default: Authentication failed"

    monkeypatch.setattr(clickhouse_connect, "get_client", fake_client(FakeClickHouse))
    assert ClickHouseChecker().check("10.0.0.2", 8123).ok

    assert [client.closed for client in clients] == [True, True, True]
