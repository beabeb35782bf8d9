"""Tests for the HTTP fetcher against a local fake miner."""
import socket
import threading
import time

import pytest

from bobcat_exporter.exporter import (
    STATUS_ENDPOINT,
    TEMPERATURE_ENDPOINT,
    Exporter,
    FetchError,
    Target,
    TargetFetcher,
)


def test_fetch_returns_body(fake_miner):
    fake_miner.set(STATUS_ENDPOINT, '{"status":"Synced"}')
    fetcher = TargetFetcher(Target(uri=fake_miner.uri, timeout=5.0))
    assert fetcher.fetch(STATUS_ENDPOINT) == b'{"status":"Synced"}'
    assert fake_miner.requests == [STATUS_ENDPOINT]


@pytest.mark.parametrize("status", [201, 204, 299])
def test_fetch_accepts_any_2xx(fake_miner, status):
    fake_miner.set(STATUS_ENDPOINT, "" if status == 204 else "{}", status=status)
    fetcher = TargetFetcher(Target(uri=fake_miner.uri, timeout=5.0))
    fetcher.fetch(STATUS_ENDPOINT)


@pytest.mark.parametrize("status", [301, 404, 500, 503])
def test_fetch_non_2xx_raises(fake_miner, status):
    fake_miner.set(TEMPERATURE_ENDPOINT, "{}", status=status)
    fetcher = TargetFetcher(Target(uri=fake_miner.uri, timeout=5.0))
    with pytest.raises(FetchError) as exc_info:
        fetcher.fetch(TEMPERATURE_ENDPOINT)
    assert exc_info.value.category == "http_status"
    assert exc_info.value.endpoint == TEMPERATURE_ENDPOINT
    assert f"HTTP status {status}" in str(exc_info.value)


def test_fetch_timeout_raises(fake_miner):
    fake_miner.set(STATUS_ENDPOINT, "{}", delay=5.0)
    fetcher = TargetFetcher(Target(uri=fake_miner.uri, timeout=0.2))
    with pytest.raises(FetchError) as exc_info:
        fetcher.fetch(STATUS_ENDPOINT)
    assert exc_info.value.category == "timeout"


def test_fetch_connection_refused_raises():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    fetcher = TargetFetcher(Target(uri=f"http://127.0.0.1:{port}", timeout=1.0))
    with pytest.raises(FetchError) as exc_info:
        fetcher.fetch(STATUS_ENDPOINT)
    assert exc_info.value.category == "connection"
    assert exc_info.value.__cause__ is not None


def test_exporter_end_to_end_against_miner(fake_miner):
    fake_miner.set(
        STATUS_ENDPOINT,
        '{"status":"Synced","gap":"0","miner_height":"1234","blockchain_height":"1234","epoch":"42"}',
    )
    fake_miner.set(TEMPERATURE_ENDPOINT, '{"timestamp":"x","temp0":45,"temp1":50,"unit":"°C"}')
    exporter = Exporter(Target(uri=fake_miner.uri, timeout=5.0))
    snapshot, total = exporter.collect()
    assert total == 1
    assert snapshot.up == 1.0
    assert snapshot.status_epoch == 42.0
    assert snapshot.temperature_unit == 1.0
    assert snapshot.temperature_temp1 == 50.0


def test_exporter_temperature_503_reports_down(fake_miner):
    fake_miner.set(STATUS_ENDPOINT, '{"status":"Synced"}')
    fake_miner.set(TEMPERATURE_ENDPOINT, "Service Unavailable", status=503)
    exporter = Exporter(Target(uri=fake_miner.uri, timeout=5.0))
    snapshot, _ = exporter.collect()
    assert snapshot.up == 0.0
    assert snapshot.temperature_temp0 is None
    assert fake_miner.requests == [STATUS_ENDPOINT, TEMPERATURE_ENDPOINT]


@pytest.fixture
def trickling_miner():
    """Sends headers at once, then the body one byte at a time."""
    stop = threading.Event()
    listener = socket.socket()
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    body = b'{"status":"Synced"}'

    def serve():
        conn, _ = listener.accept()
        with conn:
            conn.recv(65536)
            conn.sendall(
                b"HTTP/1.1 200 OK\r\nContent-Type: application/json\r\n"
                + f"Content-Length: {len(body)}\r\n\r\n".encode("ascii")
            )
            for i in range(len(body)):
                if stop.wait(0.3):
                    return
                try:
                    conn.sendall(body[i:i + 1])
                except OSError:
                    return

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{listener.getsockname()[1]}"
    finally:
        stop.set()
        listener.close()
        thread.join(timeout=2)


def test_fetch_timeout_bounds_slow_body(trickling_miner):
    fetcher = TargetFetcher(Target(uri=trickling_miner, timeout=1.0))
    start = time.monotonic()
    with pytest.raises(FetchError) as exc_info:
        fetcher.fetch(STATUS_ENDPOINT)
    elapsed = time.monotonic() - start
    assert exc_info.value.category == "timeout"
    assert elapsed < 2.5


def test_fetch_file_uri_reports_failure():
    fetcher = TargetFetcher(Target(uri="file:///var/lib/bobcat", timeout=1.0))
    with pytest.raises(FetchError) as exc_info:
        fetcher.fetch(STATUS_ENDPOINT)
    assert exc_info.value.category == "other"


def test_exporter_with_file_uri_is_down():
    exporter = Exporter(Target(uri="file:///var/lib/bobcat", timeout=1.0))
    snapshot, _ = exporter.collect()
    assert snapshot.up == 0.0
