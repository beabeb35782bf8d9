"""Shared fixtures: a local stand-in for the miner's HTTP API."""
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest


class FakeMiner:
    """Routes path -> (status code, body bytes, delay seconds)."""

    def __init__(self):
        self.routes: dict[str, tuple[int, bytes, float]] = {}
        self.requests: list[str] = []
        self.uri = ""

    def set(self, path: str, body: bytes | str, status: int = 200, delay: float = 0.0) -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[path] = (status, body, delay)


@pytest.fixture
def fake_miner():
    miner = FakeMiner()
    release = threading.Event()

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):
            miner.requests.append(self.path)
            status, body, delay = miner.routes.get(self.path, (404, b"not found", 0.0))
            if delay:
                release.wait(delay)
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, fmt, *args):
            return

    server = ThreadingHTTPServer(("127.0.0.1", 0), Handler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    miner.uri = f"http://127.0.0.1:{server.server_address[1]}"
    try:
        yield miner
    finally:
        release.set()
        server.shutdown()
        server.server_close()
