#!/usr/bin/env python3
"""
Prometheus exporter for Bobcat Helium miners.

This module polls a miner's HTTP diagnostic endpoints (/status.json and
/temp.json) on every Prometheus scrape and exposes the results in the
Prometheus text format on an HTTP endpoint.
"""
import argparse
import json
import logging
import math
import os
import platform
import re
import signal
import threading
import time
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Callable, TypedDict
from urllib.parse import urlsplit

import requests
import urllib3

from bobcat_exporter import __version__

# ======================
# Constants
# ======================

NAMESPACE = "bobcat"
STATUS_ENDPOINT = "/status.json"
TEMPERATURE_ENDPOINT = "/temp.json"
STATUS_SYNCED = "Synced"
UNIT_CELSIUS = "°C"
CONTENT_TYPE_METRICS = "text/plain; version=0.0.4; charset=utf-8"

INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1

# The miner serves a self-signed certificate on https; verification is off.
urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

logger = logging.getLogger(__name__)

# ======================
# Type Definitions
# ======================

class StatusPayload(TypedDict, total=False):
    """Raw /status.json fields as decoded; any may be missing."""
    status: str
    gap: str
    miner_height: str
    blockchain_height: str
    epoch: str

class TemperaturePayload(TypedDict, total=False):
    """Raw /temp.json fields as decoded; any may be missing."""
    timestamp: str
    temp0: int
    temp1: int
    unit: str

@dataclass(frozen=True)
class Target:
    """The single miner this exporter polls."""
    uri: str
    timeout: float

    def url_for(self, endpoint: str) -> str:
        return self.uri + endpoint

@dataclass(frozen=True)
class StatusDocument:
    status: str = ""
    gap: str = ""
    miner_height: str = ""
    blockchain_height: str = ""
    epoch: str = ""

@dataclass(frozen=True)
class TemperatureDocument:
    timestamp: str = ""
    temp0: int = 0
    temp1: int = 0
    unit: str = ""

@dataclass(frozen=True)
class MetricSnapshot:
    """
    Gauge values produced by one scrape.

    When the scrape failed (up == 0) every per-field value is None and
    nothing but the up gauge is exported for it.
    """
    up: float
    status: float | None = None
    status_gap: float | None = None
    status_miner_height: float | None = None
    status_blockchain_height: float | None = None
    status_epoch: float | None = None
    temperature_unit: float | None = None
    temperature_temp0: float | None = None
    temperature_temp1: float | None = None

class FetchError(Exception):
    """Raised when an endpoint cannot be fetched from the miner."""

    def __init__(self, endpoint: str, category: str, message: str):
        super().__init__(f"{endpoint}: {message}")
        self.endpoint = endpoint
        self.category = category

Fetch = Callable[[str], bytes]

# ======================
# Configuration
# ======================

DEFAULT_LISTEN_ADDRESS = ":9857"
DEFAULT_METRICS_PATH = "/metrics"
DEFAULT_MINER_URI = "http://localhost:9292"
DEFAULT_MINER_TIMEOUT = "30s"
DEFAULT_LOG_LEVEL = "INFO"

# file:// is accepted at startup but has no transport, so every scrape reports down.
SUPPORTED_SCHEMES = ("http", "https", "file")

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")

def parse_duration(value: str) -> float:
    """
    Parse a duration like '30s', '1m30s' or '500ms' into seconds.
    A bare number is taken as seconds.

    Raises:
        ValueError: If the value is not a valid duration
    """
    s = value.strip()
    if not s:
        raise ValueError("empty duration")
    try:
        seconds = float(s)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            raise ValueError(f"invalid duration {value!r}")
        return seconds
    sign = 1.0
    if s[0] in "+-":
        sign = -1.0 if s[0] == "-" else 1.0
        s = s[1:]
    total = 0.0
    pos = 0
    while pos < len(s):
        m = _DURATION_PART.match(s, pos)
        if not m:
            raise ValueError(f"invalid duration {value!r}")
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos == 0:
        raise ValueError(f"invalid duration {value!r}")
    return sign * total

def parse_listen_address(value: str) -> tuple[str, int]:
    """
    Split ':9857', 'host:9857' or '[::1]:9857' into (host, port).
    An empty host means all interfaces.

    Raises:
        ValueError: If the port is missing or not numeric
    """
    s = value.strip()
    if ":" not in s:
        raise ValueError(f"missing port in address {value!r}")
    host, port_s = s.rsplit(":", 1)
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port_s)

def validate_uri(uri: str) -> None:
    """Raise ValueError unless the miner URI parses with a supported scheme."""
    try:
        parts = urlsplit(uri)
    except ValueError as e:
        raise ValueError(f"cannot parse URI {uri!r}: {e}") from e
    if parts.scheme not in SUPPORTED_SCHEMES:
        raise ValueError(f"unsupported scheme: {parts.scheme!r}")

@dataclass(frozen=True)
class Config:
    listen_address: str
    metrics_path: str
    uri: str
    timeout: float
    log_level: str

def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bobcat_exporter",
        description="Prometheus exporter for Bobcat miners.",
    )
    parser.add_argument(
        "--web.listen-address", dest="listen_address", default=os.getenv("BOBCAT_EXPORTER_WEB_LISTEN_ADDRESS", DEFAULT_LISTEN_ADDRESS),
        help="Address to listen on for web interface and telemetry. "
             "(env BOBCAT_EXPORTER_WEB_LISTEN_ADDRESS)",
    )
    parser.add_argument(
        "--web.telemetry-path", dest="metrics_path", default=os.getenv("BOBCAT_EXPORTER_WEB_TELEMETRY_PATH", DEFAULT_METRICS_PATH),
        help="Path under which to expose metrics. (env BOBCAT_EXPORTER_WEB_TELEMETRY_PATH)",
    )
    parser.add_argument(
        "--bobcat.uri", dest="uri", default=os.getenv("BOBCAT_EXPORTER_MINER_URI", DEFAULT_MINER_URI),
        help="URI of Bobcat. (env BOBCAT_EXPORTER_MINER_URI)",
    )
    parser.add_argument(
        "--bobcat.timeout", dest="timeout", default=os.getenv("BOBCAT_EXPORTER_MINER_TIMEOUT", DEFAULT_MINER_TIMEOUT),
        help="Scrape timeout, e.g. 30s or 1m. (env BOBCAT_EXPORTER_MINER_TIMEOUT)",
    )
    parser.add_argument(
        "--log.level", dest="log_level", default=os.getenv("LOG_LEVEL", DEFAULT_LOG_LEVEL),
        help="Log level: DEBUG, INFO, WARNING, ERROR, CRITICAL. (env LOG_LEVEL)",
    )
    parser.add_argument(
        "--version", action="version",
        version=f"bobcat_exporter, version {__version__}",
    )
    return parser

def validate_configuration(args: argparse.Namespace) -> Config:
    """Validate parsed arguments and raise SystemExit listing every error."""
    errors: list[str] = []

    try:
        _, port = parse_listen_address(args.listen_address)
        if not (0 <= port <= 65535):
            errors.append(f"web.listen-address port must be between 0 and 65535, got {port}")
    except ValueError:
        errors.append(f"web.listen-address is not a valid address: {args.listen_address!r}")

    if not args.metrics_path.startswith("/"):
        errors.append(f"web.telemetry-path must start with '/', got {args.metrics_path!r}")

    try:
        validate_uri(args.uri)
    except ValueError as e:
        errors.append(f"bobcat.uri is invalid: {e}")

    timeout = 0.0
    try:
        timeout = parse_duration(args.timeout)
        if timeout <= 0:
            errors.append(f"bobcat.timeout must be > 0, got {args.timeout!r}")
    except ValueError:
        errors.append(f"bobcat.timeout is not a valid duration: {args.timeout!r}")

    log_level = args.log_level.upper()
    if not isinstance(logging.getLevelName(log_level), int):
        errors.append(f"log.level is not a valid level: {args.log_level!r}")

    if errors:
        raise SystemExit("Configuration errors:\n  " + "\n  ".join(errors))

    return Config(
        listen_address=args.listen_address,
        metrics_path=args.metrics_path,
        uri=args.uri,
        timeout=timeout,
        log_level=log_level,
    )

def load_config(argv: list[str] | None = None) -> Config:
    return validate_configuration(build_arg_parser().parse_args(argv))

# ======================
# Low-level miner communication
# ======================

class TargetFetcher:
    """
    Fetch raw endpoint bodies from the miner over HTTP(S).

    TLS certificate verification is disabled: Bobcat units commonly present a
    self-signed certificate. Re-enable it before pointing this at anything
    you do not control.
    """

    def __init__(self, target: Target, session: requests.Session | None = None):
        self.target = target
        self.session = session or requests.Session()

    def __call__(self, endpoint: str) -> bytes:
        return self.fetch(endpoint)

    def fetch(self, endpoint: str) -> bytes:
        """
        GET target.uri + endpoint and return the whole body.

        The target timeout bounds the whole request, body included, not
        just each socket operation.

        Raises:
            FetchError: On connection failure, timeout, non-2xx status or a
                body that cannot be read
        """
        url = self.target.url_for(endpoint)
        deadline = time.monotonic() + self.target.timeout
        try:
            with self.session.get(url, timeout=self.target.timeout, verify=False, stream=True) as resp:
                if not (200 <= resp.status_code < 300):
                    raise FetchError(endpoint, "http_status", f"HTTP status {resp.status_code}")
                chunks: list[bytes] = []
                # One byte per read so a trickling body cannot block past the deadline.
                for chunk in resp.iter_content(chunk_size=1):
                    chunks.append(chunk)
                    if time.monotonic() > deadline:
                        raise FetchError(
                            endpoint, "timeout", f"body not received within {self.target.timeout}s"
                        )
                return b"".join(chunks)
        except requests.RequestException as e:
            raise FetchError(endpoint, categorize_error(e), str(e)) from e

# ======================
# Error Categorization
# ======================

def categorize_error(error: Exception) -> str:
    """
    Categorize a requests exception for log messages.

    Returns:
        'timeout', 'connection', 'read' or 'other'
    """
    if isinstance(error, requests.Timeout):
        return "timeout"
    elif isinstance(error, requests.ConnectionError):
        return "connection"
    elif isinstance(error, (requests.exceptions.ChunkedEncodingError, requests.exceptions.ContentDecodingError)):
        return "read"
    else:
        return "other"

# ======================
# Parsing helpers
# ======================

_INT_LITERAL = re.compile(
    r"""
    (?P<hex>0[xX](?:_?[0-9a-fA-F])+)
    |(?P<bin>0[bB](?:_?[01])+)
    |(?P<oct>0[oO](?:_?[0-7])+)
    |(?P<legacy_oct>0(?:_?[0-7])*)
    |(?P<dec>[1-9](?:_?[0-9])*)
    """,
    re.VERBOSE,
)
_INT_BASES = {"hex": (16, 2), "bin": (2, 2), "oct": (8, 2), "legacy_oct": (8, 0), "dec": (10, 0)}

def parse_int_literal(value: str) -> int | None:
    """
    Parse an integer literal with base detection.

    Accepts an optional sign, then 0x/0b/0o prefixes, a bare leading 0 for
    octal, or plain decimal. Underscores may separate digits. The result must
    fit in a signed 64-bit integer. Returns None on failure.
    """
    s = value
    negative = False
    if s[:1] in ("+", "-"):
        negative = s[0] == "-"
        s = s[1:]
    m = _INT_LITERAL.fullmatch(s)
    if not m:
        return None
    base, skip = _INT_BASES[m.lastgroup]
    n = int(s[skip:].replace("_", ""), base)
    if negative:
        n = -n
    if not (INT64_MIN <= n <= INT64_MAX):
        return None
    return n

def int_numeric(value: str) -> float:
    """Integer literal as a gauge value; 0.0 when it does not parse."""
    n = parse_int_literal(value)
    return float(n) if n is not None else 0.0

def status_numeric(value: str) -> float:
    """1.0 only for the exact 'Synced' status."""
    return 1.0 if value == STATUS_SYNCED else 0.0

def unit_numeric(value: str) -> float:
    """1.0 only for the exact '°C' unit."""
    return 1.0 if value == UNIT_CELSIUS else 0.0

def _reject_constant(name: str):
    raise ValueError(f"invalid JSON literal {name}")

def _decode_object(body: bytes) -> dict:
    """
    Decode a JSON object; anything malformed or non-object becomes {}.

    Bodies are strict UTF-8: invalid bytes become U+FFFD instead of failing
    the document, a BOM is a syntax error, and NaN/Infinity are rejected.
    """
    try:
        data = json.loads(body.decode("utf-8", errors="replace"), parse_constant=_reject_constant)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}

def _lookup(data: dict, key: str):
    """Exact key first, then a case-insensitive match."""
    if key in data:
        return data[key]
    folded = key.casefold()
    for k, v in data.items():
        if isinstance(k, str) and k.casefold() == folded:
            return v
    return None

def _as_str(value) -> str | None:
    return value if isinstance(value, str) else None

def _as_int(value) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    if not (INT64_MIN <= value <= INT64_MAX):
        return None
    return value

def decode_status(body: bytes) -> StatusPayload:
    """Decode /status.json keeping only fields of the expected type."""
    data = _decode_object(body)
    payload: StatusPayload = {}
    for key in StatusPayload.__annotations__:
        v = _as_str(_lookup(data, key))
        if v is not None:
            payload[key] = v
    return payload

def decode_temperature(body: bytes) -> TemperaturePayload:
    """Decode /temp.json keeping only fields of the expected type."""
    data = _decode_object(body)
    payload: TemperaturePayload = {}
    for key in ("timestamp", "unit"):
        v = _as_str(_lookup(data, key))
        if v is not None:
            payload[key] = v
    for key in ("temp0", "temp1"):
        n = _as_int(_lookup(data, key))
        if n is not None:
            payload[key] = n
    return payload

def parse_status_document(body: bytes) -> StatusDocument:
    payload = decode_status(body)
    return StatusDocument(
        status=payload.get("status", ""),
        gap=payload.get("gap", ""),
        miner_height=payload.get("miner_height", ""),
        blockchain_height=payload.get("blockchain_height", ""),
        epoch=payload.get("epoch", ""),
    )

def parse_temperature_document(body: bytes) -> TemperatureDocument:
    payload = decode_temperature(body)
    return TemperatureDocument(
        timestamp=payload.get("timestamp", ""),
        temp0=payload.get("temp0", 0),
        temp1=payload.get("temp1", 0),
        unit=payload.get("unit", ""),
    )

# ======================
# Metric collection
# ======================

def scrape(fetch: Fetch) -> MetricSnapshot:
    """
    Fetch both endpoints and translate them into one snapshot.

    A failed fetch of either endpoint yields a snapshot with only up=0; the
    status values already computed are dropped when /temp.json fails.
    """
    try:
        status_body = fetch(STATUS_ENDPOINT)
    except FetchError as e:
        logger.warning(f"Can't scrape {STATUS_ENDPOINT} ({e.category}): {e}")
        return MetricSnapshot(up=0.0)

    status = parse_status_document(status_body)
    status_values = {
        "status": status_numeric(status.status),
        "status_gap": int_numeric(status.gap),
        "status_miner_height": int_numeric(status.miner_height),
        "status_blockchain_height": int_numeric(status.blockchain_height),
        "status_epoch": int_numeric(status.epoch),
    }

    try:
        temp_body = fetch(TEMPERATURE_ENDPOINT)
    except FetchError as e:
        logger.warning(f"Can't scrape {TEMPERATURE_ENDPOINT} ({e.category}): {e}")
        return MetricSnapshot(up=0.0)

    temperature = parse_temperature_document(temp_body)

    return MetricSnapshot(
        up=1.0,
        temperature_unit=unit_numeric(temperature.unit),
        temperature_temp0=float(temperature.temp0),
        temperature_temp1=float(temperature.temp1),
        **status_values,
    )

class Exporter:
    """
    Runs one scrape per collection request against a single target.

    Scrapes are serialized: concurrent callers of collect() wait for the
    in-flight scrape to finish and then run their own.
    """

    def __init__(self, target: Target, fetch: Fetch | None = None):
        self.target = target
        self.fetch = fetch or TargetFetcher(target)
        self.lock = threading.Lock()
        self.total_scrapes = 0
        self.last_snapshot: MetricSnapshot | None = None

    def collect(self) -> tuple[MetricSnapshot, int]:
        """Scrape once and return (snapshot, total scrapes so far)."""
        with self.lock:
            self.total_scrapes += 1
            scrape_start = time.time()
            snapshot = scrape(self.fetch)
            self.last_snapshot = snapshot
            logger.debug(
                f"Scraped {self.target.uri} (up={snapshot.up:g}) in {time.time() - scrape_start:.3f}s"
            )
            return snapshot, self.total_scrapes

    def render(self) -> str:
        snapshot, total_scrapes = self.collect()
        return render_metrics(snapshot, total_scrapes)

# ======================
# Exposition
# ======================

# (snapshot field, metric name, type, help)
METRICS: list[tuple[str, str, str, str]] = [
    ("status", "status", "gauge", "The current status of the miner (1 = 'SYNCED', 0 = 'SYNCING')."),
    ("status_gap", "status_gap", "gauge", "The current blockchain gap in the miner."),
    ("status_miner_height", "status_miner_height", "gauge", "The current blockchain height of the miner."),
    ("status_blockchain_height", "status_blockchain_height", "gauge",
     "The current blockchain height from the miner."),
    ("status_epoch", "status_epoch", "gauge", "The current epoch of the miner."),
    ("temperature_unit", "temperature_unit", "gauge",
     "The current unit temperature of the miner. (1 = '°C', 0 = '°F')"),
    ("temperature_temp0", "temperature_temp0", "gauge", "The current temperature (temp0) of the miner."),
    ("temperature_temp1", "temperature_temp1", "gauge", "The current temperature (temp1) of the miner."),
]

def _format_prometheus_labels(labels: dict[str, str]) -> str:
    parts = []
    for k, v in labels.items():
        v_str = str(v).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
        parts.append(f'{k}="{v_str}"')
    return ",".join(parts)

def render_metrics(snapshot: MetricSnapshot, total_scrapes: int) -> str:
    """Render one snapshot plus exporter counters in Prometheus text format."""
    lines: list[str] = []

    for field, name, mtype, help_text in METRICS:
        val = getattr(snapshot, field)
        if val is None:
            continue
        lines.append(f"# HELP {NAMESPACE}_{name} {help_text}")
        lines.append(f"# TYPE {NAMESPACE}_{name} {mtype}")
        lines.append(f"{NAMESPACE}_{name} {val}")

    lines.append(f"# HELP {NAMESPACE}_up The current health of the miner (1 = UP, 0 = DOWN).")
    lines.append(f"# TYPE {NAMESPACE}_up gauge")
    lines.append(f"{NAMESPACE}_up {snapshot.up}")

    lines.append(f"# HELP {NAMESPACE}_total_scrapes The total number of scrapes.")
    lines.append(f"# TYPE {NAMESPACE}_total_scrapes counter")
    lines.append(f"{NAMESPACE}_total_scrapes {float(total_scrapes)}")

    build_labels = _format_prometheus_labels({
        "version": __version__,
        "pythonversion": platform.python_version(),
    })
    lines.append(
        "# HELP bobcatexporter_build_info A metric with a constant '1' value labeled by version "
        "and pythonversion from which bobcat_exporter was built."
    )
    lines.append("# TYPE bobcatexporter_build_info gauge")
    lines.append(f"bobcatexporter_build_info{{{build_labels}}} 1")

    return "\n".join(lines) + "\n"

def landing_page(metrics_path: str) -> str:
    return (
        "<html><head><title>Bobcat Exporter</title></head><body>"
        "<h1>Bobcat Exporter</h1>"
        f"<p><a href='{metrics_path}'>Metrics</a></p>"
        "</body></html>"
    )

# ======================
# HTTP Handler
# ======================

class BobcatHandler(BaseHTTPRequestHandler):
    exporter: Exporter
    metrics_path: str = "/metrics"

    def do_GET(self):
        self.dispatch(send_body=True)

    def do_HEAD(self):
        self.dispatch(send_body=False)

    # Every method is served the same way as GET.
    do_POST = do_PUT = do_PATCH = do_DELETE = do_OPTIONS = do_GET

    def dispatch(self, send_body: bool):
        if urlsplit(self.path).path == self.metrics_path:
            self.handle_metrics(send_body)
        else:
            self.handle_landing(send_body)

    def log_message(self, fmt, *args):
        return

    def handle_landing(self, send_body: bool = True):
        body = landing_page(self.metrics_path).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if send_body:
            self.wfile.write(body)

    def handle_metrics(self, send_body: bool = True):
        body = self.exporter.render().encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", CONTENT_TYPE_METRICS)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if send_body:
            self.wfile.write(body)

def make_handler(exporter: Exporter, metrics_path: str) -> type[BobcatHandler]:
    """Bind an exporter and metrics path to a fresh handler class."""
    return type(
        "BoundBobcatHandler",
        (BobcatHandler,),
        {"exporter": exporter, "metrics_path": metrics_path},
    )

def make_server(config: Config, exporter: Exporter) -> ThreadingHTTPServer:
    """
    Bind the HTTP server.

    Raises:
        OSError: If the listen address cannot be bound
    """
    host, port = parse_listen_address(config.listen_address)
    server = ThreadingHTTPServer((host, port), make_handler(exporter, config.metrics_path))
    server.daemon_threads = True
    return server

# ======================
# Logging Setup
# ======================

def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

# ======================
# Main
# ======================

def main(argv: list[str] | None = None) -> None:
    """Main entry point for the exporter."""
    config = load_config(argv)
    setup_logging(config.log_level)

    logger.info(f"Starting bobcat_exporter v{__version__} (python {platform.python_version()})")

    target = Target(uri=config.uri, timeout=config.timeout)
    exporter = Exporter(target)

    try:
        server = make_server(config, exporter)
    except OSError as e:
        logger.critical(f"Cannot listen on {config.listen_address}: {e}")
        raise SystemExit(1) from e

    shutdown_requested = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        shutdown_requested.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info(
        f"Listening on {config.listen_address}, metrics at {config.metrics_path}, "
        f"scraping {target.uri} (timeout {target.timeout}s)"
    )

    def serve():
        try:
            server.serve_forever()
        except Exception as e:
            logger.error(f"HTTP server error: {e}")
            shutdown_requested.set()

    server_thread = threading.Thread(target=serve, name="http-server", daemon=True)
    server_thread.start()

    try:
        while not shutdown_requested.is_set():
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        shutdown_requested.set()
    finally:
        logger.info("Shutting down HTTP server...")
        server.shutdown()
        server.server_close()
        logger.info("Exporter shutdown complete")

if __name__ == "__main__":
    main()
