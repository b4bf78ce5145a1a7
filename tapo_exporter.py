from __future__ import annotations

import ipaddress
import json
import logging
import os
import signal
import sys
from dataclasses import dataclass, field
from socketserver import ThreadingMixIn
from threading import Thread
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlparse
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

import click
import requests
import yaml
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest
from prometheus_client.core import GaugeMetricFamily
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector

from tapo_client import ENCRYPTION_TYPES, TapoClient
from tapo_metrics import TapoMetrics
from tapo_poller import ENERGY_FAILURE_POLICIES, FatalPollError, TapoPoller

EXPORTER_VERSION = "1.0.0"


class ConfigError(Exception):
    pass


@dataclass
class ExporterConfig:
    username: str
    password: str
    devices: List[str] = field(default_factory=list)
    devices_url: Optional[str] = None


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        return


def setup_logging(level: str) -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(message)s")


def parse_listen_address(s: str) -> Tuple[str, int]:
    s = s.strip()
    if s.startswith(":"):
        return "", int(s[1:])
    if s.startswith("[") and "]:" in s:
        host, port_s = s[1:].split("]:", 1)
        return host, int(port_s)
    if ":" in s:
        host, port_s = s.rsplit(":", 1)
        return host, int(port_s)
    return "", int(s)


def parse_address(s: str) -> str:
    return str(ipaddress.ip_address(s.strip()))


def load_config_file(path: str) -> ExporterConfig:
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = f.read()
    except OSError as e:
        raise ConfigError(f"failed to read config file: {e}") from e

    try:
        if path.lower().endswith(".json"):
            data = json.loads(raw)
        else:
            data = yaml.safe_load(raw)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigError(f"failed to parse config file: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("config root must be an object")
    return to_exporter_config(data)


def to_exporter_config(data: Dict[str, Any]) -> ExporterConfig:
    username = data.get("username")
    password = data.get("password")
    if not isinstance(username, str) or not isinstance(password, str):
        raise ConfigError("config must include 'username' and 'password' strings")

    devices = data.get("devices") or []
    if not isinstance(devices, list):
        raise ConfigError("'devices' must be a list of IP addresses")
    parsed: List[str] = []
    for d in devices:
        try:
            parsed.append(parse_address(str(d)))
        except ValueError as e:
            raise ConfigError(f"invalid device address {d!r}") from e

    devices_url = data.get("devices_url")
    if devices_url is not None and not isinstance(devices_url, str):
        raise ConfigError("'devices_url' must be a string")

    return ExporterConfig(username=username, password=password, devices=parsed, devices_url=devices_url or None)


def parse_device_list(text: str) -> List[str]:
    out: List[str] = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            out.append(parse_address(line))
        except ValueError:
            logging.warning("Skip invalid IP address '%s'", line)
    return out


def fetch_device_list(url: str, timeout_seconds: float = 10.0) -> List[str]:
    """Read extra plug addresses, one per line, from an http(s) or file URL."""
    logging.info("Retrieving devices list from '%s'", url)
    u = urlparse(url)
    if u.scheme == "file":
        path = os.path.join(u.netloc, u.path.lstrip("/")) if u.netloc else u.path
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise ConfigError(f"failed to read '{path}': {e}") from e
    elif u.scheme in ("http", "https"):
        try:
            resp = requests.get(url, timeout=timeout_seconds)
        except requests.RequestException as e:
            raise ConfigError(f"failed to retrieve devices URL '{url}': {e}") from e
        if resp.status_code != 200:
            raise ConfigError(f"HTTP request failed, expected 200 OK, got {resp.status_code} {resp.reason}")
        text = resp.text
    else:
        raise ConfigError(f"unsupported devices URL scheme '{u.scheme}'")

    addrs = parse_device_list(text)
    logging.info("Got %d devices from URL", len(addrs))
    return addrs


def validate_devices(devices: Iterable[str]) -> List[str]:
    """Drop duplicate addresses, keeping first-seen order."""
    seen: Dict[str, None] = {}
    for d in devices:
        if d in seen:
            logging.info("Ignoring duplicate device %s", d)
            continue
        seen[d] = None
    if not seen:
        raise ConfigError("device list is empty")
    return list(seen)


def resolve_devices(cfg: ExporterConfig) -> List[str]:
    devices = list(cfg.devices)
    if cfg.devices_url:
        devices += fetch_device_list(cfg.devices_url)
    return validate_devices(devices)


class ExporterCollector:
    """Exporter-level series: build info and the last poll cycle."""

    def __init__(self, poller: TapoPoller) -> None:
        self.poller = poller

    def collect(self):
        build = GaugeMetricFamily("tapo_exporter_build_info", "Exporter build information.", labels=["version", "python"])
        build.add_metric([EXPORTER_VERSION, sys.version.split()[0]], 1.0)

        dur = GaugeMetricFamily("tapo_last_poll_duration_seconds", "Duration of the last poll cycle over all plugs.")
        ts = GaugeMetricFamily("tapo_last_poll_timestamp_seconds", "Unix timestamp of the end of the last poll cycle.")
        with self.poller.lock:
            dur.add_metric([], float(self.poller.last_poll_duration))
            ts.add_metric([], float(self.poller.last_poll_cycle_ts))

        yield build
        yield dur
        yield ts


def make_app(registry: CollectorRegistry, telemetry_path: str, poller: TapoPoller, ready_grace_seconds: float):
    """WSGI app serving the exposition page plus liveness and readiness checks."""
    plain = "text/plain; charset=utf-8"

    def metrics_page() -> Tuple[str, str, bytes]:
        return "200 OK", CONTENT_TYPE_LATEST, generate_latest(registry)

    def healthy() -> Tuple[str, str, bytes]:
        return "200 OK", plain, b"ok"

    def ready() -> Tuple[str, str, bytes]:
        if poller.is_ready(ready_grace_seconds):
            return "200 OK", plain, b"ready"
        return "503 Service Unavailable", plain, b"not_ready"

    routes = {
        telemetry_path: metrics_page,
        "/": metrics_page,
        "/-/healthy": healthy,
        "/healthz": healthy,
        "/-/ready": ready,
        "/readyz": ready,
    }

    def app(environ, start_response):
        handler = routes.get(environ.get("PATH_INFO", ""))
        if handler is None:
            status, content_type, body = "404 Not Found", plain, b"not found"
        else:
            status, content_type, body = handler()
        start_response(status, [("Content-Type", content_type), ("Content-Length", str(len(body)))])
        return [body]

    return app


def run(
    config_file: str,
    listen_address: str = ":9105",
    telemetry_path: str = "/metrics",
    interval: float = 60.0,
    retry_interval: float = 2.0,
    stop_on_klap_error: bool = False,
    energy_failure: str = "fatal",
    max_parallel: int = 1,
    timeout: float = 5.0,
    encryption: str = "aes",
) -> int:
    try:
        cfg = load_config_file(config_file)
        devices = resolve_devices(cfg)
        host, port = parse_listen_address(listen_address)
    except ConfigError as e:
        logging.error("Failed to load configuration from '%s': %s", config_file, e)
        return 1
    except ValueError as e:
        logging.error("Invalid listen address '%s': %s", listen_address, e)
        return 1
    logging.info("config_file=%s", config_file)

    registry = CollectorRegistry()
    try:
        ProcessCollector(registry=registry)
        PlatformCollector(registry=registry)
        metrics = TapoMetrics(registry)
    except ValueError as e:
        logging.error("Failed to register metrics: %s", e)
        return 1

    client = TapoClient(timeout_seconds=timeout, encryption=encryption)
    poller = TapoPoller(
        client=client,
        metrics=metrics,
        addresses=devices,
        username=cfg.username,
        password=cfg.password,
        poll_interval_seconds=interval,
        retry_interval_seconds=retry_interval,
        stop_on_klap_error=stop_on_klap_error,
        energy_failure=energy_failure,
        max_parallel=max_parallel,
    )
    registry.register(ExporterCollector(poller))

    logging.info("Trying to log in to %d Tapo plugs", len(devices))
    poller.probe_logins()

    app = make_app(registry, telemetry_path, poller, ready_grace_seconds=max(30.0, 3.0 * interval))
    httpd = make_server(
        host,
        port,
        app,
        server_class=ThreadingWSGIServer,
        handler_class=QuietHandler,
    )

    def _shutdown(*_):
        Thread(target=httpd.shutdown, daemon=True).start()

    poller.on_fatal = _shutdown
    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    poller.start_polling()

    logging.info(
        "listening=%s:%s telemetry_path=%s devices=%s poll_interval=%.1fs retry_interval=%.1fs timeout=%.1fs parallel=%s energy_failure=%s",
        host if host else "0.0.0.0",
        port,
        telemetry_path,
        len(devices),
        interval,
        retry_interval,
        timeout,
        max_parallel,
        energy_failure,
    )

    try:
        httpd.serve_forever()
    finally:
        poller.stop()
        httpd.server_close()

    if poller.fatal_error is not None:
        return 1
    return 0


@click.command()
@click.option("-c", "--config.file", "config_file", default="config.json", show_default=True, help="Configuration file (JSON or YAML).")
@click.option("-l", "--web.listen-address", "listen_address", default=":9105", show_default=True, help="Address to listen on.")
@click.option("-p", "--web.telemetry-path", "telemetry_path", default="/metrics", show_default=True, help="HTTP path where metrics are exposed.")
@click.option("-i", "--interval", type=float, default=60.0, show_default=True, help="Seconds between poll cycles.")
@click.option("-R", "--retry-interval", type=float, default=2.0, show_default=True, help="Seconds between attempts to read a plug.")
@click.option("-k", "--stop-on-klap-error", is_flag=True, default=False, help="Treat KLAP login failures as regular login failures instead of skipping the plug.")
@click.option("--energy-failure", type=click.Choice(ENERGY_FAILURE_POLICIES), default="fatal", show_default=True, help="What to do when reading energy usage fails on every attempt.")
@click.option("--max-parallel", type=click.IntRange(min=1), default=1, show_default=True, help="Plugs polled concurrently within a cycle.")
@click.option("--timeout", type=float, default=5.0, show_default=True, help="Per-request timeout in seconds.")
@click.option("--encryption", type=click.Choice(sorted(ENCRYPTION_TYPES)), default="aes", show_default=True, help="Handshake used to talk to the plugs.")
@click.option("--log.level", "log_level", default=lambda: os.environ.get("LOG_LEVEL", "INFO"), help="Log level.")
def main(log_level: str, **kwargs: Any) -> None:
    setup_logging(log_level)
    sys.exit(run(**kwargs))


if __name__ == "__main__":
    main()
