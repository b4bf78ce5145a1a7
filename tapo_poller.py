from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from threading import Event, Lock, Thread
from typing import Any, Callable, Iterable, List, Optional, TypeVar

from tapo_client import KLAP_ERROR_CODE, TapoClient, TapoError, TapoSession
from tapo_metrics import TapoMetrics
from tapo_models import DeviceInfo, DeviceUsage, EnergyUsage

T = TypeVar("T")

MAX_ATTEMPTS = 3

# Models known to answer get_energy_usage. Not exhaustive; add more here.
ENERGY_MODELS = (
    "P110",
    "P115",
    "P125M",
)

ENERGY_FAILURE_POLICIES = ("fatal", "skip")


def has_energy_info(model: str, known: Iterable[str] = ENERGY_MODELS) -> bool:
    m = (model or "").lower()
    return any(m == k.lower() for k in known)


class FetchError(Exception):
    """A request failed on every attempt of its retry budget."""

    def __init__(self, what: str, address: str, attempts: int, last: BaseException) -> None:
        super().__init__(f"{what} for plug {address} failed after {attempts} attempts: {last}")
        self.what = what
        self.address = address
        self.attempts = attempts
        self.last = last


class FatalPollError(Exception):
    """Polling cannot continue; the exporter has to exit."""


def retry_fetch(
    fetch: Callable[[], T],
    *,
    what: str,
    address: str,
    attempts: int = MAX_ATTEMPTS,
    interval: float = 2.0,
    on_failure: Optional[Callable[[str, BaseException], None]] = None,
    sleep: Callable[[float], Any] = time.sleep,
) -> T:
    """Call ``fetch`` until it succeeds, at most ``attempts`` times.

    Every failed attempt is reported to ``on_failure``, including the ones
    a later success masks. Sleeps ``interval`` seconds between attempts,
    never after the last one. Raises ``FetchError`` chained to the last
    exception when the budget runs out.
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")
    last: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return fetch()
        except Exception as e:
            last = e
            if on_failure is not None:
                on_failure(address, e)
            if attempt < attempts:
                logging.warning(
                    "%s for plug %s failed at attempt %d, trying again in %.1fs: %s",
                    what, address, attempt, interval, e,
                )
                sleep(interval)
            else:
                logging.warning("%s for plug %s failed at attempt %d, giving up: %s", what, address, attempt, e)
    raise FetchError(what, address, attempts, last) from last


@dataclass
class DeviceReading:
    info: DeviceInfo
    usage: DeviceUsage
    energy: Optional[EnergyUsage] = None


class TapoPoller:
    """Logs into every plug once per cycle and pushes its readings to ``metrics``.

    Cycles run back to back with ``poll_interval_seconds`` of sleep between
    them until ``stop`` is called or a fatal error happens. A failing plug
    only loses its own cycle; the next one starts from a fresh login.
    """

    def __init__(
        self,
        client: TapoClient,
        metrics: TapoMetrics,
        addresses: List[str],
        username: str,
        password: str,
        poll_interval_seconds: float = 60.0,
        retry_interval_seconds: float = 2.0,
        max_attempts: int = MAX_ATTEMPTS,
        stop_on_klap_error: bool = False,
        energy_failure: str = "fatal",
        max_parallel: int = 1,
        energy_models: Iterable[str] = ENERGY_MODELS,
        on_fatal: Optional[Callable[[FatalPollError], None]] = None,
        sleep: Callable[[float], Any] = time.sleep,
    ) -> None:
        if energy_failure not in ENERGY_FAILURE_POLICIES:
            raise ValueError(f"energy_failure must be one of {ENERGY_FAILURE_POLICIES}, got {energy_failure!r}")
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.client = client
        self.metrics = metrics
        self.addresses = list(addresses)
        self.username = username
        self.password = password
        self.poll_interval_seconds = float(poll_interval_seconds)
        self.retry_interval_seconds = float(retry_interval_seconds)
        self.max_attempts = int(max_attempts)
        self.stop_on_klap_error = bool(stop_on_klap_error)
        self.energy_failure = energy_failure
        self.max_parallel = max(1, int(max_parallel))
        self.energy_models = tuple(energy_models)
        self.on_fatal = on_fatal
        self.sleep = sleep

        self.lock = Lock()
        self.stop_event = Event()
        self.fatal_error: Optional[FatalPollError] = None
        self.last_poll_cycle_ts: float = 0.0
        self.last_poll_duration: float = 0.0

        self.executor = ThreadPoolExecutor(max_workers=self.max_parallel) if self.max_parallel > 1 else None

    def start_polling(self) -> Thread:
        t = Thread(target=self._poll_forever, name="tapo-poller", daemon=True)
        t.start()
        return t

    def stop(self) -> None:
        self.stop_event.set()
        if self.executor is not None:
            self.executor.shutdown(wait=False, cancel_futures=True)

    def is_ready(self, grace_seconds: float) -> bool:
        with self.lock:
            if self.last_poll_cycle_ts <= 0:
                return False
            return (time.time() - self.last_poll_cycle_ts) <= grace_seconds

    def login(self, address: str) -> Optional[TapoSession]:
        """Log into one plug.

        Returns ``None`` when the plug asks for the KLAP handshake and
        ``stop_on_klap_error`` is off; any other failure raises ``TapoError``.
        """
        try:
            return self.client.login(address, self.username, self.password)
        except TapoError as e:
            if not self.stop_on_klap_error and e.code == KLAP_ERROR_CODE:
                logging.warning(
                    "login failed for plug %s, skipping it because its firmware probably requires the KLAP protocol: %s",
                    address, e,
                )
                return None
            raise

    def _fetch(self, what: str, address: str, fetch: Callable[[], T]) -> T:
        return retry_fetch(
            fetch,
            what=what,
            address=address,
            attempts=self.max_attempts,
            interval=self.retry_interval_seconds,
            on_failure=self.metrics.record_failure,
            sleep=self.sleep,
        )

    def read_device(self, address: str) -> Optional[DeviceReading]:
        """Collect everything for one plug without touching the registry.

        Returns ``None`` when the plug is skipped this cycle. Raises
        ``FatalPollError`` when energy fetching runs out of attempts and the
        energy failure policy is ``fatal``.
        """
        try:
            session = self.login(address)
        except Exception as e:
            self.metrics.record_failure(address, e)
            logging.error("login failed for plug %s, skipping this cycle: %s", address, e)
            return None
        if session is None:
            return None

        with session:
            try:
                info = self._fetch("GetDeviceInfo", address, session.get_device_info)
                usage = self._fetch("GetDeviceUsage", address, session.get_device_usage)
            except FetchError as e:
                logging.error("skipping plug %s this cycle: %s", address, e)
                return None

            energy = None
            if has_energy_info(info.model, self.energy_models):
                try:
                    energy = self._fetch("GetEnergyUsage", address, session.get_energy_usage)
                except FetchError as e:
                    if self.energy_failure == "fatal":
                        raise FatalPollError(str(e)) from e
                    logging.error("skipping plug %s this cycle: %s", address, e)
                    return None
            else:
                logging.info("Ignoring device without power information ip=%s, model=%s", address, info.model)

        return DeviceReading(info=info, usage=usage, energy=energy)

    def poll_device(self, address: str) -> bool:
        logging.info("Fetching metrics for plug %s", address)
        reading = self.read_device(address)
        if reading is None:
            return False
        self.metrics.update_device(reading.info, reading.usage, reading.energy)
        return True

    def poll_once(self) -> int:
        """Run one cycle over all plugs and return how many were written."""
        t0 = time.time()
        ok = 0
        if self.executor is None:
            for address in self.addresses:
                if self.stop_event.is_set():
                    break
                if self.poll_device(address):
                    ok += 1
        else:
            futs = {self.executor.submit(self.poll_device, a): a for a in self.addresses}
            for fut in as_completed(futs):
                # FatalPollError propagates from here
                if fut.result():
                    ok += 1

        dt = time.time() - t0
        with self.lock:
            self.last_poll_duration = dt
            self.last_poll_cycle_ts = time.time()
        logging.info("Poll cycle done in %.1fs, %d/%d plugs updated", dt, ok, len(self.addresses))
        return ok

    def _poll_forever(self) -> None:
        while not self.stop_event.is_set():
            try:
                self.poll_once()
            except FatalPollError as e:
                logging.critical("stopping exporter: %s", e)
                self.fatal_error = e
                self.stop()
                if self.on_fatal is not None:
                    self.on_fatal(e)
                return
            except Exception:
                logging.exception("poll cycle failed")
            if self.stop_event.is_set():
                break
            logging.info("Sleeping %.1fs...", self.poll_interval_seconds)
            self.stop_event.wait(timeout=self.poll_interval_seconds)

    def probe_logins(self) -> int:
        """Log into every plug once at startup, retrying, and report how many answered.

        Plugs that fail stay in the device list; the steady-state loop
        logs in again from scratch every cycle.
        """
        ok = 0
        for address in self.addresses:
            try:
                session = retry_fetch(
                    lambda a=address: self.login(a),
                    what="Login",
                    address=address,
                    attempts=self.max_attempts,
                    interval=self.retry_interval_seconds,
                    sleep=self.sleep,
                )
            except FetchError as e:
                logging.error("login failed for plug %s: %s", address, e.last)
                continue
            if session is None:
                continue
            session.close()
            ok += 1
        logging.info("Monitoring %d Tapo plugs (%d answered the login probe)", len(self.addresses), ok)
        return ok
