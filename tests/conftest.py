"""Shared fakes for the poller and exporter tests.

The fake client hands out scripted sessions: every fetch is driven by a list
of outcomes, where an exception instance is raised and anything else is
returned.
"""

from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional

import pytest

from tapo_client import TapoError
from tapo_metrics import TapoMetrics
from tapo_models import DeviceInfo, DeviceUsage, EnergyUsage


def b64(s: str) -> str:
    return base64.b64encode(s.encode("utf-8")).decode("ascii")


def raw_device_info(model: str = "P110", device_on: bool = True, **extra: Any) -> Dict[str, Any]:
    raw = {
        "device_id": f"id-{model}",
        "fw_ver": "1.2.3 Build 230425",
        "hw_ver": "1.0",
        "type": "SMART.TAPOPLUG",
        "model": model,
        "mac": "AA-BB-CC-DD-EE-FF",
        "hw_id": "hwid",
        "fw_id": "fwid",
        "oem_id": "oem",
        "ip": "192.168.1.10",
        "time_diff": 60,
        "ssid": b64("home-wifi"),
        "rssi": -51,
        "signal_level": 3,
        "latitude": 457000,
        "longitude": 91900,
        "lang": "en_US",
        "avatar": "plug",
        "region": "Europe/Rome",
        "specs": "",
        "nickname": b64(f"plug {model}"),
        "has_set_location_info": True,
        "device_on": device_on,
        "on_time": 1200,
        "overheated": False,
        "power_protection_status": "normal",
        "location": "kitchen",
    }
    raw.update(extra)
    return raw


RAW_USAGE = {
    "time_usage": {"today": 30, "past7": 300, "past30": 1500},
    "power_usage": {"today": 12, "past7": 90, "past30": 400},
    "saved_power": {"today": 1, "past7": 7, "past30": 30},
}

RAW_ENERGY = {
    "today_runtime": 30,
    "month_runtime": 1500,
    "today_energy": 12,
    "month_energy": 400,
    "local_time": "2024-05-01 10:00:00",
    "electricity_charge": [0, 25, 60],
    "current_power": 12345,
}


def device_info(address: str, model: str = "P110", device_on: bool = True) -> DeviceInfo:
    return DeviceInfo.from_raw(address, raw_device_info(model, device_on))


class FakeSession:
    def __init__(self, address: str, outcomes: Dict[str, List[Any]]) -> None:
        self.address = address
        self.outcomes = outcomes
        self.calls: List[str] = []
        self.closed = False

    def _next(self, method: str) -> Any:
        self.calls.append(method)
        script = self.outcomes[method]
        out = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(out, BaseException):
            raise out
        return out

    def get_device_info(self) -> DeviceInfo:
        return self._next("get_device_info")

    def get_device_usage(self) -> DeviceUsage:
        return self._next("get_device_usage")

    def get_energy_usage(self) -> EnergyUsage:
        return self._next("get_energy_usage")

    def close(self) -> None:
        self.closed = True

    def __enter__(self) -> "FakeSession":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class FakeClient:
    """Stand-in for TapoClient keyed by plug address."""

    def __init__(self) -> None:
        self.plugs: Dict[str, Dict[str, List[Any]]] = {}
        self.login_errors: Dict[str, List[Optional[Exception]]] = {}
        self.logins: List[str] = []
        self.sessions: List[FakeSession] = []

    def add_plug(self, address: str, model: str = "P110", device_on: bool = True, **outcomes: List[Any]) -> None:
        script = {
            "get_device_info": [device_info(address, model, device_on)],
            "get_device_usage": [DeviceUsage.from_raw(RAW_USAGE)],
            "get_energy_usage": [EnergyUsage.from_raw(RAW_ENERGY)],
        }
        script.update(outcomes)
        self.plugs[address] = script

    def fail_login(self, address: str, *errors: Optional[Exception]) -> None:
        self.login_errors[address] = list(errors)

    def login(self, address: str, username: str, password: str) -> FakeSession:
        self.logins.append(address)
        errors = self.login_errors.get(address)
        if errors:
            err = errors.pop(0) if len(errors) > 1 else errors[0]
            if err is not None:
                raise err
        session = FakeSession(address, {k: list(v) for k, v in self.plugs[address].items()})
        self.sessions.append(session)
        return session

    def session_for(self, address: str) -> FakeSession:
        return [s for s in self.sessions if s.address == address][-1]


@pytest.fixture()
def fake_client() -> FakeClient:
    return FakeClient()


@pytest.fixture()
def metrics() -> TapoMetrics:
    return TapoMetrics()


@pytest.fixture()
def sleeps() -> List[float]:
    return []
