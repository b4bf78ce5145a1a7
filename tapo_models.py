from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple


def _b64_text(x: Any) -> str:
    if not isinstance(x, str) or not x:
        return ""
    try:
        return base64.b64decode(x, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return x


def _int(x: Any) -> int:
    if isinstance(x, bool):
        return int(x)
    if isinstance(x, (int, float)):
        return int(x)
    if isinstance(x, str):
        try:
            return int(float(x.strip()))
        except ValueError:
            return 0
    return 0


def _str(x: Any) -> str:
    return "" if x is None else str(x)


def _fmt_bool(x: bool) -> str:
    return "true" if x else "false"


@dataclass
class DeviceInfo:
    """Identity and state reported by ``get_device_info``.

    ``address`` is the configured network address and stays stable across
    cycles. Everything else is refreshed on every poll.
    """

    address: str
    device_id: str = ""
    nickname: str = ""
    model: str = ""
    mac: str = ""
    oem_id: str = ""
    fw_version: str = ""
    hw_version: str = ""
    type: str = ""
    hw_id: str = ""
    fw_id: str = ""
    ip: str = ""
    time_diff: int = 0
    ssid: str = ""
    rssi: int = 0
    signal_level: int = 0
    latitude: int = 0
    longitude: int = 0
    lang: str = ""
    avatar: str = ""
    region: str = ""
    specs: str = ""
    has_set_location_info: bool = False
    device_on: bool = False
    on_time: int = 0
    overheated: bool = False
    power_protection_status: str = ""
    location: str = ""

    @classmethod
    def from_raw(cls, address: str, raw: Dict[str, Any]) -> "DeviceInfo":
        return cls(
            address=address,
            device_id=_str(raw.get("device_id")),
            nickname=_b64_text(raw.get("nickname")),
            model=_str(raw.get("model")),
            mac=_str(raw.get("mac")),
            oem_id=_str(raw.get("oem_id")),
            fw_version=_str(raw.get("fw_ver")),
            hw_version=_str(raw.get("hw_ver")),
            type=_str(raw.get("type")),
            hw_id=_str(raw.get("hw_id")),
            fw_id=_str(raw.get("fw_id")),
            ip=_str(raw.get("ip")),
            time_diff=_int(raw.get("time_diff")),
            ssid=_b64_text(raw.get("ssid")),
            rssi=_int(raw.get("rssi")),
            signal_level=_int(raw.get("signal_level")),
            latitude=_int(raw.get("latitude")),
            longitude=_int(raw.get("longitude")),
            lang=_str(raw.get("lang")),
            avatar=_str(raw.get("avatar")),
            region=_str(raw.get("region")),
            specs=_str(raw.get("specs")),
            has_set_location_info=bool(raw.get("has_set_location_info", False)),
            device_on=bool(raw.get("device_on", False)),
            on_time=_int(raw.get("on_time")),
            overheated=bool(raw.get("overheated", False)),
            power_protection_status=_str(raw.get("power_protection_status")),
            location=_str(raw.get("location")),
        )

    def labels(self) -> List[str]:
        return [self.device_id, self.nickname, self.model, self.mac, self.oem_id]

    def all_labels(self) -> List[str]:
        return self.labels() + [
            self.fw_version,
            self.hw_version,
            self.type,
            self.hw_id,
            self.fw_id,
            self.ip,
            str(self.time_diff),
            self.ssid,
            str(self.rssi),
            str(self.signal_level),
            str(self.latitude),
            str(self.longitude),
            self.lang,
            self.avatar,
            self.region,
            self.specs,
            _fmt_bool(self.has_set_location_info),
            _fmt_bool(self.device_on),
            str(self.on_time),
            _fmt_bool(self.overheated),
            self.power_protection_status,
            self.location,
        ]


@dataclass(frozen=True)
class UsageWindows:
    today: int = 0
    past7: int = 0
    past30: int = 0

    @classmethod
    def from_raw(cls, raw: Any) -> "UsageWindows":
        if not isinstance(raw, dict):
            return cls()
        return cls(today=_int(raw.get("today")), past7=_int(raw.get("past7")), past30=_int(raw.get("past30")))


@dataclass(frozen=True)
class DeviceUsage:
    """Usage snapshot returned by ``get_device_usage``.

    Times are minutes, power figures are watt-hours.
    """

    time_usage: UsageWindows = field(default_factory=UsageWindows)
    power_usage: UsageWindows = field(default_factory=UsageWindows)
    saved_power: UsageWindows = field(default_factory=UsageWindows)

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "DeviceUsage":
        return cls(
            time_usage=UsageWindows.from_raw(raw.get("time_usage")),
            power_usage=UsageWindows.from_raw(raw.get("power_usage")),
            saved_power=UsageWindows.from_raw(raw.get("saved_power")),
        )


@dataclass(frozen=True)
class EnergyUsage:
    """Energy snapshot returned by ``get_energy_usage`` on metering plugs.

    ``current_power`` is in milliwatts, energy totals in watt-hours.
    """

    today_runtime: int = 0
    month_runtime: int = 0
    today_energy: int = 0
    month_energy: int = 0
    electricity_charge: Tuple[int, int, int] = (0, 0, 0)
    current_power: int = 0
    local_time: str = ""

    @classmethod
    def from_raw(cls, raw: Dict[str, Any]) -> "EnergyUsage":
        charge = raw.get("electricity_charge")
        if not isinstance(charge, list):
            charge = []
        tiers = [_int(c) for c in charge[:3]]
        tiers += [0] * (3 - len(tiers))
        return cls(
            today_runtime=_int(raw.get("today_runtime")),
            month_runtime=_int(raw.get("month_runtime")),
            today_energy=_int(raw.get("today_energy")),
            month_energy=_int(raw.get("month_energy")),
            electricity_charge=(tiers[0], tiers[1], tiers[2]),
            current_power=_int(raw.get("current_power")),
            local_time=_str(raw.get("local_time")),
        )
