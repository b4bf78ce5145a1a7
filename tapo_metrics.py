from __future__ import annotations

from threading import Lock
from typing import Dict, List, Optional, Sequence, Union

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

from tapo_models import DeviceInfo, DeviceUsage, EnergyUsage

DEVICE_LABELS = ["device_id", "nickname", "model", "mac", "oem_id"]

DEVICE_INFO_LABELS = DEVICE_LABELS + [
    "fw_version", "hw_version", "type", "hw_id", "fw_id", "ip", "time_diff", "ssid", "rssi", "signal_level",
    "latitude", "longitude", "lang", "avatar", "region", "specs", "has_set_location_info", "device_on", "on_time",
    "overheated", "power_protection_status", "location",
]

REQUEST_FAILED_LABELS = ["ip_address", "error"]

DEVICE_INFO = "tapo_device_info"
REQUEST_FAILED = "tapo_device_request_failed"

# name -> help, all keyed by DEVICE_LABELS
PLUG_GAUGES = {
    "tapo_plug_device_on": "Tapo plug - device on (1 on, 0 off).",
    "tapo_plug_device_overheated": "Tapo plug - device overheated (1 yes, 0 no).",
    "tapo_plug_time_usage_today": "Tapo plug - time usage today in minutes.",
    "tapo_plug_time_usage_past7": "Tapo plug - time usage past 7 days in minutes.",
    "tapo_plug_time_usage_past30": "Tapo plug - time usage past 30 days in minutes.",
    "tapo_plug_power_usage_today": "Tapo plug - power usage today in Wh.",
    "tapo_plug_power_usage_past7": "Tapo plug - power usage past 7 days in Wh.",
    "tapo_plug_power_usage_past30": "Tapo plug - power usage past 30 days in Wh.",
    "tapo_plug_saved_power_today": "Tapo plug - saved power today in Wh.",
    "tapo_plug_saved_power_past7": "Tapo plug - saved power past 7 days in Wh.",
    "tapo_plug_saved_power_past30": "Tapo plug - saved power past 30 days in Wh.",
}

ENERGY_GAUGES = {
    "tapo_plug_today_runtime": "Tapo plug - today runtime in minutes.",
    "tapo_plug_month_runtime": "Tapo plug - month runtime in minutes.",
    "tapo_plug_today_energy": "Tapo plug - today energy in Wh.",
    "tapo_plug_month_energy": "Tapo plug - month energy in Wh.",
    "tapo_plug_electricity_charge_0": "Tapo plug - electricity charge 0.",
    "tapo_plug_electricity_charge_1": "Tapo plug - electricity charge 1.",
    "tapo_plug_electricity_charge_2": "Tapo plug - electricity charge 2.",
    "tapo_plug_current_power": "Tapo plug - current power in mW.",
}


class TapoMetrics:
    """Named, labelled series holding the last value per label tuple.

    Label tuples are never removed, so a renamed plug or an old firmware
    string keeps its last value until restart. All series are registered
    on construction; a name clash with something already in ``registry``
    raises ``ValueError`` there.

    Writers take ``lock`` so one device's series are written together.
    Scrapes go straight to the registry: each single set is atomic in
    prometheus_client and readers never wait on the poller.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry if registry is not None else CollectorRegistry()
        self.lock = Lock()
        self.series: Dict[str, Union[Gauge, Counter]] = {}
        self.labelnames: Dict[str, List[str]] = {}

        self._register(Gauge, DEVICE_INFO, "Tapo plug - Device info", DEVICE_INFO_LABELS)
        self._register(Counter, REQUEST_FAILED, "Tapo plug - Device request failed", REQUEST_FAILED_LABELS)
        for name, help_text in PLUG_GAUGES.items():
            self._register(Gauge, name, help_text, DEVICE_LABELS)
        for name, help_text in ENERGY_GAUGES.items():
            self._register(Gauge, name, help_text, DEVICE_LABELS)

    def _register(self, kind, name: str, help_text: str, labels: List[str]) -> None:
        if name in self.series:
            raise ValueError(f"series {name} already defined")
        self.series[name] = kind(name, help_text, labels, registry=self.registry)
        self.labelnames[name] = list(labels)

    def _child(self, name: str, label_values: Sequence[str]):
        if name not in self.series:
            raise KeyError(f"unknown series {name}")
        want = self.labelnames[name]
        if len(label_values) != len(want):
            raise ValueError(f"series {name} takes {len(want)} labels ({', '.join(want)}), got {len(label_values)}")
        return self.series[name].labels(*[str(v) for v in label_values])

    def set(self, name: str, label_values: Sequence[str], value: float) -> None:
        self._child(name, label_values).set(float(value))

    def record_failure(self, address: str, error: Union[BaseException, str]) -> None:
        self._child(REQUEST_FAILED, [address, str(error)]).inc()

    def update_device(self, info: DeviceInfo, usage: DeviceUsage, energy: Optional[EnergyUsage] = None) -> None:
        labels = info.labels()
        values = {
            "tapo_plug_device_on": 1.0 if info.device_on else 0.0,
            "tapo_plug_device_overheated": 1.0 if info.overheated else 0.0,
            "tapo_plug_time_usage_today": usage.time_usage.today,
            "tapo_plug_time_usage_past7": usage.time_usage.past7,
            "tapo_plug_time_usage_past30": usage.time_usage.past30,
            "tapo_plug_power_usage_today": usage.power_usage.today,
            "tapo_plug_power_usage_past7": usage.power_usage.past7,
            "tapo_plug_power_usage_past30": usage.power_usage.past30,
            "tapo_plug_saved_power_today": usage.saved_power.today,
            "tapo_plug_saved_power_past7": usage.saved_power.past7,
            "tapo_plug_saved_power_past30": usage.saved_power.past30,
        }
        if energy is not None:
            values.update({
                "tapo_plug_today_runtime": energy.today_runtime,
                "tapo_plug_month_runtime": energy.month_runtime,
                "tapo_plug_today_energy": energy.today_energy,
                "tapo_plug_month_energy": energy.month_energy,
                "tapo_plug_electricity_charge_0": energy.electricity_charge[0],
                "tapo_plug_electricity_charge_1": energy.electricity_charge[1],
                "tapo_plug_electricity_charge_2": energy.electricity_charge[2],
                "tapo_plug_current_power": energy.current_power,
            })

        with self.lock:
            self.set(DEVICE_INFO, info.all_labels(), 1.0)
            for name, v in values.items():
                self.set(name, labels, v)

    def value(self, name: str, label_values: Sequence[str]) -> Optional[float]:
        sample = name + "_total" if isinstance(self.series.get(name), Counter) else name
        return self.registry.get_sample_value(sample, dict(zip(self.labelnames[name], [str(v) for v in label_values])))

    def expose(self) -> bytes:
        return generate_latest(self.registry)
