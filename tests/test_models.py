"""Tests for parsing raw plug responses."""

from __future__ import annotations

from conftest import RAW_ENERGY, RAW_USAGE, b64, raw_device_info
from tapo_models import DeviceInfo, DeviceUsage, EnergyUsage


class TestDeviceInfo:
    def test_decodes_base64_fields(self) -> None:
        info = DeviceInfo.from_raw("10.0.0.1", raw_device_info("P110"))
        assert info.nickname == "plug P110"
        assert info.ssid == "home-wifi"
        assert info.address == "10.0.0.1"
        assert info.fw_version == "1.2.3 Build 230425"

    def test_plain_nickname_kept(self) -> None:
        info = DeviceInfo.from_raw("10.0.0.1", raw_device_info(nickname="not base64!"))
        assert info.nickname == "not base64!"

    def test_label_order(self) -> None:
        info = DeviceInfo.from_raw("10.0.0.1", raw_device_info("P100", device_on=False))
        assert info.labels() == ["id-P100", "plug P100", "P100", "AA-BB-CC-DD-EE-FF", "oem"]
        labels = info.all_labels()
        assert labels[:5] == info.labels()
        assert labels[5:8] == ["1.2.3 Build 230425", "1.0", "SMART.TAPOPLUG"]
        assert labels[-6:] == ["true", "false", "1200", "false", "normal", "kitchen"]

    def test_missing_fields_default(self) -> None:
        info = DeviceInfo.from_raw("10.0.0.1", {"model": "P100"})
        assert info.device_id == ""
        assert info.rssi == 0
        assert info.device_on is False
        assert len(info.all_labels()) == 27

    def test_nickname_unicode(self) -> None:
        info = DeviceInfo.from_raw("10.0.0.1", raw_device_info(nickname=b64("Küche")))
        assert info.nickname == "Küche"


class TestUsage:
    def test_windows(self) -> None:
        u = DeviceUsage.from_raw(RAW_USAGE)
        assert (u.time_usage.today, u.time_usage.past7, u.time_usage.past30) == (30, 300, 1500)
        assert u.power_usage.past7 == 90
        assert u.saved_power.today == 1

    def test_missing_window(self) -> None:
        u = DeviceUsage.from_raw({"time_usage": {"today": 5}})
        assert u.time_usage.past30 == 0
        assert u.power_usage.today == 0


class TestEnergy:
    def test_fields(self) -> None:
        e = EnergyUsage.from_raw(RAW_ENERGY)
        assert e.electricity_charge == (0, 25, 60)
        assert e.current_power == 12345
        assert e.month_runtime == 1500

    def test_short_charge_list(self) -> None:
        e = EnergyUsage.from_raw({"electricity_charge": [7]})
        assert e.electricity_charge == (7, 0, 0)
