from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from kasa import (
    Credentials,
    DeviceConfig,
    DeviceConnectionParameters,
    DeviceEncryptionType,
    DeviceFamily,
    KasaException,
)
from kasa.device_factory import get_protocol

from tapo_models import DeviceInfo, DeviceUsage, EnergyUsage

# Returned by plugs whose firmware only speaks the KLAP handshake.
KLAP_ERROR_CODE = 1003

ENCRYPTION_TYPES = {
    "aes": DeviceEncryptionType.Aes,
    "klap": DeviceEncryptionType.Klap,
}


class TapoError(Exception):
    """A failed request to a plug, with the device error code when it sent one."""

    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


def _error_code(e: BaseException) -> Optional[int]:
    code = getattr(e, "error_code", None)
    if code is None:
        return None
    try:
        return int(code)
    except (TypeError, ValueError):
        return None


class TapoSession:
    """An authenticated handle on one plug.

    Owns a private event loop so it can be driven from a plain worker thread.
    Not shared between threads and not reused across poll cycles.
    """

    def __init__(self, address: str, protocol: Any, loop: asyncio.AbstractEventLoop) -> None:
        self.address = address
        self._protocol = protocol
        self._loop = loop

    def _query(self, method: str) -> Dict[str, Any]:
        # no library-level retries; the poller owns the retry budget
        try:
            resp = self._loop.run_until_complete(self._protocol.query(method, retry_count=0))
        except (KasaException, OSError, asyncio.TimeoutError) as e:
            raise TapoError(f"{method}: {e}", code=_error_code(e)) from e
        result = resp.get(method, resp) if isinstance(resp, dict) else None
        if not isinstance(result, dict):
            raise TapoError(f"{method}: unexpected response {resp!r}")
        return result

    def handshake(self) -> None:
        self._query("component_nego")

    def get_device_info(self) -> DeviceInfo:
        return DeviceInfo.from_raw(self.address, self._query("get_device_info"))

    def get_device_usage(self) -> DeviceUsage:
        return DeviceUsage.from_raw(self._query("get_device_usage"))

    def get_energy_usage(self) -> EnergyUsage:
        return EnergyUsage.from_raw(self._query("get_energy_usage"))

    def close(self) -> None:
        if self._loop.is_closed():
            return
        try:
            self._loop.run_until_complete(self._protocol.close())
        except (KasaException, OSError) as e:
            logging.debug("closing session to plug %s failed: %s", self.address, e)
        finally:
            self._loop.close()

    def __enter__(self) -> "TapoSession":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class TapoClient:
    def __init__(self, timeout_seconds: float = 5.0, encryption: str = "aes") -> None:
        if encryption not in ENCRYPTION_TYPES:
            raise ValueError(f"unknown encryption {encryption!r}, expected one of {sorted(ENCRYPTION_TYPES)}")
        self.timeout_seconds = timeout_seconds
        self.encryption = encryption

    def _device_config(self, address: str, username: str, password: str) -> DeviceConfig:
        return DeviceConfig(
            host=address,
            timeout=max(1, int(round(self.timeout_seconds))),
            credentials=Credentials(username, password),
            connection_type=DeviceConnectionParameters(
                device_family=DeviceFamily.SmartTapoPlug,
                encryption_type=ENCRYPTION_TYPES[self.encryption],
            ),
        )

    def login(self, address: str, username: str, password: str) -> TapoSession:
        """Open a session and perform the handshake. Never retries."""
        protocol = get_protocol(self._device_config(address, username, password))
        if protocol is None:
            raise TapoError(f"no protocol available for {address} with {self.encryption} encryption")
        session = TapoSession(address, protocol, asyncio.new_event_loop())
        try:
            session.handshake()
        except Exception:
            session.close()
            raise
        return session
