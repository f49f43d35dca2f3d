# File: parkgate/infrastructure/drivers.py
"""
Barrier device drivers

- MockBarrierDriver: in-process stand-in for lanes without hardware
- HttpBarrierDriver: controller reachable over HTTP, one URL per device
"""

from typing import Dict, List, Optional, Tuple
import logging
import threading
import time

import requests
from requests.auth import HTTPDigestAuth

from ..application.ports import BarrierDriver, DriverResult
from ..domain.models import BarrierAction


class MockBarrierDriver(BarrierDriver):
    """
    Records every call. Devices listed in `failing_devices` report a
    failure; `delay_seconds` simulates a slow controller.
    """

    def __init__(self, failing_devices: Optional[List[str]] = None, delay_seconds: float = 0.0):
        self.failing_devices = set(failing_devices or [])
        self.delay_seconds = delay_seconds
        self.calls: List[Tuple[str, BarrierAction]] = []
        self._lock = threading.Lock()
        self._logger = logging.getLogger(self.__class__.__name__)

    def send_command(self, device_id: str, action: BarrierAction) -> DriverResult:
        with self._lock:
            self.calls.append((device_id, action))
        if self.delay_seconds:
            time.sleep(self.delay_seconds)
        if device_id in self.failing_devices:
            self._logger.warning(f"Mock device {device_id} refused {action.value}")
            return DriverResult.failed(f"device {device_id} unavailable")
        self._logger.info(f"Mock device {device_id}: {action.value}")
        return DriverResult.ok("mock")

    def calls_for(self, device_id: str) -> List[BarrierAction]:
        with self._lock:
            return [action for device, action in self.calls if device == device_id]


class HttpBarrierDriver(BarrierDriver):
    """
    PUTs the action to the device's controller URL.
    Timeouts, connection errors and non-2xx answers become failed results.
    """

    def __init__(
        self,
        device_urls: Dict[str, str],
        timeout_seconds: float = 3.0,
        username: Optional[str] = None,
        password: Optional[str] = None,
        session: Optional[requests.Session] = None
    ):
        self.device_urls = dict(device_urls)
        self.timeout_seconds = timeout_seconds
        self.auth = HTTPDigestAuth(username, password) if username else None
        self.http = session or requests.Session()
        self._logger = logging.getLogger(self.__class__.__name__)

    def send_command(self, device_id: str, action: BarrierAction) -> DriverResult:
        url = self.device_urls.get(device_id)
        if url is None:
            return DriverResult.failed(f"no controller url for device {device_id}")

        try:
            response = self.http.put(
                url,
                json={"action": action.value.lower()},
                auth=self.auth,
                timeout=self.timeout_seconds,
            )
        except requests.exceptions.Timeout:
            self._logger.warning(f"Barrier {device_id} did not answer within {self.timeout_seconds}s")
            return DriverResult.failed("timeout")
        except requests.exceptions.ConnectionError as e:
            self._logger.warning(f"Barrier {device_id} unreachable: {e}")
            return DriverResult.failed("connection error")
        except requests.exceptions.RequestException as e:
            self._logger.error(f"Barrier {device_id} request failed: {e}")
            return DriverResult.failed(str(e))

        if 200 <= response.status_code < 300:
            return DriverResult.ok(f"HTTP {response.status_code}")
        if response.status_code in (401, 403):
            return DriverResult.failed("authorization rejected by controller")
        return DriverResult.failed(f"unexpected HTTP {response.status_code}")
