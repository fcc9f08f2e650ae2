"""Test configuration and fixtures for device harness tests."""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest

from device_harness.adb import AdbRunner
from device_harness.config import HarnessConfig
from device_harness.knowledge_base import ErrorKnowledgeBase
from device_harness.models import Device, DeviceKind, DeviceState
from device_harness.retry import BridgeLocks
from device_harness.simulators import SimulatorManager
from tests.mocks import MockCommandRunner

MOCK_SERIAL = "emulator-5554"
MOCK_UDID = "A1A1A1A1-0000-0000-0000-000000000001"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def harness_config(temp_dir) -> HarnessConfig:
    """Config with tiny waits and every path inside the temp directory."""
    return HarnessConfig(
        adb_path="adb",
        mlaunch_path="mlaunch",
        xcrun_path="xcrun",
        log_directory=temp_dir / "logs",
        enumeration_attempts=2,
        enumeration_interval=0.0,
        boot_wait_timeout=0.5,
        boot_poll_interval=0.0,
        lldb_flag_file=temp_dir / ".mtouch-launch-with-lldb",
    )


@pytest.fixture
def mock_runner() -> MockCommandRunner:
    return MockCommandRunner()


@pytest.fixture
def adb(mock_runner, harness_config) -> AdbRunner:
    return AdbRunner(mock_runner, harness_config, BridgeLocks())


@pytest.fixture
def simulators(mock_runner, harness_config) -> SimulatorManager:
    return SimulatorManager(mock_runner, harness_config)


@pytest.fixture
def knowledge_base() -> ErrorKnowledgeBase:
    return ErrorKnowledgeBase()


@pytest.fixture
def simulator_device() -> Device:
    return Device(
        udid=MOCK_UDID,
        name="iPhone 15",
        os_version="17.0",
        architecture="arm64",
        kind=DeviceKind.SIMULATOR,
        state=DeviceState.READY,
        runtime="com.apple.CoreSimulator.SimRuntime.iOS-17-0",
    )


@pytest.fixture
def emulator_device() -> Device:
    return Device(
        udid=MOCK_SERIAL,
        name="sdk_gphone64_x86_64",
        os_version="34",
        architecture="x86_64",
        kind=DeviceKind.EMULATOR,
        state=DeviceState.READY,
    )


@pytest.fixture
def apk_file(temp_dir) -> Path:
    path = temp_dir / "MyTests.apk"
    path.write_bytes(b"PK\x03\x04")
    return path
