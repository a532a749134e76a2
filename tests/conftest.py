"""Shared test fixtures, a recording driver double and libvirt stub injection for CI environments."""

from __future__ import annotations

import sys
import threading
import types
from typing import List, Optional, Tuple
from unittest.mock import MagicMock


def _install_libvirt_stub():
    """Inject a minimal libvirt stub into sys.modules if the real library is not available."""
    if "libvirt" in sys.modules:
        return

    try:
        import libvirt  # noqa: F401

        return  # real library available
    except (ImportError, SystemExit):
        pass

    stub = types.ModuleType("libvirt")

    class libvirtError(Exception):
        def __init__(self, msg):
            super().__init__(msg)
            self.err = None

        def get_error_code(self):
            return self.err[0] if self.err else None

        def get_error_message(self):
            return str(self)

    stub.libvirtError = libvirtError
    stub.open = MagicMock(return_value=MagicMock())

    # Values match libvirt's public enums.
    constants = {
        "VIR_DOMAIN_NOSTATE": 0,
        "VIR_DOMAIN_RUNNING": 1,
        "VIR_DOMAIN_BLOCKED": 2,
        "VIR_DOMAIN_PAUSED": 3,
        "VIR_DOMAIN_SHUTDOWN": 4,
        "VIR_DOMAIN_SHUTOFF": 5,
        "VIR_DOMAIN_CRASHED": 6,
        "VIR_DOMAIN_PMSUSPENDED": 7,
        "VIR_ERR_INTERNAL_ERROR": 1,
        "VIR_ERR_XML_ERROR": 27,
        "VIR_ERR_NO_DOMAIN": 42,
        "VIR_ERR_AUTH_FAILED": 45,
        "VIR_ERR_OPERATION_INVALID": 55,
        "VIR_CONNECT_LIST_NETWORKS_ACTIVE": 2,
        "VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE": 0,
        "VIR_IP_ADDR_TYPE_IPV4": 0,
        "VIR_IP_ADDR_TYPE_IPV6": 1,
    }
    for name, value in constants.items():
        setattr(stub, name, value)

    sys.modules["libvirt"] = stub


_install_libvirt_stub()

import pytest  # noqa: E402

from vmbuilder.driver import Driver  # noqa: E402
from vmbuilder.models import BuildConfig  # noqa: E402
from vmbuilder.state import BuildState  # noqa: E402


class DriverMock(Driver):
    """In-memory Driver that records every call and fails on request."""

    def __init__(self) -> None:
        self.calls: List[Tuple] = []
        self.net_name = "default"
        self.domain_ip = "192.168.122.50"
        self.lib_version = "9.0.0"
        self.shutdown_result = True
        self.started_xml: Optional[str] = None
        self.wait_cancel = None
        self.verify_error: Optional[Exception] = None
        self.start_error: Optional[Exception] = None
        self.stop_error: Optional[Exception] = None
        self.qemu_img_error: Optional[Exception] = None
        self.domain_ip_error: Optional[Exception] = None
        self.version_error: Optional[Exception] = None
        self.closed = False

    @property
    def qemu_img_calls(self) -> List[Tuple[str, ...]]:
        return [call[1:] for call in self.calls if call[0] == "qemu_img"]

    def verify(self) -> str:
        self.calls.append(("verify",))
        if self.verify_error:
            raise self.verify_error
        return self.net_name

    def start(self, xml: str) -> None:
        self.calls.append(("start", xml))
        if self.start_error:
            raise self.start_error
        self.started_xml = xml

    def stop(self) -> None:
        self.calls.append(("stop",))
        if self.stop_error:
            raise self.stop_error

    def wait_for_shutdown(self, cancel) -> bool:
        self.calls.append(("wait_for_shutdown",))
        self.wait_cancel = cancel
        return self.shutdown_result

    def qemu_img(self, *args: str) -> None:
        self.calls.append(("qemu_img",) + tuple(args))
        if self.qemu_img_error:
            raise self.qemu_img_error

    def get_domain_ip(self) -> str:
        self.calls.append(("get_domain_ip",))
        if self.domain_ip_error:
            raise self.domain_ip_error
        return self.domain_ip

    def version(self) -> str:
        self.calls.append(("version",))
        if self.version_error:
            raise self.version_error
        return self.lib_version

    def close(self) -> None:
        self.calls.append(("close",))
        self.closed = True


@pytest.fixture
def driver_mock() -> DriverMock:
    return DriverMock()


@pytest.fixture
def iso_file(tmp_path):
    iso = tmp_path / "install.iso"
    iso.write_bytes(b"installer")
    return iso


@pytest.fixture
def build_config(tmp_path, iso_file) -> BuildConfig:
    """Return a validated-looking BuildConfig rooted in tmp_path."""
    return BuildConfig(
        iso_url=str(iso_file),
        hypervisor="kvm",
        emulator_binary="/usr/bin/qemu-system-x86_64",
        output_directory=str(tmp_path / "output"),
        vm_name="test-vm",
        disk_size="10G",
        boot_wait=0.0,
        shutdown_timeout=1.0,
    )


@pytest.fixture
def build_state(build_config, driver_mock) -> BuildState:
    return BuildState(config=build_config, driver=driver_mock, net_name="default")


@pytest.fixture
def cancel() -> threading.Event:
    return threading.Event()
