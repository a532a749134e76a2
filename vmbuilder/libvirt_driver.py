"""Hypervisor driver backed by the libvirt python bindings."""

from __future__ import annotations

import shutil
import socket
import threading
from typing import Optional

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from vmbuilder.constants import DOMAIN_POLL_INTERVAL, LIBVIRT_DIAL_TIMEOUT, SHUTDOWN_WAIT_INTERVAL
from vmbuilder.driver import Driver, libvirt_uri, split_host_port
from vmbuilder.exceptions import (
    DomainAddressNotFoundError,
    DriverConnectionError,
    ExternalToolError,
    StartError,
    StopError,
    VerificationError,
)
from vmbuilder.monitor import DomainMonitor, DomainState
from vmbuilder.utils import log, run

_STATE_MAP = {
    libvirt.VIR_DOMAIN_NOSTATE: DomainState.NOSTATE,
    libvirt.VIR_DOMAIN_RUNNING: DomainState.RUNNING,
    libvirt.VIR_DOMAIN_BLOCKED: DomainState.BLOCKED,
    libvirt.VIR_DOMAIN_PAUSED: DomainState.SUSPENDED,
    libvirt.VIR_DOMAIN_SHUTDOWN: DomainState.SHUTDOWN,
    libvirt.VIR_DOMAIN_SHUTOFF: DomainState.SHUTOFF,
    libvirt.VIR_DOMAIN_CRASHED: DomainState.CRASHED,
    libvirt.VIR_DOMAIN_PMSUSPENDED: DomainState.PMSUSPENDED,
}

# destroy() on a domain that already went away is not a failure.
_GONE_ERRORS = (libvirt.VIR_ERR_NO_DOMAIN, libvirt.VIR_ERR_OPERATION_INVALID)


class LibvirtDriver(Driver):
    def __init__(
        self,
        conn,
        net_bridge: str,
        qemu_img_path: str,
        poll_interval: float = DOMAIN_POLL_INTERVAL,
        wait_interval: float = SHUTDOWN_WAIT_INTERVAL,
    ) -> None:
        self.conn = conn
        self.net_bridge = net_bridge
        self.net_name: Optional[str] = None
        self.qemu_img_path = qemu_img_path
        self.poll_interval = poll_interval
        self.wait_interval = wait_interval
        self._lock = threading.Lock()
        self._domain = None
        self._domain_id = 0
        self._monitor: Optional[DomainMonitor] = None

    @property
    def domain_id(self) -> int:
        with self._lock:
            return self._domain_id

    def verify(self) -> str:
        try:
            networks = self.conn.listAllNetworks(libvirt.VIR_CONNECT_LIST_NETWORKS_ACTIVE)
        except libvirt.libvirtError as exc:
            raise VerificationError(f"Failed to list libvirt networks: {exc}") from exc
        for network in networks:
            try:
                bridge = network.bridgeName()
            except libvirt.libvirtError as exc:
                raise VerificationError(f"Failed to read bridge of network {network.name()}: {exc}") from exc
            if bridge == self.net_bridge:
                self.net_name = network.name()
                log("DEBUG", f"Using libvirt network {self.net_name} on bridge {bridge}")
                return self.net_name
        raise VerificationError(f"Not found available network for bridge {self.net_bridge}")

    def start(self, xml: str) -> None:
        log("DEBUG", f"Starting create domain from XML\n{xml}")
        try:
            domain = self.conn.createXML(xml, 0)
        except libvirt.libvirtError as exc:
            raise StartError(f"Failed to start domain: {exc}") from exc
        if domain is None:
            raise StartError("Failed to start domain")

        try:
            name = domain.name()
            domain_id = domain.ID()
        except libvirt.libvirtError as exc:
            try:
                domain.destroy()
            except libvirt.libvirtError as destroy_exc:
                log("WARN", f"Failed to destroy half-started domain: {destroy_exc}")
            raise StartError(f"Failed to start domain: {exc}") from exc

        monitor = DomainMonitor(
            lambda: self._domain_state(domain),
            on_end=self._domain_ended,
            poll_interval=self.poll_interval,
            name=name,
        )
        with self._lock:
            self._domain = domain
            self._domain_id = domain_id
            self._monitor = monitor
        monitor.start()
        log("SUCCESS", f"Domain {name} started")

    def _domain_state(self, domain) -> DomainState:
        try:
            state = domain.state()[0]
        except libvirt.libvirtError as exc:
            log("WARN", f"Error getting domain state: {exc}")
            return DomainState.UNREACHABLE
        return _STATE_MAP.get(state, DomainState.NOSTATE)

    def _domain_ended(self, state: DomainState) -> None:
        with self._lock:
            self._domain_id = 0

    def stop(self) -> None:
        with self._lock:
            if self._domain is None or self._domain_id == 0:
                return
            try:
                self._domain.destroy()
            except libvirt.libvirtError as exc:
                if exc.get_error_code() not in _GONE_ERRORS:
                    raise StopError(f"Failed to destroy domain: {exc}") from exc
                log("DEBUG", f"Domain already gone: {exc}")
            self._domain_id = 0

    def wait_for_shutdown(self, cancel) -> bool:
        with self._lock:
            monitor = self._monitor
        if monitor is None:
            return True
        return monitor.wait(cancel, self.wait_interval)

    def qemu_img(self, *args: str) -> None:
        log("DEBUG", f"Executing qemu-img: {list(args)}")
        try:
            result = run([self.qemu_img_path, *args], check=False, capture_output=True)
        except OSError as exc:
            raise ExternalToolError(f"QemuImg error: {exc}") from exc
        stdout = (result.stdout or "").strip()
        stderr = (result.stderr or "").strip()
        log("DEBUG", f"stdout: {stdout}")
        log("DEBUG", f"stderr: {stderr}")
        if result.returncode != 0:
            raise ExternalToolError(f"QemuImg error: {stderr}")

    def get_domain_ip(self) -> str:
        with self._lock:
            domain = self._domain
        if domain is None:
            raise DomainAddressNotFoundError("No domain has been started")
        try:
            interfaces = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE, 0)
        except libvirt.libvirtError as exc:
            raise DomainAddressNotFoundError(f"Failed to read addresses of domain {domain.name()}: {exc}") from exc
        for iface in (interfaces or {}).values():
            for addr in iface.get("addrs") or []:
                if addr.get("type") == libvirt.VIR_IP_ADDR_TYPE_IPV4:
                    return addr["addr"]
        raise DomainAddressNotFoundError(f"No ipv4 address for domain {domain.name()}")

    def version(self) -> str:
        try:
            raw = self.conn.getLibVersion()
        except libvirt.libvirtError as exc:
            raise DriverConnectionError(f"Failed to read libvirt version: {exc}") from exc
        major, rest = divmod(raw, 1000000)
        minor, release = divmod(rest, 1000)
        version = f"{major}.{minor}.{release}"
        log("DEBUG", f"Libvirt version: {version}")
        return version

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except libvirt.libvirtError as exc:
                log("WARN", f"Failed to close libvirt connection: {exc}")
            self.conn = None


def _dial(address: str, timeout: float) -> None:
    host_port = split_host_port(address)
    try:
        if host_port is not None:
            sock = socket.create_connection(host_port, timeout=timeout)
        else:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
            sock.settimeout(timeout)
            try:
                sock.connect(address)
            except OSError:
                sock.close()
                raise
    except OSError as exc:
        raise DriverConnectionError(f"Could not connect to libvirt at {address}: {exc}") from exc
    sock.close()


def connect(
    address: str,
    net_bridge: str,
    poll_interval: float = DOMAIN_POLL_INTERVAL,
    wait_interval: float = SHUTDOWN_WAIT_INTERVAL,
    dial_timeout: float = LIBVIRT_DIAL_TIMEOUT,
) -> LibvirtDriver:
    """Open a libvirt connection at ``address`` (socket path, ``host:port`` or URI)."""
    qemu_img_path = shutil.which("qemu-img")
    if qemu_img_path is None:
        raise DriverConnectionError("qemu-img not found in PATH")

    if "://" not in address:
        _dial(address, dial_timeout)

    uri = libvirt_uri(address)
    log("DEBUG", f"Opening libvirt connection {uri}")
    try:
        conn = libvirt.open(uri)
    except libvirt.libvirtError as exc:
        raise DriverConnectionError(f"Failed to open libvirt connection to {uri}: {exc}") from exc
    if conn is None:
        raise DriverConnectionError(f"Failed to open libvirt connection to {uri}")
    return LibvirtDriver(conn, net_bridge, qemu_img_path, poll_interval=poll_interval, wait_interval=wait_interval)
