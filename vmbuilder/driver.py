"""Hypervisor driver interface and libvirt address handling."""

from __future__ import annotations

import abc
from typing import Optional, Tuple


class Driver(abc.ABC):
    """Operations the build steps need from a hypervisor."""

    @abc.abstractmethod
    def verify(self) -> str:
        """Find the active network bound to the configured bridge and return its name."""
        raise NotImplementedError

    @abc.abstractmethod
    def start(self, xml: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def stop(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def wait_for_shutdown(self, cancel) -> bool:
        """True once the started domain has stopped, False if ``cancel`` was set first."""
        raise NotImplementedError

    @abc.abstractmethod
    def qemu_img(self, *args: str) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def get_domain_ip(self) -> str:
        raise NotImplementedError

    @abc.abstractmethod
    def version(self) -> str:
        raise NotImplementedError

    def close(self) -> None:
        pass


def split_host_port(address: str) -> Optional[Tuple[str, int]]:
    """Return ``(host, port)`` for ``host:port`` or ``[v6]:port``, else None."""
    if address.startswith("["):
        host, sep, port = address[1:].partition("]:")
        if not sep or not host:
            return None
    else:
        if address.count(":") != 1:
            return None
        host, _, port = address.partition(":")
    if not port.isdigit():
        return None
    return host, int(port)


def libvirt_uri(address: str) -> str:
    """Map a socket path or ``host:port`` to a libvirt URI; URIs pass through."""
    if "://" in address:
        return address
    host_port = split_host_port(address)
    if host_port is not None:
        host, port = host_port
        if ":" in host:
            host = f"[{host}]"
        return f"qemu+tcp://{host}:{port}/system"
    return f"qemu+unix:///system?socket={address}"


def connect(address: str, net_bridge: str) -> Driver:
    from vmbuilder.libvirt_driver import connect as libvirt_connect

    return libvirt_connect(address, net_bridge)
