"""Data models for vmbuilder."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

from vmbuilder.constants import (
    DEFAULT_ARCH,
    DEFAULT_BOOT_WAIT,
    DEFAULT_BUILD_NAME,
    DEFAULT_CPU_MODE,
    DEFAULT_CPUS,
    DEFAULT_DETECT_ZEROES,
    DEFAULT_DISK_CACHE,
    DEFAULT_DISK_DISCARD,
    DEFAULT_DISK_INTERFACE,
    DEFAULT_DISK_SIZE,
    DEFAULT_EMULATOR,
    DEFAULT_FORMAT,
    DEFAULT_LIBVIRT_ADDR,
    DEFAULT_MACHINE_TYPE,
    DEFAULT_MEMORY_MB,
    DEFAULT_NET_BRIDGE,
    DEFAULT_NET_DEVICE,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_SSH_PORT,
    DEFAULT_SSH_USERNAME,
    DEFAULT_VNC_BIND_ADDRESS,
    DEFAULT_VNC_PORT_MAX,
    DEFAULT_VNC_PORT_MIN,
)


@dataclass(frozen=True)
class QemuImgArgs:
    """Extra user arguments spliced into qemu-img subcommands."""

    convert: Tuple[str, ...] = ()
    create: Tuple[str, ...] = ()
    resize: Tuple[str, ...] = ()


@dataclass(frozen=True)
class DiskSpec:
    format: str
    source: str
    dev: str
    bus: str
    cache: str
    discard: str
    detect_zeroes: str


@dataclass(frozen=True)
class BuildConfig:
    iso_url: str
    build_name: str = DEFAULT_BUILD_NAME
    iso_checksum: str = "none"
    iso_skip_cache: bool = False
    iso_target_path: Optional[str] = None
    floppy_image: Optional[str] = None
    hypervisor: str = "kvm"
    cpus: int = DEFAULT_CPUS
    memory: int = DEFAULT_MEMORY_MB
    # Disk
    disk_size: str = DEFAULT_DISK_SIZE
    disk_additional_size: Tuple[str, ...] = ()
    disk_interface: str = DEFAULT_DISK_INTERFACE
    disk_cache: str = DEFAULT_DISK_CACHE
    disk_discard: str = DEFAULT_DISK_DISCARD
    disk_detect_zeroes: str = DEFAULT_DETECT_ZEROES
    disk_image: bool = False
    use_backing_file: bool = False
    backing_format: str = DEFAULT_FORMAT
    skip_resize_disk: bool = False
    skip_compaction: bool = False
    disk_compression: bool = False
    format: str = DEFAULT_FORMAT
    qemu_img_args: QemuImgArgs = field(default_factory=QemuImgArgs)
    # Machine
    libvirt_addr: str = DEFAULT_LIBVIRT_ADDR
    arch: str = DEFAULT_ARCH
    machine_type: str = DEFAULT_MACHINE_TYPE
    loader: str = ""
    cpu_mode: str = DEFAULT_CPU_MODE
    emulator_binary: str = DEFAULT_EMULATOR
    net_device: str = DEFAULT_NET_DEVICE
    net_bridge: str = DEFAULT_NET_BRIDGE
    xml_file: Optional[str] = None
    # Output
    output_directory: str = f"output-{DEFAULT_BUILD_NAME}"
    vm_name: str = f"packer-{DEFAULT_BUILD_NAME}"
    force: bool = False
    # VNC
    vnc_bind_address: str = DEFAULT_VNC_BIND_ADDRESS
    vnc_use_password: bool = False
    vnc_port_min: int = DEFAULT_VNC_PORT_MIN
    vnc_port_max: int = DEFAULT_VNC_PORT_MAX
    boot_command: Tuple[str, ...] = ()
    boot_wait: float = DEFAULT_BOOT_WAIT
    # Remote commands
    ssh_host: Optional[str] = None
    ssh_port: int = DEFAULT_SSH_PORT
    ssh_username: str = DEFAULT_SSH_USERNAME
    ssh_private_key_file: Optional[str] = None
    provision: Tuple[str, ...] = ()
    shutdown_command: str = ""
    shutdown_timeout: float = DEFAULT_SHUTDOWN_TIMEOUT
