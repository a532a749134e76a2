"""Domain XML generation for vmbuilder."""

from __future__ import annotations

import os
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence
from xml.etree.ElementTree import Element, SubElement, tostring

from vmbuilder.constants import DISK_INTERFACE_DEV_PREFIX, PASSTHROUGH_CPU_MODES
from vmbuilder.exceptions import TemplateError
from vmbuilder.models import BuildConfig, DiskSpec
from vmbuilder.utils import log


@dataclass(frozen=True)
class DomainXmlContext:
    """Runtime values produced by earlier build steps."""

    net_name: str
    disks: List[DiskSpec] = field(default_factory=list)
    iso_path: str = ""
    floppy_path: Optional[str] = None
    vnc_port: int = 0
    vnc_password: Optional[str] = None


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def disk_specs(config: BuildConfig, paths: Sequence[str]) -> List[DiskSpec]:
    """One DiskSpec per path; device letters follow the order of ``paths``."""
    prefix = DISK_INTERFACE_DEV_PREFIX[config.disk_interface]
    if len(paths) > 26:
        raise TemplateError(f"Too many disks ({len(paths)}), at most 26 are supported")
    return [
        DiskSpec(
            format=config.format,
            source=os.path.abspath(path),
            dev=f"{prefix}{chr(ord('a') + index)}",
            bus=config.disk_interface,
            cache=config.disk_cache,
            discard=config.disk_discard,
            detect_zeroes=config.disk_detect_zeroes,
        )
        for index, path in enumerate(paths)
    ]


def cdrom_dev(disks: Sequence[DiskSpec]) -> str:
    """Target for the install media: ``sdd`` unless a disk already uses it."""
    used = {disk.dev for disk in disks}
    if "sdd" not in used:
        return "sdd"
    for letter in string.ascii_lowercase:
        if f"sd{letter}" not in used:
            return f"sd{letter}"
    raise TemplateError("No free sd device name left for the cdrom")

def _disk_element(disk: DiskSpec) -> Element:
    el = Element("disk", type="file", device="disk")
    driver_attrs = {"name": "qemu", "type": disk.format, "cache": disk.cache, "discard": disk.discard}
    if disk.detect_zeroes != "off":
        driver_attrs["detect_zeroes"] = disk.detect_zeroes
    SubElement(el, "driver", driver_attrs)
    SubElement(el, "source", file=disk.source)
    SubElement(el, "target", dev=disk.dev, bus=disk.bus)
    return el


def _readonly_disk(device: str, source: str, dev: str) -> Element:
    el = Element("disk", type="file", device=device)
    SubElement(el, "driver", name="qemu", type="raw")
    SubElement(el, "source", file=source)
    SubElement(el, "target", dev=dev)
    SubElement(el, "readonly")
    return el


def _pci_address(parent: Element, bus: str, slot: str) -> None:
    SubElement(parent, "address", type="pci", domain="0x0000", bus=bus, slot=slot, function="0x0")


def render_disks(disks: Sequence[DiskSpec]) -> str:
    return "\n".join(_element_to_str(_disk_element(disk)) for disk in disks)


def render_domain_xml(config: BuildConfig, context: DomainXmlContext) -> str:
    """Render the libvirt domain definition for the build VM.

    When ``config.xml_file`` is set its contents are used instead, with
    ``$VncIP``, ``$VncPort``, ``$VncPassword``, ``$VMName``, ``$IsoPath``,
    ``$NetName``, ``$DiskPaths`` and ``$Disks`` substituted.
    """
    if config.xml_file:
        return _render_user_template(config, context)

    x86 = config.arch == "x86_64"
    domain = Element("domain", type=config.hypervisor)
    SubElement(domain, "name").text = config.vm_name
    SubElement(domain, "vcpu").text = str(config.cpus)
    SubElement(domain, "memory", unit="MiB").text = str(config.memory)

    os_el = SubElement(domain, "os")
    SubElement(os_el, "type", arch=config.arch, machine=config.machine_type).text = "hvm"
    if config.loader:
        SubElement(os_el, "loader", readonly="yes", type="pflash").text = config.loader
    SubElement(os_el, "boot", dev="hd")
    SubElement(os_el, "boot", dev="cdrom")

    features = SubElement(domain, "features")
    SubElement(features, "acpi")
    SubElement(features, "apic")

    if config.cpu_mode in PASSTHROUGH_CPU_MODES:
        SubElement(domain, "cpu", mode=config.cpu_mode)
    else:
        cpu = SubElement(domain, "cpu", mode="custom", match="exact", check="none")
        SubElement(cpu, "model", fallback="allow").text = config.cpu_mode

    SubElement(domain, "clock", offset="utc")
    SubElement(domain, "on_poweroff").text = "destroy"
    SubElement(domain, "on_reboot").text = "restart"
    SubElement(domain, "on_crash").text = "destroy"

    devices = SubElement(domain, "devices")
    SubElement(devices, "emulator").text = config.emulator_binary
    for disk in context.disks:
        devices.append(_disk_element(disk))
    if not config.disk_image:
        devices.append(_readonly_disk("cdrom", context.iso_path, cdrom_dev(context.disks)))
    if context.floppy_path:
        devices.append(_readonly_disk("floppy", context.floppy_path, "fda"))

    usb = SubElement(devices, "controller", type="usb", index="0", model="ehci")
    _pci_address(usb, "0x02", "0x01")
    scsi = SubElement(devices, "controller", type="scsi", index="0", model="virtio-scsi")
    _pci_address(scsi, "0x02", "0x02")

    iface = SubElement(devices, "interface", type="network")
    SubElement(iface, "source", network=context.net_name)
    SubElement(iface, "model", type=config.net_device)

    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "source", path="/dev/pts/0")
    SubElement(serial, "target", type="isa-serial" if x86 else "system-serial", port="0")
    console = SubElement(devices, "console", type="pty", tty="/dev/pts/0")
    SubElement(console, "source", path="/dev/pts/0")
    SubElement(console, "target", type="serial", port="0")

    tablet = SubElement(devices, "input", type="tablet")
    SubElement(tablet, "alias", name="input0")
    keyboard = SubElement(devices, "input", type="keyboard")
    SubElement(keyboard, "alias", name="input1")

    graphics_attrs = {"type": "vnc", "port": str(context.vnc_port)}
    if context.vnc_password:
        graphics_attrs["passwd"] = context.vnc_password
    graphics = SubElement(devices, "graphics", graphics_attrs)
    SubElement(graphics, "listen", type="address", address=config.vnc_bind_address)

    video = SubElement(devices, "video")
    SubElement(video, "model", type="cirrus" if x86 else "virtio", primary="yes")

    balloon = SubElement(devices, "memballoon", model="virtio")
    _pci_address(balloon, "0x00", "0x08")

    return _element_to_str(domain)


def _render_user_template(config: BuildConfig, context: DomainXmlContext) -> str:
    log("INFO", "Overriding default libvirt xml with user defined xml")
    try:
        raw = Path(config.xml_file).read_text()
    except OSError as exc:
        raise TemplateError(f"Failed to read XML template {config.xml_file}: {exc}") from exc

    values = {
        "VncIP": config.vnc_bind_address,
        "VncPort": str(context.vnc_port),
        "VncPassword": context.vnc_password or "",
        "VMName": config.vm_name,
        "IsoPath": context.iso_path,
        "NetName": context.net_name,
        "DiskPaths": " ".join(disk.source for disk in context.disks),
        "Disks": render_disks(context.disks),
    }
    try:
        return string.Template(raw).substitute(values)
    except KeyError as exc:
        raise TemplateError(f"Unknown placeholder {exc} in {config.xml_file}") from exc
    except ValueError as exc:
        raise TemplateError(f"Invalid placeholder in {config.xml_file}: {exc}") from exc
