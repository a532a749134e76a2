"""vmbuilder package."""

__all__ = [
    "builder",
    "cli",
    "config",
    "constants",
    "domain_xml",
    "driver",
    "exceptions",
    "libvirt_driver",
    "models",
    "monitor",
    "qemu_img",
    "runner",
    "state",
    "steps",
    "utils",
]
