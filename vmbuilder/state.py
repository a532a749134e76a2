"""Shared state threaded through the build steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, List, Optional

from vmbuilder.exceptions import StateError
from vmbuilder.models import BuildConfig


@dataclass
class BuildState:
    config: BuildConfig
    driver: Any
    net_name: Optional[str] = None
    iso_path: Optional[str] = None
    floppy_path: Optional[str] = None
    disk_paths: List[str] = field(default_factory=list)
    vnc_port: Optional[int] = None
    vnc_password: Optional[str] = None
    comm_host: Optional[str] = None
    error: Optional[BaseException] = None
    cancelled: bool = False
    halted: bool = False

    def require(self, name: str) -> Any:
        """Return a field an earlier step must have written."""
        value = getattr(self, name)
        if value is None or (isinstance(value, list) and not value):
            raise StateError(f"build state field '{name}' read before it was written")
        return value
