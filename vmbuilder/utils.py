"""Utility functions for vmbuilder."""

from __future__ import annotations

import hashlib
import os
import random
import string
import subprocess
import tempfile
import time
from pathlib import Path
from typing import List
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from vmbuilder.constants import _LOG_VERBOSE
from vmbuilder.exceptions import BuilderError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def generate_password(length: int = 8) -> str:
    """Random alphanumeric password, e.g. for the VNC console."""
    alphabet = string.ascii_letters + string.digits
    rng = random.SystemRandom()
    return "".join(rng.choice(alphabet) for _ in range(length))


def file_checksum(path: Path, algorithm: str) -> str:
    digest = hashlib.new(algorithm)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress line using Python urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "vmbuilder/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise BuilderError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise BuilderError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    total_mb = total_bytes / (1024 * 1024)
                    print(f"\r  {pct:5.1f}% {downloaded_mb:.1f}/{total_mb:.1f} MiB", end="", flush=True)
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)  # newline after progress
            tmp.flush()
            tmp_path.replace(destination)
            elapsed = time.time() - start_time
            log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
        except Exception:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
            raise


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
