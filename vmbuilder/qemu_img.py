"""qemu-img argument builders."""

from __future__ import annotations

from typing import List, Optional, Sequence


def convert_args(
    user_args: Sequence[str],
    fmt: str,
    source: str,
    target: str,
    compress: bool = False,
) -> List[str]:
    """``convert [-c] [user args] -O <fmt> <source> <target>``."""
    args = ["convert"]
    if compress:
        args.append("-c")
    args.extend(user_args)
    args.extend(["-O", fmt, source, target])
    return args


def create_args(
    fmt: str,
    user_args: Sequence[str],
    target: str,
    size: str,
    backing: Optional[str] = None,
    backing_format: Optional[str] = None,
) -> List[str]:
    """``create -f <fmt> [-b <backing> -F <backing fmt>] [user args] <target> <size>``."""
    args = ["create", "-f", fmt]
    if backing:
        args.extend(["-b", backing, "-F", backing_format or fmt])
    args.extend(user_args)
    args.extend([target, size])
    return args


def resize_args(fmt: str, user_args: Sequence[str], source: str, size: str) -> List[str]:
    args = ["resize", "-f", fmt]
    args.extend(user_args)
    args.extend([source, size])
    return args
