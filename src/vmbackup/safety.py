"""Pre-flight checks for copy-on-write mounts and free space."""

from dataclasses import dataclass
from typing import Tuple

from .errors import MountCheckError, UsageExceededError


COW_NATIVE_FS = 'btrfs'
REFLINK_CAPABLE_FS = 'xfs'


@dataclass(frozen=True)
class MountRequirement:
    """A path that must be a mount point of a clone-capable filesystem."""

    path: str
    allowed_types: Tuple[str, ...] = (COW_NATIVE_FS, REFLINK_CAPABLE_FS)


def check_mount(req: MountRequirement, probe) -> str:
    """Validate that ``req.path`` can hold reflink clones.

    Args:
        req: Mount requirement
        probe: Object exposing ``is_mount_point``, ``filesystem_type`` and
            ``reflink_enabled``

    Returns:
        The detected filesystem type

    Raises:
        MountCheckError: with ``reason`` set to the failing check
    """
    if not probe.is_mount_point(req.path):
        raise MountCheckError(req.path, MountCheckError.NOT_A_MOUNT)

    fs_type = probe.filesystem_type(req.path)
    if not fs_type:
        raise MountCheckError(req.path, MountCheckError.UNKNOWN_FS_TYPE)

    if fs_type not in req.allowed_types:
        raise MountCheckError(
            req.path, MountCheckError.UNSUPPORTED_FS_TYPE,
            f"{fs_type} is not one of {', '.join(req.allowed_types)}"
        )

    if fs_type == REFLINK_CAPABLE_FS and not probe.reflink_enabled(req.path):
        raise MountCheckError(req.path, MountCheckError.NO_REFLINK_SUPPORT, "xfs without reflink=1")

    return fs_type


def check_usage(path: str, max_pct: int, probe) -> int:
    """Fail when the filesystem holding ``path`` is fuller than ``max_pct``.

    Usage equal to the ceiling passes.

    Returns:
        The measured usage percentage

    Raises:
        UsageExceededError: when usage is strictly above ``max_pct``
    """
    used = probe.usage_percent(path)
    if used > max_pct:
        raise UsageExceededError(path, used, max_pct)
    return used
