"""File primitives, mount probing and backup destination resolution."""

import os
import math
import tarfile
import subprocess
from pathlib import Path, PurePosixPath
from typing import List, Optional, Tuple, Union

from .errors import ConfigurationError, MissingToolError, MountCheckError, StorageOperationError
from .utils import NotificationManager, format_size, run_command


PathLike = Union[str, Path]

USER_SHARE_ROOT = PurePosixPath('/mnt/user')
ARRAY_ROOT = PurePosixPath('/mnt')
SHARE_INCLUDE_FIELD = 'shareInclude'


class StorageManager:
    """Clone, compress, copy and archive primitives used by the backup jobs.

    Every operation raises StorageOperationError on failure. In dry-run mode
    operations only log what they would do.
    """

    def __init__(self, config, notification_manager: NotificationManager, dry_run: Optional[bool] = None):
        """Initialize storage manager.

        Args:
            config: Configuration object
            notification_manager: Notification manager instance
            dry_run: Override the configured dry-run flag
        """
        self.config = config
        self.notifier = notification_manager
        self.dry_run = config.dry_run if dry_run is None else dry_run

    def _run(self, command: List[str], action: str) -> None:
        if self.dry_run:
            self.notifier.info(f"[dry-run] {' '.join(command)}")
            return
        try:
            result = run_command(command)
        except OSError as e:
            raise StorageOperationError(f"{action} failed: {e}") from e
        if result.returncode != 0:
            raise StorageOperationError(
                f"{action} failed (exit {result.returncode}): {result.stderr.strip()}"
            )

    def clone_file(self, src: PathLike, dst: PathLike) -> None:
        """Copy-on-write clone keeping mode and owner.

        Timestamps are not preserved: the clone's mtime is its creation time,
        which is what rotation ages it by.
        """
        self._run(
            ["cp", "--reflink=always", "--preserve=mode,ownership", str(src), str(dst)],
            f"Clone of {src}"
        )

    def compress(self, src: PathLike, dst: PathLike) -> None:
        """zstd-compress src into dst, using all cores."""
        self._run(["zstd", "-q", "-T0", "-f", str(src), "-o", str(dst)], f"Compression of {src}")

    def copy(self, src: PathLike, dst: PathLike) -> None:
        """Uncompressed sparse-aware copy."""
        self._run(["rsync", "-a", "--sparse", str(src), str(dst)], f"Copy of {src}")

    def archive_directory(self, src_dir: PathLike, dst_file: PathLike) -> None:
        """Package a directory tree into a gzip tarball."""
        src_path = Path(src_dir)
        if not src_path.is_dir():
            raise StorageOperationError(f"Archive source is not a directory: {src_dir}")
        if self.dry_run:
            self.notifier.info(f"[dry-run] Would archive {src_dir} to {dst_file}")
            return
        try:
            with tarfile.open(dst_file, 'w:gz') as tar:
                tar.add(str(src_path), arcname=src_path.name)
        except (OSError, tarfile.TarError) as e:
            # Remove partial archive
            if Path(dst_file).exists():
                Path(dst_file).unlink()
            raise StorageOperationError(f"Archive of {src_dir} failed: {e}") from e
        self.notifier.info(f"Archived {src_dir} to {dst_file} ({format_size(Path(dst_file).stat().st_size)})")

    def remove(self, path: PathLike) -> None:
        """Remove a file; a missing file is not an error."""
        if self.dry_run:
            self.notifier.info(f"[dry-run] Would remove {path}")
            return
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageOperationError(f"Removal of {path} failed: {e}") from e

    def make_directory(self, path: PathLike) -> None:
        if self.dry_run:
            if not Path(path).is_dir():
                self.notifier.info(f"[dry-run] Would create {path}")
            return
        try:
            Path(path).mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageOperationError(f"Could not create {path}: {e}") from e


class MountProbe:
    """Reads mount and usage facts from the running system."""

    def __init__(self, mounts_file: str = '/proc/self/mounts', timeout: int = 60):
        self.mounts_file = mounts_file
        self.timeout = timeout

    def is_mount_point(self, path: PathLike) -> bool:
        return os.path.ismount(path)

    def filesystem_type(self, path: PathLike) -> Optional[str]:
        """Filesystem type of the mount mounted exactly at ``path``."""
        target = os.path.realpath(path)
        fs_type = None
        try:
            with open(self.mounts_file, 'r') as f:
                for line in f:
                    fields = line.split()
                    if len(fields) < 3:
                        continue
                    # /proc/mounts escapes spaces as \040
                    mount_point = fields[1].replace('\\040', ' ')
                    if mount_point == target:
                        # Later entries shadow earlier ones mounted at the same place
                        fs_type = fields[2]
        except OSError:
            return None
        return fs_type

    def reflink_enabled(self, path: PathLike) -> bool:
        """True when xfs_info reports the filesystem was made with reflink=1.

        Raises:
            MissingToolError: when xfs_info is not installed
            MountCheckError: when xfs_info cannot be run or times out
        """
        try:
            result = run_command(["xfs_info", str(path)], timeout=self.timeout)
        except FileNotFoundError as e:
            raise MissingToolError(["xfs_info"]) from e
        except (OSError, subprocess.TimeoutExpired) as e:
            raise MountCheckError(path, MountCheckError.NO_REFLINK_SUPPORT, f"xfs_info failed: {e}") from e
        return result.returncode == 0 and 'reflink=1' in result.stdout

    def usage_percent(self, path: PathLike) -> int:
        """Used percentage as df reports it: used / (used + available), rounded up."""
        stat = os.statvfs(path)
        used = (stat.f_blocks - stat.f_bfree) * stat.f_frsize
        available = stat.f_bavail * stat.f_frsize
        total = used + available
        if total == 0:
            return 0
        return int(math.ceil(used * 100 / total))


def read_share_config(config_file: PathLike) -> dict:
    """Parse an Unraid share .cfg file of KEY="VALUE" lines."""
    values = {}
    with open(config_file, 'r') as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith('#') or '=' not in line:
                continue
            key, value = line.split('=', 1)
            values[key.strip()] = value.strip().strip('"')
    return values


def resolve_backup_target(location: PathLike, mountpoint: PathLike,
                          shares_config_dir: PathLike) -> Tuple[str, str]:
    """Find the physical mount point and directory backups are written to.

    A location under ``/mnt/user/<share>`` goes through the FUSE user-share
    layer; it is translated to the single array disk the share includes so
    reflinks and usage checks act on the real filesystem.

    Returns:
        (mount point to check, destination directory)

    Raises:
        ConfigurationError: when the share config is missing or does not
            include exactly one disk
    """
    location_path = PurePosixPath(str(location))
    try:
        relative = location_path.relative_to(USER_SHARE_ROOT)
    except ValueError:
        return str(mountpoint), str(location_path)

    if not relative.parts:
        raise ConfigurationError(f"Backup location {location} names no share")

    share = relative.parts[0]
    config_file = Path(shares_config_dir) / f"{share}.cfg"
    try:
        share_config = read_share_config(config_file)
    except OSError as e:
        raise ConfigurationError(f"Cannot read share configuration {config_file}: {e}") from e

    disks = [d.strip() for d in share_config.get(SHARE_INCLUDE_FIELD, '').split(',') if d.strip()]
    if len(disks) != 1:
        raise ConfigurationError(
            f"Share '{share}' must include exactly one disk in {SHARE_INCLUDE_FIELD}, "
            f"found {len(disks)} in {config_file}"
        )

    disk_mount = ARRAY_ROOT / disks[0]
    return str(disk_mount), str(disk_mount / relative)
