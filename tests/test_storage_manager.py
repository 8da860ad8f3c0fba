from __future__ import annotations

import os
import subprocess
import tarfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from vmbackup.errors import ConfigurationError, MissingToolError, MountCheckError, StorageOperationError
from vmbackup.storage_manager import MountProbe, StorageManager, resolve_backup_target


def write_share(shares: Path, name: str, include: str) -> None:
    (shares / f"{name}.cfg").write_text(
        f'# Generated settings:\nshareComment=""\nshareInclude="{include}"\nshareUseCache="no"\n'
    )


def test_direct_location_is_used_as_is(tmp_path: Path) -> None:
    assert resolve_backup_target("/mnt/backups/vms", "/mnt/backups", tmp_path) == (
        "/mnt/backups", "/mnt/backups/vms"
    )


def test_user_share_is_translated_to_its_disk(tmp_path: Path) -> None:
    write_share(tmp_path, "backup-vm", "disk3")

    assert resolve_backup_target("/mnt/user/backup-vm", "/mnt/user/backup-vm", tmp_path) == (
        "/mnt/disk3", "/mnt/disk3/backup-vm"
    )
    assert resolve_backup_target("/mnt/user/backup-vm/host1", "", tmp_path) == (
        "/mnt/disk3", "/mnt/disk3/backup-vm/host1"
    )


@pytest.mark.parametrize("include", ["", "disk1,disk2", " , "])
def test_share_must_include_exactly_one_disk(tmp_path: Path, include: str) -> None:
    write_share(tmp_path, "backup-vm", include)
    with pytest.raises(ConfigurationError):
        resolve_backup_target("/mnt/user/backup-vm", "", tmp_path)


def test_missing_share_config_is_a_configuration_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        resolve_backup_target("/mnt/user/nowhere", "", tmp_path)


def test_filesystem_type_reads_exact_mount_entry(tmp_path: Path) -> None:
    mount_point = os.path.realpath(tmp_path)
    mounts = tmp_path / "mounts"
    mounts.write_text(
        "rootfs / rootfs rw 0 0\n"
        f"/dev/nvme0n1p1 {mount_point} xfs rw,relatime 0 0\n"
        f"/dev/nvme0n1p2 {mount_point}/inner btrfs rw 0 0\n"
    )
    probe = MountProbe(mounts_file=str(mounts))

    assert probe.filesystem_type(tmp_path) == "xfs"
    assert probe.filesystem_type(tmp_path / "elsewhere") is None


def test_usage_percent_rounds_up_like_df(monkeypatch: pytest.MonkeyPatch) -> None:
    stat = SimpleNamespace(f_blocks=1000, f_bfree=100, f_bavail=50, f_frsize=4096)
    monkeypatch.setattr("vmbackup.storage_manager.os.statvfs", lambda path: stat)

    # used 900, available 50 -> 94.7% -> 95
    assert MountProbe().usage_percent("/mnt/disk1") == 95


def test_reflink_detection_parses_xfs_info(monkeypatch: pytest.MonkeyPatch) -> None:
    output = "meta-data=/dev/sdb1 isize=512\n         =  crc=1 finobt=1, sparse=1, rmapbt=0\n" \
             "         =  reflink=1 bigtime=1\n"
    monkeypatch.setattr(
        "vmbackup.storage_manager.run_command",
        lambda command, timeout=None: subprocess.CompletedProcess(command, 0, output, ""),
    )
    assert MountProbe().reflink_enabled("/mnt/disk1")

    monkeypatch.setattr(
        "vmbackup.storage_manager.run_command",
        lambda command, timeout=None: subprocess.CompletedProcess(command, 0, "reflink=0", ""),
    )
    assert not MountProbe().reflink_enabled("/mnt/disk1")


def test_missing_xfs_info_is_a_missing_tool(monkeypatch: pytest.MonkeyPatch) -> None:
    def missing(command, timeout=None):
        raise FileNotFoundError(command[0])

    monkeypatch.setattr("vmbackup.storage_manager.run_command", missing)

    with pytest.raises(MissingToolError) as excinfo:
        MountProbe().reflink_enabled("/mnt/disk1")
    assert excinfo.value.tools == ["xfs_info"]


def test_xfs_info_timeout_is_a_mount_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def hang(command, timeout=None):
        raise subprocess.TimeoutExpired(command, timeout)

    monkeypatch.setattr("vmbackup.storage_manager.run_command", hang)

    with pytest.raises(MountCheckError) as excinfo:
        MountProbe(timeout=1).reflink_enabled("/mnt/disk1")
    assert excinfo.value.reason == MountCheckError.NO_REFLINK_SUPPORT
    assert "xfs_info failed" in str(excinfo.value)


def test_failed_command_raises_storage_error(host_config, make_notifier, monkeypatch) -> None:
    config = host_config()
    storage = StorageManager(config, make_notifier(config))
    monkeypatch.setattr(
        "vmbackup.storage_manager.run_command",
        lambda command, timeout=None: subprocess.CompletedProcess(command, 1, "", "Operation not supported"),
    )

    with pytest.raises(StorageOperationError, match="Operation not supported"):
        storage.clone_file("/a.img", "/b.img")


def test_dry_run_runs_no_commands(host_config, make_notifier, monkeypatch, tmp_path: Path) -> None:
    config = host_config(dry_run=True)
    storage = StorageManager(config, make_notifier(config))

    def fail(*args, **kwargs):
        raise AssertionError("command executed in dry-run")

    monkeypatch.setattr("vmbackup.storage_manager.run_command", fail)
    storage.clone_file("/a.img", "/b.img")
    storage.compress("/a.img", "/b.zst")
    storage.copy("/a.img", "/b.img")
    storage.make_directory(tmp_path / "new")
    assert not (tmp_path / "new").exists()


def test_archive_directory_writes_tarball(host, host_config, make_notifier, tmp_path: Path) -> None:
    config = host_config()
    storage = StorageManager(config, make_notifier(config))
    archive = tmp_path / "libvirt-backup-2026-10-19_030000.tar.gz"

    storage.archive_directory(host["libvirt"], archive)

    with tarfile.open(archive, "r:gz") as tar:
        assert "libvirt/qemu/win10.xml" in tar.getnames()


def test_archive_of_missing_directory_fails(host_config, make_notifier, tmp_path: Path) -> None:
    config = host_config()
    storage = StorageManager(config, make_notifier(config))
    with pytest.raises(StorageOperationError):
        storage.archive_directory(tmp_path / "absent", tmp_path / "out.tar.gz")
    assert not (tmp_path / "out.tar.gz").exists()


def test_remove_ignores_missing_file(host_config, make_notifier, tmp_path: Path) -> None:
    config = host_config()
    storage = StorageManager(config, make_notifier(config))
    target = tmp_path / "clone.img"
    target.write_bytes(b"x")

    storage.remove(target)
    storage.remove(target)

    assert not target.exists()
