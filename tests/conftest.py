from __future__ import annotations

import shutil
from pathlib import Path
from typing import Dict, List, Optional

import pytest
import yaml

from vmbackup.config import Config
from vmbackup.errors import StorageOperationError
from vmbackup.storage_manager import StorageManager
from vmbackup.utils import NotificationManager
from vmbackup.vm_manager import Hypervisor


DOMAIN_XML = """<domain type='kvm'>
  <name>{name}</name>
  <devices>
{disks}
    <disk type='file' device='cdrom'>
      <source file='/mnt/user/isos/virtio-win.iso'/>
      <target dev='hdb' bus='sata'/>
    </disk>
  </devices>
</domain>
"""

DISK_XML = """    <disk type='file' device='disk'>
      <driver name='qemu' type='raw'/>
      <source file='{path}'/>
      <target dev='{dev}' bus='virtio'/>
{boot}    </disk>"""


def domain_xml(name: str, disks: List[tuple]) -> str:
    """Build domain XML from (path, boot_order or None) pairs."""
    entries = []
    for index, (path, order) in enumerate(disks):
        boot = f"      <boot order='{order}'/>\n" if order is not None else ""
        entries.append(DISK_XML.format(path=path, dev=f"hd{chr(ord('c') + index)}", boot=boot))
    return DOMAIN_XML.format(name=name, disks="\n".join(entries))


class FakeHypervisor(Hypervisor):
    def __init__(self, configs: Dict[str, str], extra: Optional[List[str]] = None):
        self.configs = configs
        self.extra = extra or []

    @property
    def command_name(self) -> str:
        return "virsh"

    def is_available(self) -> bool:
        return True

    def list_all_vm_names(self) -> List[str]:
        return list(self.configs) + self.extra

    def dump_config(self, vm_name: str) -> Optional[str]:
        return self.configs.get(vm_name)


class FakeProbe:
    def __init__(self, fs_types: Dict[str, str], reflink: bool = True, usage: int = 50):
        self.fs_types = {str(k): v for k, v in fs_types.items()}
        self.reflink = reflink
        self.usage = usage

    def is_mount_point(self, path) -> bool:
        return str(path) in self.fs_types

    def filesystem_type(self, path) -> Optional[str]:
        return self.fs_types.get(str(path))

    def reflink_enabled(self, path) -> bool:
        return self.reflink

    def usage_percent(self, path) -> int:
        return self.usage


class CopyStorage(StorageManager):
    """StorageManager with plain copies standing in for cp/zstd/rsync."""

    def __init__(self, config, notifier, fail_on: tuple = ()):
        super().__init__(config, notifier)
        self.fail_on = fail_on
        self.cloned: List[Path] = []

    def clone_file(self, src, dst) -> None:
        if self.dry_run:
            return super().clone_file(src, dst)
        if Path(src).name in self.fail_on:
            raise StorageOperationError(f"Clone of {src} failed: simulated")
        shutil.copyfile(src, dst)
        self.cloned.append(Path(dst))

    def compress(self, src, dst) -> None:
        if self.dry_run:
            return super().compress(src, dst)
        shutil.copyfile(src, dst)

    def copy(self, src, dst) -> None:
        if self.dry_run:
            return super().copy(src, dst)
        shutil.copyfile(src, dst)


@pytest.fixture
def write_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Write a YAML config into tmp_path and load it."""
    for var in ("VMBACKUP_BACKUP_LOCATION", "VMBACKUP_BACKUP_COUNT", "VMBACKUP_SNAPSHOT_COUNT",
                "VMBACKUP_RETENTION_DAYS", "VMBACKUP_LOG_LEVEL", "VMBACKUP_DRY_RUN"):
        monkeypatch.delenv(var, raising=False)

    def _write(data: dict) -> Config:
        path = tmp_path / "vmbackup.yaml"
        path.write_text(yaml.safe_dump(data))
        return Config(str(path))

    return _write


@pytest.fixture
def host(tmp_path: Path) -> Dict[str, Path]:
    """A fake hypervisor host layout under tmp_path."""
    layout = {
        "vm_mount": tmp_path / "cache",
        "domains": tmp_path / "cache" / "domains",
        "libvirt": tmp_path / "etc" / "libvirt",
        "backup": tmp_path / "backup",
        "logs": tmp_path / "logs",
        "shares": tmp_path / "shares",
    }
    layout["domains"].mkdir(parents=True)
    (layout["libvirt"] / "qemu").mkdir(parents=True)
    (layout["libvirt"] / "qemu" / "win10.xml").write_text("<domain/>")
    layout["backup"].mkdir()
    layout["shares"].mkdir()
    return layout


@pytest.fixture
def host_config(host, write_config):
    """Config pointing every path at the fake host layout."""

    def _make(**overrides) -> Config:
        data = {
            "vm": {"snapshot_list": "ALL", "backup_list": "ALL",
                   "backup_primary_only": True, "image_extension": "img"},
            "backup": {"compression": True, "count": 2,
                       "location": str(host["backup"]), "mountpoint": str(host["backup"])},
            "snapshot": {"count": 3},
            "retention": {"days": 30},
            "logging": {"level": "DEBUG", "console": False, "directory": str(host["logs"]), "count": 5},
            "paths": {"vm_mountpoint": str(host["vm_mount"]), "domains_dir": str(host["domains"]),
                      "libvirt_location": str(host["libvirt"]), "shares_config_dir": str(host["shares"])},
            "thresholds": {"filesystem_max_pct": 95},
        }
        for key, value in overrides.items():
            section, _, name = key.partition("__")
            if name:
                data.setdefault(section, {})[name] = value
            else:
                data[section] = value
        return write_config(data)

    return _make


@pytest.fixture
def make_notifier():
    created = []

    def _make(config) -> NotificationManager:
        notifier = NotificationManager(config)
        created.append(notifier)
        return notifier

    yield _make
    for notifier in created:
        notifier.close()
