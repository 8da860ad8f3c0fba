"""Disk discovery from libvirt domain XML."""

import os
import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List, Tuple


# Disks without a <boot order=.../> element sort after every ordered disk.
UNORDERED_BOOT_PRIORITY = 99

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiskDescriptor:
    """A file-backed VM disk and its boot priority."""

    boot_order: int
    path: str

    @property
    def basename(self) -> str:
        return os.path.basename(self.path)


def _boot_order(disk: ET.Element) -> int:
    boot = disk.find('boot')
    if boot is None:
        return UNORDERED_BOOT_PRIORITY
    try:
        return int(boot.get('order', ''))
    except ValueError:
        return UNORDERED_BOOT_PRIORITY


def discover_disks(xml_config: str, extension: str = 'img') -> List[DiskDescriptor]:
    """Return the VM's file-backed disk images, primary disk first.

    Only ``<disk type='file' device='disk'>`` entries under ``<devices>``
    whose source file ends in ``.<extension>`` are returned. CD-ROMs, block
    devices, network disks and other image formats are ignored. The result
    is sorted by boot order; ties keep their document order.

    Args:
        xml_config: Domain XML as produced by ``virsh dumpxml``
        extension: Managed image extension without the leading dot

    Returns:
        Ordered list of DiskDescriptor, empty when nothing qualifies or
        the XML cannot be parsed
    """
    try:
        root = ET.fromstring(xml_config)
    except ET.ParseError as e:
        logger.warning(f"Could not parse domain XML: {e}")
        return []

    suffix = f".{extension.lstrip('.')}"
    disks = []
    for disk in root.findall('./devices/disk'):
        if disk.get('type') != 'file' or disk.get('device') != 'disk':
            continue
        source = disk.find('source')
        path = source.get('file') if source is not None else None
        if not path or not path.endswith(suffix):
            continue
        disks.append(DiskDescriptor(boot_order=_boot_order(disk), path=path))

    # sorted() is stable, so equal boot orders keep document order
    return sorted(disks, key=lambda d: d.boot_order)


def select_backup_disks(disks: List[DiskDescriptor],
                        primary_only: bool) -> Tuple[List[DiskDescriptor], List[DiskDescriptor]]:
    """Split discovered disks into (to back up, skipped secondaries)."""
    if primary_only:
        return disks[:1], disks[1:]
    return list(disks), []
