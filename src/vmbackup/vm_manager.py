"""Hypervisor access: VM inventory and per-VM configuration dumps."""

import subprocess
from abc import ABC, abstractmethod
from typing import List, Optional

from .utils import NotificationManager, is_command_available, run_command


class Hypervisor(ABC):
    """Abstract base class for hypervisor implementations."""

    @property
    @abstractmethod
    def command_name(self) -> str:
        """Return command name for the hypervisor client."""
        pass

    @abstractmethod
    def list_all_vm_names(self) -> List[str]:
        """List every defined VM, running or not. May be empty."""
        pass

    @abstractmethod
    def dump_config(self, vm_name: str) -> Optional[str]:
        """Return the VM's configuration XML, or None if the VM is unknown."""
        pass

    def is_available(self) -> bool:
        """Check if the hypervisor client is installed."""
        return is_command_available(self.command_name)


class VirshHypervisor(Hypervisor):
    """libvirt via the ``virsh`` command line client."""

    def __init__(self, config, notifier: NotificationManager):
        self.config = config
        self.notifier = notifier
        self.timeout = config.hypervisor_timeout

    @property
    def command_name(self) -> str:
        return "virsh"

    def _run_command(self, command: List[str]) -> Optional[subprocess.CompletedProcess]:
        """Run a virsh command; None when it could not be started or timed out."""
        try:
            return run_command(command, timeout=self.timeout)
        except subprocess.TimeoutExpired:
            self.notifier.error(f"Command timeout: {' '.join(command)}")
        except OSError as e:
            self.notifier.error(f"Command execution failed: {' '.join(command)}: {e}")
        return None

    def list_all_vm_names(self) -> List[str]:
        """List libvirt domains in the order virsh reports them."""
        result = self._run_command(["virsh", "list", "--all", "--name"])
        if result is None:
            return []
        if result.returncode != 0:
            self.notifier.warning(f"Failed to list VMs: {result.stderr.strip()}")
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def dump_config(self, vm_name: str) -> Optional[str]:
        """Dump the inactive domain XML so stopped VMs are described too."""
        result = self._run_command(["virsh", "dumpxml", "--inactive", vm_name])
        if result is None or result.returncode != 0:
            if result is not None:
                self.notifier.debug(f"virsh dumpxml {vm_name}: {result.stderr.strip()}")
            return None
        return result.stdout
