"""Resolution of VM selection lists against the hypervisor inventory."""

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

from .errors import ConfigurationError, UnknownVMError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectionPolicy:
    """Which VMs a job applies to: all of them, none, or an explicit list."""

    ALL = 'all'
    NONE = 'none'
    EXPLICIT = 'explicit'

    kind: str
    names: Tuple[str, ...] = ()

    @classmethod
    def all(cls) -> 'SelectionPolicy':
        return cls(cls.ALL)

    @classmethod
    def none(cls) -> 'SelectionPolicy':
        return cls(cls.NONE)

    @classmethod
    def explicit(cls, names: Sequence[str]) -> 'SelectionPolicy':
        return cls(cls.EXPLICIT, tuple(names))

    @classmethod
    def parse(cls, value: Any, setting: str = 'selection') -> 'SelectionPolicy':
        """Build a policy from a config value.

        Accepts ``ALL`` or ``NONE`` (exactly, in upper case), a comma separated
        string of VM names, or a YAML list of names. Names are case-sensitive,
        so a VM called ``all`` is selected by writing ``all``.
        """
        if isinstance(value, str):
            keyword = value.strip()
            if keyword == 'ALL':
                return cls.all()
            if keyword == 'NONE':
                return cls.none()
            names = [n.strip() for n in value.split(',')]
        elif isinstance(value, (list, tuple)):
            if not all(isinstance(n, str) for n in value):
                raise ConfigurationError(f"{setting} must contain VM names only, got {value!r}")
            names = [n.strip() for n in value]
        else:
            raise ConfigurationError(f"{setting} must be ALL, NONE or a list of VM names, got {value!r}")

        names = [n for n in names if n]
        if not names:
            raise ConfigurationError(f"{setting} lists no VM names")
        return cls.explicit(names)

    def __str__(self) -> str:
        if self.kind == self.EXPLICIT:
            return ','.join(self.names)
        return self.kind.upper()


def resolve_targets(policy: SelectionPolicy, inventory: Sequence[str]) -> List[str]:
    """Turn a selection policy into a concrete list of VM names.

    An explicit list keeps the requested order and any duplicates. An empty
    inventory only warns, except that explicit names are still checked
    against it.

    Raises:
        UnknownVMError: when an explicit name is not in the inventory
    """
    if policy.kind == SelectionPolicy.NONE:
        return []

    if not inventory:
        logger.warning("Hypervisor reported no VMs")

    if policy.kind == SelectionPolicy.ALL:
        return list(inventory)

    known = set(inventory)
    unknown = [name for name in policy.names if name not in known]
    if unknown:
        raise UnknownVMError(unknown)
    return list(policy.names)
