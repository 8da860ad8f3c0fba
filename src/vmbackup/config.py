"""Configuration management for VMBackup."""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional

from .errors import ConfigurationError
from .targets import SelectionPolicy


DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override into base, recursing into nested mappings."""
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


class Config:
    """Configuration manager for VMBackup."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration.

        Args:
            config_path: Path to custom configuration file
        """
        self.config_path = config_path
        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file."""
        with open(DEFAULT_CONFIG_PATH, 'r') as f:
            config = yaml.safe_load(f)

        if self.config_path:
            if not os.path.exists(self.config_path):
                raise ConfigurationError(f"Configuration file not found: {self.config_path}")
            with open(self.config_path, 'r') as f:
                try:
                    custom_config = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigurationError(f"Invalid YAML in {self.config_path}: {e}") from e
            if not isinstance(custom_config, dict):
                raise ConfigurationError(f"Configuration file must contain a mapping: {self.config_path}")
            _deep_merge(config, custom_config)

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides."""
        # Example: VMBACKUP_BACKUP_LOCATION overrides backup.location
        env_mappings = {
            'VMBACKUP_BACKUP_LOCATION': ['backup', 'location'],
            'VMBACKUP_BACKUP_COUNT': ['backup', 'count'],
            'VMBACKUP_SNAPSHOT_COUNT': ['snapshot', 'count'],
            'VMBACKUP_RETENTION_DAYS': ['retention', 'days'],
            'VMBACKUP_LOG_LEVEL': ['logging', 'level'],
            'VMBACKUP_DRY_RUN': ['dry_run'],
        }

        for env_var, config_path in env_mappings.items():
            if env_var in os.environ:
                value = os.environ[env_var]
                if config_path[-1] in ['count', 'days']:
                    try:
                        value = int(value)
                    except ValueError as e:
                        raise ConfigurationError(f"{env_var} must be an integer, got {value!r}") from e
                elif config_path[-1] in ['dry_run']:
                    value = value.lower() in ['true', '1', 'yes', 'y']

                current = config
                for key in config_path[:-1]:
                    current = current.setdefault(key, {})
                current[config_path[-1]] = value

        return config

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation.

        Args:
            key: Configuration key in dot notation (e.g., 'backup.location')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = self._config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set(self, key: str, value: Any) -> None:
        """Set configuration value using dot notation."""
        keys = key.split('.')
        current = self._config
        for k in keys[:-1]:
            current = current.setdefault(k, {})
        current[keys[-1]] = value

    def validate(self) -> None:
        """Check numeric ranges and selection lists.

        Raises:
            ConfigurationError: naming the first offending setting
        """
        for key in ('backup.count', 'snapshot.count', 'logging.count'):
            self._require_int(key, minimum=1)
        self._require_int('retention.days', minimum=1)
        self._require_int('thresholds.filesystem_max_pct', minimum=1, maximum=100)

        if not str(self.image_extension).strip('.'):
            raise ConfigurationError("vm.image_extension must not be empty")

        for key in ('vm.snapshot_list', 'vm.backup_list'):
            SelectionPolicy.parse(self.get(key), setting=key)

    def _require_int(self, key: str, minimum: int, maximum: Optional[int] = None) -> int:
        value = self.get(key)
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigurationError(f"{key} must be an integer, got {value!r}")
        if value < minimum or (maximum is not None and value > maximum):
            bounds = f">= {minimum}" if maximum is None else f"between {minimum} and {maximum}"
            raise ConfigurationError(f"{key} must be {bounds}, got {value}")
        return value

    @property
    def dry_run(self) -> bool:
        return bool(self.get('dry_run', False))

    @property
    def snapshot_list(self) -> Any:
        return self.get('vm.snapshot_list', 'ALL')

    @property
    def backup_list(self) -> Any:
        return self.get('vm.backup_list', 'ALL')

    @property
    def backup_primary_only(self) -> bool:
        return bool(self.get('vm.backup_primary_only', True))

    @property
    def image_extension(self) -> str:
        """Managed disk image extension, without the leading dot."""
        return str(self.get('vm.image_extension', 'img')).lstrip('.')

    @property
    def compression(self) -> bool:
        return bool(self.get('backup.compression', True))

    @property
    def backup_location(self) -> str:
        return self.get('backup.location', '/mnt/user/backup-vm')

    @property
    def backup_mountpoint(self) -> str:
        return self.get('backup.mountpoint', self.backup_location)

    @property
    def retention_days(self) -> int:
        return self.get('retention.days', 30)

    @property
    def backup_retention(self) -> tuple:
        """(max_age_days, max_count) for backups and config archives."""
        return self.retention_days, self.get('backup.count', 9)

    @property
    def snapshot_retention(self) -> tuple:
        """(max_age_days, max_count) for snapshots."""
        return self.retention_days, self.get('snapshot.count', 10)

    @property
    def log_retention(self) -> tuple:
        """(max_age_days, max_count) for run logs."""
        return self.retention_days, self.get('logging.count', 100)

    @property
    def log_directory(self) -> Optional[str]:
        return self.get('logging.directory')

    @property
    def vm_mountpoint(self) -> str:
        return self.get('paths.vm_mountpoint', '/mnt/nvme_vm_cache')

    @property
    def domains_dir(self) -> str:
        return self.get('paths.domains_dir', os.path.join(self.vm_mountpoint, 'domains'))

    @property
    def libvirt_location(self) -> str:
        return self.get('paths.libvirt_location', '/etc/libvirt')

    @property
    def shares_config_dir(self) -> str:
        return self.get('paths.shares_config_dir', '/boot/config/shares')

    @property
    def filesystem_max_pct(self) -> int:
        return self.get('thresholds.filesystem_max_pct', 95)

    @property
    def hypervisor_timeout(self) -> int:
        return self.get('hypervisor.timeout', 120)
