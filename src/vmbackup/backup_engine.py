"""Backup run orchestration: config archive, VM snapshots and VM backups."""

import glob
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .discovery import DiskDescriptor, discover_disks, select_backup_disks
from .errors import MissingToolError, StorageOperationError, VMBackupError
from .retention import FilePopulation, RetentionPolicy, RotationResult, rotate
from .safety import MountRequirement, check_mount, check_usage
from .storage_manager import MountProbe, StorageManager, resolve_backup_target
from .targets import SelectionPolicy, resolve_targets
from .utils import NotificationManager, archive_timestamp, is_command_available, snapshot_timestamp
from .vm_manager import Hypervisor, VirshHypervisor


OK = 'ok'
WARNING = 'warning'

CONFIG_ARCHIVE_JOB = 'config-archive'
SNAPSHOT_JOB = 'snapshot'
BACKUP_JOB = 'backup'

CONFIG_ARCHIVE_DIR = 'libvirt'
CLONE_SUFFIX = '.vmbackup-clone'

# Glob stand-ins for the two timestamp formats in artifact names.
SNAPSHOT_STAMP_GLOB = '[0-9]' * 14
ARCHIVE_STAMP_GLOB = '????-??-??_??????'


def snapshot_file_name(image_name: str, timestamp: str) -> str:
    return f"{image_name}_snapshot_{timestamp}.fullsnap"


def snapshot_pattern(image_name: str) -> str:
    return f"{glob.escape(image_name)}_snapshot_{SNAPSHOT_STAMP_GLOB}.fullsnap"


def backup_file_name(timestamp: str, disk_name: str, compressed: bool) -> str:
    name = f"{timestamp}-{disk_name}"
    return f"{name}.zst" if compressed else name


def backup_pattern(disk_name: str, compressed: bool) -> str:
    pattern = f"{ARCHIVE_STAMP_GLOB}-{glob.escape(disk_name)}"
    return f"{pattern}.zst" if compressed else pattern


def config_archive_name(timestamp: str) -> str:
    return f"libvirt-backup-{timestamp}.tar.gz"


CONFIG_ARCHIVE_PATTERN = f"libvirt-backup-{ARCHIVE_STAMP_GLOB}.tar.gz"
LOG_PATTERN = f"backup-{ARCHIVE_STAMP_GLOB}.log"


@dataclass
class TargetOutcome:
    """Result of processing one VM or one VM disk."""

    target: str
    status: str
    message: str = ''


@dataclass
class JobResult:
    """Outcomes of one job. ``error`` is set when the job stopped early."""

    name: str
    outcomes: List[TargetOutcome] = field(default_factory=list)
    rotations: List[RotationResult] = field(default_factory=list)
    artifacts: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    @property
    def warnings(self) -> List[str]:
        messages = [f"{o.target}: {o.message}" for o in self.outcomes if o.status == WARNING]
        for rotation in self.rotations:
            messages.extend(f"{path}: could not delete ({reason})" for path, reason in rotation.failed)
        return messages

    @property
    def status(self) -> str:
        if self.failed:
            return 'failed'
        if self.warnings:
            return 'completed with warnings'
        return 'completed'


@dataclass
class RunReport:
    """Summary of a full run."""

    fatal: Optional[str] = None
    jobs: List[JobResult] = field(default_factory=list)
    log_rotation: Optional[RotationResult] = None

    @property
    def failed_jobs(self) -> List[JobResult]:
        return [job for job in self.jobs if job.failed]

    @property
    def succeeded(self) -> bool:
        return self.fatal is None and not self.failed_jobs

    @property
    def status(self) -> str:
        if not self.succeeded:
            return 'failed'
        if any(job.warnings for job in self.jobs) or (self.log_rotation and self.log_rotation.has_warnings):
            return 'completed with warnings'
        return 'completed'


class BackupEngine:
    """Runs the three protection jobs for the configured VMs.

    Stages run strictly in order: validate configuration, check required
    tools, resolve targets, check the source mount, then the config archive,
    snapshot and backup jobs. A failure before the jobs aborts the run; a
    failing job is recorded and the next job still runs.
    """

    def __init__(self, config, notification_manager: Optional[NotificationManager] = None,
                 hypervisor: Optional[Hypervisor] = None, storage: Optional[StorageManager] = None,
                 probe=None, clock: Callable[[], datetime] = datetime.now):
        """Initialize backup engine.

        Args:
            config: Configuration object
            notification_manager: Notification manager instance
            hypervisor: VM inventory and XML source, virsh by default
            storage: File primitives, StorageManager by default
            probe: Mount probe, MountProbe by default
            clock: Returns the run start time used in artifact names
        """
        self.config = config
        self.notifier = notification_manager or NotificationManager(config)
        self.hypervisor = hypervisor or VirshHypervisor(config, self.notifier)
        self.storage = storage or StorageManager(config, self.notifier)
        self.probe = probe or MountProbe()
        self.started = clock()
        self.dry_run = config.dry_run

    # Stages

    def required_tools(self) -> List[str]:
        tools = ['cp']
        tools.append('zstd' if self.config.compression else 'rsync')
        return tools

    def check_tools(self) -> None:
        missing = [tool for tool in self.required_tools() if not is_command_available(tool)]
        if not self.hypervisor.is_available():
            missing.insert(0, self.hypervisor.command_name)
        if missing:
            raise MissingToolError(missing)
        self.notifier.debug("All required tools are present")

    def resolve_all_targets(self) -> Tuple[List[str], List[str]]:
        """Resolve (snapshot targets, backup targets) from one inventory query."""
        snapshot_policy = SelectionPolicy.parse(self.config.snapshot_list, setting='vm.snapshot_list')
        backup_policy = SelectionPolicy.parse(self.config.backup_list, setting='vm.backup_list')

        if snapshot_policy.kind == backup_policy.kind == SelectionPolicy.NONE:
            return [], []

        inventory = self.hypervisor.list_all_vm_names()

        snapshot_targets = resolve_targets(snapshot_policy, inventory)
        backup_targets = resolve_targets(backup_policy, inventory)
        self.notifier.info(f"Snapshot targets: {', '.join(snapshot_targets) or 'none'}")
        self.notifier.info(f"Backup targets: {', '.join(backup_targets) or 'none'}")
        return snapshot_targets, backup_targets

    def check_source_mount(self) -> str:
        fs_type = check_mount(MountRequirement(self.config.vm_mountpoint), self.probe)
        self.notifier.info(f"VM mount {self.config.vm_mountpoint} is {fs_type}")
        return fs_type

    def prepare_backup_destination(self) -> Tuple[str, str]:
        """Resolve, gate and create the backup destination.

        Returns:
            (mount point, destination directory)
        """
        mount_point, destination = resolve_backup_target(
            self.config.backup_location,
            self.config.backup_mountpoint,
            self.config.shares_config_dir,
        )
        fs_type = check_mount(MountRequirement(mount_point), self.probe)
        used = check_usage(mount_point, self.config.filesystem_max_pct, self.probe)
        self.notifier.info(f"Backup destination {destination} on {mount_point} ({fs_type}, {used}% used)")
        self.storage.make_directory(destination)
        return mount_point, destination

    def run(self) -> RunReport:
        """Run every stage and job, returning the report; never raises VMBackupError."""
        report = RunReport()
        if self.dry_run:
            self.notifier.info("Dry run: no files will be written or deleted")

        try:
            self.config.validate()
            self.check_tools()
            snapshot_targets, backup_targets = self.resolve_all_targets()
            self.check_source_mount()
        except VMBackupError as e:
            report.fatal = str(e)
            self.notifier.failure(f"Run aborted: {e}")
        else:
            report.jobs.append(self._run_job(CONFIG_ARCHIVE_JOB, self.archive_libvirt_config))
            report.jobs.append(self._run_job(SNAPSHOT_JOB, self.snapshot_vms, snapshot_targets))
            report.jobs.append(self._run_job(BACKUP_JOB, self.backup_vms, backup_targets))

        report.log_rotation = self.rotate_logs()
        self._log_summary(report)
        return report

    def _run_job(self, name: str, job_func, *args) -> JobResult:
        job = JobResult(name=name)
        self.notifier.info(f"Starting {name} job")
        try:
            job_func(job, *args)
        except VMBackupError as e:
            job.error = str(e)
            self.notifier.failure(f"{name} job failed: {e}")
        return job

    # Jobs

    def archive_libvirt_config(self, job: JobResult) -> None:
        """Archive the libvirt configuration tree and rotate old archives."""
        _, destination = self.prepare_backup_destination()
        archive_dir = Path(destination) / CONFIG_ARCHIVE_DIR
        self.storage.make_directory(archive_dir)

        archive = archive_dir / config_archive_name(archive_timestamp(self.started))
        self.storage.archive_directory(self.config.libvirt_location, archive)
        job.artifacts.append(str(archive))
        job.outcomes.append(TargetOutcome(self.config.libvirt_location, OK))

        self._rotate(job, FilePopulation(archive_dir, CONFIG_ARCHIVE_PATTERN),
                     RetentionPolicy(*self.config.backup_retention))

    def snapshot_vms(self, job: JobResult, targets: List[str]) -> None:
        """Reflink-clone every managed image of each target VM next to the original."""
        if not targets:
            self.notifier.info("No VMs selected for snapshots")
            return

        policy = RetentionPolicy(*self.config.snapshot_retention)
        timestamp = snapshot_timestamp(self.started)
        extension = self.config.image_extension

        for vm_name in targets:
            vm_dir = Path(self.config.domains_dir) / vm_name
            if not vm_dir.is_dir():
                self._warn(job, vm_name, f"VM directory {vm_dir} not found, skipping")
                continue

            check_usage(self.config.vm_mountpoint, self.config.filesystem_max_pct, self.probe)

            images = sorted(p for p in vm_dir.glob(f"*.{glob.escape(extension)}") if p.is_file())
            if not images:
                self._warn(job, vm_name, f"No *.{extension} images in {vm_dir}, skipping")
                continue

            for image in images:
                target = f"{vm_name}/{image.name}"
                snapshot = image.with_name(snapshot_file_name(image.name, timestamp))
                try:
                    self.storage.clone_file(image, snapshot)
                except StorageOperationError as e:
                    self._warn(job, target, str(e))
                    continue
                job.artifacts.append(str(snapshot))
                job.outcomes.append(TargetOutcome(target, OK))
                self.notifier.success(f"Snapshot created: {snapshot}")
                check_usage(self.config.vm_mountpoint, self.config.filesystem_max_pct, self.probe)
                self._rotate(job, FilePopulation(vm_dir, snapshot_pattern(image.name)), policy)

    def backup_vms(self, job: JobResult, targets: List[str]) -> None:
        """Back up each target VM's disks, boot disk first, to the backup destination."""
        if not targets:
            self.notifier.info("No VMs selected for backup")
            return

        mount_point, destination = self.prepare_backup_destination()
        policy = RetentionPolicy(*self.config.backup_retention)
        timestamp = archive_timestamp(self.started)

        for vm_name in targets:
            xml_config = self.hypervisor.dump_config(vm_name)
            if xml_config is None:
                self._warn(job, vm_name, "VM configuration not available, skipping")
                continue

            disks = discover_disks(xml_config, self.config.image_extension)
            if not disks:
                self._warn(job, vm_name, f"No *.{self.config.image_extension} disks found, skipping")
                continue

            selected, skipped = select_backup_disks(disks, self.config.backup_primary_only)
            for disk in skipped:
                self.notifier.info(f"{vm_name}: skipping secondary disk {disk.path} (primary only)")

            check_usage(mount_point, self.config.filesystem_max_pct, self.probe)
            vm_destination = Path(destination) / vm_name
            self.storage.make_directory(vm_destination)

            written = set()
            for disk in selected:
                # Backups of one VM share a directory and are named by basename
                if disk.basename in written:
                    self._warn(job, f"{vm_name}/{disk.basename}",
                               f"{disk.path} has the same file name as another disk, skipping")
                    continue
                written.add(disk.basename)
                self._backup_disk(job, vm_name, disk, vm_destination, timestamp, policy, mount_point)

    def _backup_disk(self, job: JobResult, vm_name: str, disk: DiskDescriptor, vm_destination: Path,
                     timestamp: str, policy: RetentionPolicy, mount_point: str) -> None:
        """Clone, write and rotate one disk.

        Raises:
            UsageExceededError: when the write leaves the backup mount over the limit
        """
        target = f"{vm_name}/{disk.basename}"
        compressed = self.config.compression
        source = Path(disk.path)
        clone = source.with_name(source.name + CLONE_SUFFIX)
        backup_file = vm_destination / backup_file_name(timestamp, disk.basename, compressed)

        try:
            try:
                self.storage.clone_file(source, clone)
                if compressed:
                    self.storage.compress(clone, backup_file)
                else:
                    self.storage.copy(clone, backup_file)
            finally:
                self.storage.remove(clone)
        except StorageOperationError as e:
            self._warn(job, target, str(e))
            return

        job.artifacts.append(str(backup_file))
        job.outcomes.append(TargetOutcome(target, OK))
        self.notifier.success(f"Backup created: {backup_file}")
        check_usage(mount_point, self.config.filesystem_max_pct, self.probe)
        self._rotate(job, FilePopulation(vm_destination, backup_pattern(disk.basename, compressed)), policy)

    def rotate_logs(self) -> Optional[RotationResult]:
        log_dir = self.config.log_directory
        if not log_dir:
            return None
        try:
            policy = RetentionPolicy(*self.config.log_retention)
            policy.validate()
        except (TypeError, VMBackupError) as e:
            self.notifier.warning(f"Log rotation skipped: {e}")
            return None
        return rotate(FilePopulation(Path(log_dir), LOG_PATTERN), policy, self.notifier, dry_run=self.dry_run)

    # Helpers

    def _rotate(self, job: JobResult, population: FilePopulation, policy: RetentionPolicy) -> None:
        job.rotations.append(rotate(population, policy, self.notifier, dry_run=self.dry_run))

    def _warn(self, job: JobResult, target: str, message: str) -> None:
        self.notifier.warning(f"{target}: {message}")
        job.outcomes.append(TargetOutcome(target, WARNING, message))

    def _log_summary(self, report: RunReport) -> None:
        for job in report.jobs:
            line = f"Job {job.name}: {job.status}"
            if job.error:
                line = f"{line} ({job.error})"
            self.notifier.info(line)
            for warning in job.warnings:
                self.notifier.warning(f"  {warning}")

        if report.status == 'completed':
            self.notifier.success("Run completed")
        elif report.status == 'completed with warnings':
            self.notifier.warning("Run completed with warnings")
        else:
            failed = [job.name for job in report.failed_jobs]
            reason = report.fatal or f"failed job(s): {', '.join(failed)}"
            self.notifier.failure(f"Run failed: {reason}")
