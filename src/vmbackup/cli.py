"""Command-line interface for VMBackup."""

import sys
import click
from pathlib import Path
from typing import Optional

from .backup_engine import BackupEngine
from .config import Config
from .discovery import discover_disks, select_backup_disks
from .errors import VMBackupError
from .retention import FilePopulation, RetentionPolicy, rotate
from .safety import MountRequirement, check_mount, check_usage
from .storage_manager import MountProbe, resolve_backup_target
from .targets import SelectionPolicy, resolve_targets
from .utils import NotificationManager
from .vm_manager import VirshHypervisor


def make_notifier(config: Config, log_to_file: bool = False) -> NotificationManager:
    """Notification manager; only a backup run writes a log file."""
    if not log_to_file:
        config.set('logging.directory', None)
    return NotificationManager(config)


@click.group()
@click.option('--config', '-c', 'config_file', type=click.Path(exists=True, dir_okay=False),
              help='Path to configuration file')
@click.option('--verbose', '-v', is_flag=True,
              help='Enable verbose output')
@click.pass_context
def cli(ctx, config_file: Optional[str], verbose: bool):
    """VMBackup - libvirt VM snapshot and backup automation.

    Snapshots VM disk images on a btrfs or reflink xfs pool, backs them up
    to an external location and rotates both by age and count.
    """
    ctx.ensure_object(dict)
    try:
        config = Config(config_file)
    except VMBackupError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if verbose:
        config.set('logging.level', 'DEBUG')
    ctx.obj['config'] = config


@cli.command()
@click.option('--dry-run', is_flag=True, help='Log actions without writing or deleting anything')
@click.pass_context
def run(ctx, dry_run: bool):
    """Archive libvirt config, snapshot and back up the configured VMs."""
    config = ctx.obj['config']
    if dry_run:
        config.set('dry_run', True)

    try:
        notifier = make_notifier(config, log_to_file=not config.dry_run)
    except OSError as e:
        click.echo(f"Error: cannot open log file: {e}", err=True)
        sys.exit(1)

    try:
        report = BackupEngine(config, notifier).run()
    finally:
        notifier.close()

    click.echo(f"\nRun {report.status}")
    for job in report.jobs:
        click.echo(f"  {job.name}: {job.status}")
    if report.fatal:
        click.echo(f"  aborted: {report.fatal}")
    if not report.succeeded:
        sys.exit(1)


@cli.command()
@click.pass_context
def targets(ctx):
    """Show the VMs selected for snapshots and backups."""
    config = ctx.obj['config']
    notifier = make_notifier(config)
    hypervisor = VirshHypervisor(config, notifier)

    try:
        inventory = hypervisor.list_all_vm_names()
        for label, key in (('Snapshot', 'vm.snapshot_list'), ('Backup', 'vm.backup_list')):
            policy = SelectionPolicy.parse(config.get(key), setting=key)
            names = resolve_targets(policy, inventory)
            click.echo(f"{label} targets ({policy}): {', '.join(names) or 'none'}")
    except VMBackupError as e:
        notifier.error(str(e))
        sys.exit(1)


@cli.command()
@click.argument('vm_name')
@click.pass_context
def disks(ctx, vm_name: str):
    """Show the disk images of VM_NAME in backup order."""
    config = ctx.obj['config']
    notifier = make_notifier(config)

    xml_config = VirshHypervisor(config, notifier).dump_config(vm_name)
    if xml_config is None:
        notifier.error(f"VM '{vm_name}' not found")
        sys.exit(1)

    found = discover_disks(xml_config, config.image_extension)
    if not found:
        click.echo(f"No *.{config.image_extension} disks found for {vm_name}")
        return

    selected, _ = select_backup_disks(found, config.backup_primary_only)
    for disk in found:
        marker = '*' if disk in selected else ' '
        click.echo(f"{marker} {disk.boot_order:>3}  {disk.path}")


@cli.command()
@click.pass_context
def check(ctx):
    """Check the VM mount and backup destination before a run."""
    config = ctx.obj['config']
    notifier = make_notifier(config)
    probe = MountProbe()
    failed = False

    try:
        backup_mount, _ = resolve_backup_target(
            config.backup_location, config.backup_mountpoint, config.shares_config_dir
        )
        mounts = [('VM mount', config.vm_mountpoint), ('Backup mount', backup_mount)]
    except VMBackupError as e:
        notifier.error(str(e))
        mounts = [('VM mount', config.vm_mountpoint)]
        failed = True

    for label, path in mounts:
        try:
            fs_type = check_mount(MountRequirement(path), probe)
            used = check_usage(path, config.filesystem_max_pct, probe)
            click.echo(f"{label} {path}: OK ({fs_type}, {used}% used)")
        except VMBackupError as e:
            click.echo(f"{label} {path}: FAILED - {e}")
            failed = True

    if failed:
        sys.exit(1)


@cli.command('rotate')
@click.argument('directory', type=click.Path(exists=True, file_okay=False))
@click.argument('pattern')
@click.option('--days', type=click.IntRange(min=1), required=True, help='Maximum age in days')
@click.option('--count', type=click.IntRange(min=1), required=True, help='Maximum number of files kept')
@click.option('--dry-run', is_flag=True, help='Show what would be deleted')
@click.pass_context
def rotate_command(ctx, directory: str, pattern: str, days: int, count: int, dry_run: bool):
    """Rotate files in DIRECTORY matching PATTERN by age and count."""
    notifier = make_notifier(ctx.obj['config'])
    result = rotate(FilePopulation(Path(directory), pattern), RetentionPolicy(days, count),
                    notifier, dry_run=dry_run)

    verb = 'Would delete' if dry_run else 'Deleted'
    click.echo(f"{verb} {len(result.deleted)} file(s)")
    for path in result.deleted:
        click.echo(f"  - {path}")
    if result.failed:
        click.echo(f"Failed to delete {len(result.failed)} file(s)")


def main():
    """Main entry point for CLI."""
    cli()


if __name__ == '__main__':
    main()
