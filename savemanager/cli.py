"""
Command-line interface for the save manager
"""

import argparse
import logging
import sys
import time

from .app import Launcher
from .bridge import BridgedScreen
from .errors import SaveError
from .monitor import log_event, setup_monitoring
from .runtime_downloader import RuntimePhase
from .settings import DEFAULT_SETTINGS_PATH, load_settings, _deep_merge
from .update_checker import UpdatePhase
from .utils import format_size

TICK_INTERVAL = 0.05


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser"""
    parser = argparse.ArgumentParser(
        prog='savemanager',
        description='Kazeta save data manager - list, copy and delete game saves',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s devices
  %(prog)s saves internal
  %(prog)s copy game1 internal SD1
  %(prog)s delete game1 SD1
  %(prog)s check-update
        '''
    )

    parser.add_argument('--settings', metavar='PATH', default=DEFAULT_SETTINGS_PATH,
                        help='Settings file (default: %(default)s)')
    parser.add_argument('--data-dir', metavar='PATH',
                        help='Override the internal data directory')
    parser.add_argument('--media-root', metavar='PATH', action='append',
                        help='Removable media root (can be specified multiple times)')
    parser.add_argument('--no-sync', action='store_true',
                        help='Skip the durability sync after writes')
    parser.add_argument('--monitor-file', metavar='PATH',
                        help='Event log file')
    parser.add_argument('--monitor', action='store_true',
                        help='Echo events to stderr')
    parser.add_argument('--quiet', '-q', action='store_true',
                        help='Suppress progress output')

    sub = parser.add_subparsers(dest='command', metavar='COMMAND')
    sub.required = True

    sub.add_parser('devices', help='List storage devices and free space')

    saves = sub.add_parser('saves', help='List the saves on a device')
    saves.add_argument('device')
    saves.add_argument('--playtime', action='store_true', help='Also compute playtime')

    copy = sub.add_parser('copy', help='Copy a save to another device')
    copy.add_argument('save_id')
    copy.add_argument('from_device')
    copy.add_argument('to_device')

    delete = sub.add_parser('delete', help='Delete a save from a device')
    delete.add_argument('save_id')
    delete.add_argument('device')

    sub.add_parser('check-update', help='Check GitHub for a newer launcher release')
    sub.add_parser('runtimes', help='List downloadable runtimes')

    return parser


def _settings_from_args(args):
    overrides = {
        # no dialogs to animate from the command line
        'timing': {'start_delay': 0, 'completion_hold': 0},
    }
    storage = {}
    if args.data_dir:
        storage['data_dir'] = args.data_dir
    if args.media_root:
        storage['media_roots'] = args.media_root
    if args.no_sync:
        storage['sync_to_disk'] = False
    if storage:
        overrides['storage'] = storage
    return _deep_merge(load_settings(args.settings), overrides)


def _wait_for_screen(launcher: Launcher, screen: BridgedScreen, busy, timeout: float = 120.0) -> bool:
    """Tick until ``busy(screen)`` turns false; False on timeout."""
    deadline = time.monotonic() + timeout
    while busy(screen):
        if time.monotonic() > deadline:
            return False
        launcher.tick()
        time.sleep(TICK_INTERVAL)
    return True


def _run_job(launcher: Launcher, quiet: bool) -> int:
    """Tick until the job slot reports completion, printing progress."""
    last = -1
    while True:
        job = launcher.job_snapshot()
        if not quiet and job.progress != last:
            print(f"   Progress: {job.progress}%", end='\r')
            last = job.progress
        if not job.running:
            break
        time.sleep(TICK_INTERVAL)
    launcher.jobs.wait()
    launcher.tick()
    if not quiet:
        print()
    if launcher.dialog_error:
        print(f"Error: {launcher.dialog_error}", file=sys.stderr)
        return 1
    return 0


def run_cli(args=None):
    """Run the CLI"""
    parser = create_parser()
    args = parser.parse_args(args)

    settings = _settings_from_args(args)
    setup_monitoring(log_file=args.monitor_file or settings['monitor']['log_file'],
                     echo=args.monitor or settings['monitor']['echo'])
    log_event('cli.start', f'command={args.command}')

    quiet = args.quiet

    def log(msg):
        if not quiet:
            print(msg)

    try:
        launcher = Launcher(settings)
    except SaveError as e:
        log_event('cli.error', str(e), logging.ERROR)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        if args.command == 'devices':
            for device_id, free_mb in launcher.registry.list_devices():
                print(f"{device_id:<20} {format_size(free_mb * 1024 * 1024):>12} free")
            return 0

        if args.command == 'saves':
            entries = launcher.catalog.get_save_details(args.device)
            for entry in entries:
                line = f"{entry.id:<32} {entry.size_mb:>8.1f} MB  {entry.display_name or ''}"
                if args.playtime:
                    hours = launcher.catalog.calculate_playtime(entry.id, args.device)
                    line += f"  ({hours:.1f} h)"
                print(line)
            log(f"\n{len(entries)} save(s) on {args.device}")
            return 0

        if args.command == 'copy':
            log(f"Copying {args.save_id}: {args.from_device} -> {args.to_device}")
            launcher.copy_save(args.save_id, args.from_device, args.to_device)
            return _run_job(launcher, quiet)

        if args.command == 'delete':
            log(f"Deleting {args.save_id} from {args.device}")
            launcher.delete_save(args.save_id, args.device)
            return _run_job(launcher, quiet)

        if args.command == 'check-update':
            screen = launcher.open_screen('update')
            if not _wait_for_screen(launcher, screen, lambda s: s.phase is UpdatePhase.CHECKING):
                print("Error: update check timed out", file=sys.stderr)
                return 1
            if screen.phase is UpdatePhase.ERROR:
                print(f"Error: {screen.error}", file=sys.stderr)
                return 1
            if screen.phase is UpdatePhase.UP_TO_DATE:
                print(f"You are running the latest version ({screen.current_version}).")
            else:
                print(f"New version available: {screen.release.tag_name}")
                print(f"Current version: {screen.current_version}")
                if screen.release_notes:
                    print()
                    print(screen.release_notes)
            return 0

        if args.command == 'runtimes':
            screen = launcher.open_screen('runtimes')
            launcher.tick()
            if not _wait_for_screen(launcher, screen,
                                    lambda s: s.phase is RuntimePhase.FETCHING_LIST):
                print("Error: runtime list timed out", file=sys.stderr)
                return 1
            if screen.phase is RuntimePhase.ERROR:
                print(f"Error: {screen.error}", file=sys.stderr)
                return 1
            for runtime in screen.runtimes:
                size = f"{runtime.size_mb:.1f} MB" if runtime.size_mb is not None else '?'
                mark = '[INSTALLED]' if runtime.is_installed else ''
                print(f"{runtime.source.name:<12} {runtime.name:<28} {size:>10} {mark}")
            return 0
    except SaveError as e:
        log_event('cli.error', str(e), logging.ERROR)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        launcher.stop()

    parser.print_help()
    return 1


def main():
    """Entry point"""
    sys.exit(run_cli())


if __name__ == '__main__':
    main()
