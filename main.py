#!/usr/bin/env python3
"""
Kaspi -> amoCRM order sync
"""
import argparse
import logging
import os
import shlex
import sys

from colorama import init as colorama_init, Fore, Style

import models
from config import Settings, load_settings
from errors import ConfigurationError
from logging_config import setup_logging
from scheduler import SchedulerLock
from services import build_services

colorama_init()

logger = logging.getLogger(__name__)


def print_banner():
    """Print application banner"""
    print(f"{Fore.CYAN}{'=' * 60}\n    Kaspi -> amoCRM Order Sync\n{'=' * 60}{Style.RESET_ALL}\n")


def cmd_init(args, config: Settings):
    """Initialize database"""
    print(f"{Fore.YELLOW}Initializing database...{Style.RESET_ALL}")
    models.configure(config.database_url)
    models.init_db()
    print(f"{Fore.GREEN}[OK] Database initialized successfully{Style.RESET_ALL}")


def cmd_test(args, config: Settings):
    """Test connections to Kaspi and amoCRM"""
    services = build_services(config)
    print(f"{Fore.YELLOW}Testing connections...{Style.RESET_ALL}\n")

    kaspi_ok = services.kaspi.test_connection()
    amo_ok = services.amo.test_connection()
    for name, ok in (('Kaspi', kaspi_ok), ('amoCRM', amo_ok)):
        color, label = (Fore.GREEN, 'OK') if ok else (Fore.RED, 'FAIL')
        print(f"  {color}[{label}] {name}{Style.RESET_ALL}")

    if kaspi_ok and amo_ok:
        print(f"\n{Fore.GREEN}[OK] All connections successful{Style.RESET_ALL}")
        return 0
    print(f"\n{Fore.RED}[FAIL] Connection test failed{Style.RESET_ALL}")
    return 1


def cmd_fetch_new(args, config: Settings):
    """Create leads for new Kaspi orders"""
    services = build_services(config)
    print(f"{Fore.YELLOW}Fetching new orders...{Style.RESET_ALL}\n")
    stats = services.pipeline.run()
    print_sync_stats(stats)
    return 0


def cmd_reconcile(args, config: Settings):
    """Push status/price/item changes to existing leads"""
    services = build_services(config)
    print(f"{Fore.YELLOW}Reconciling orders...{Style.RESET_ALL}\n")
    stats = services.reconciler.run()
    print_sync_stats(stats)
    return 0


def cmd_scheduler(args, config: Settings):
    """Run due jobs once, or loop forever"""
    lock = SchedulerLock(config.lock_path)
    if not lock.acquire():
        print(f"{Fore.YELLOW}Scheduler already running (lock held by another process).{Style.RESET_ALL}")
        return 0

    mode = 'loop' if args.loop else 'once'
    try:
        services = build_services(config)
        scheduler = services.build_scheduler()
        logger.info("Scheduler started (%s)", mode)
        if args.loop:
            scheduler.run_forever(config.poll_interval)
        else:
            completed = scheduler.run_once()
            print(f"Completed jobs: {', '.join(completed) or 'none'}")
        logger.info("Scheduler finished (%s)", mode)
    finally:
        lock.release()
    return 0


def cmd_status(args, config: Settings):
    """Show sync status"""
    services = build_services(config)
    stats = services.reservations.stats()
    store = services.settings_store

    print(f"{Fore.CYAN}Sync Status{Style.RESET_ALL}\n")
    print(f"Total Orders Tracked: {stats['total']}")
    print(f"  {Fore.GREEN}Synced: {stats['synced']}{Style.RESET_ALL}")
    print(f"  {Fore.YELLOW}In flight: {stats['in_flight']}{Style.RESET_ALL}")
    print(f"  {Fore.RED}Pending retry: {stats['pending']}{Style.RESET_ALL}")

    print(f"\n{Fore.CYAN}Watermarks:{Style.RESET_ALL}")
    for key in ('last_creation_ms', 'last_check_ms',
                'scheduler_last_run_fetch_new', 'scheduler_last_run_reconcile'):
        print(f"  {key}: {store.get(key, '-')}")
    return 0


def cmd_mappings(args, config: Settings):
    """Show status mappings"""
    services = build_services(config)
    mappings = services.status_map.list_mappings(only_active=args.active)
    if not mappings:
        print(f"{Fore.YELLOW}No status mappings{Style.RESET_ALL}")
        return 0

    for m in mappings:
        color = Fore.GREEN if m['is_active'] else Fore.RED
        print(f"  [{m['id']}] {m['kaspi_status']} -> pipeline {m['amo_pipeline_id']} / "
              f"status {m['amo_status_id']} (sort {m['sort_order']}) "
              f"{color}{'active' if m['is_active'] else 'inactive'}{Style.RESET_ALL}")
    return 0


def cmd_pipelines(args, config: Settings):
    """List amoCRM pipelines and their statuses"""
    services = build_services(config)
    for pipeline in services.amo.list_pipelines():
        print(f"{Fore.CYAN}{pipeline['id']}: {pipeline['name']}{Style.RESET_ALL}")
        for status in pipeline['statuses']:
            print(f"    {status['id']}: {status['name']}")
    return 0


def cmd_serve(args, config: Settings):
    """Start the admin server"""
    from admin_server import start_admin_server

    start_admin_server(build_services(config))
    return 0


def cmd_cron_paths(args, config: Settings):
    """Print recommended cron/supervisor command lines"""
    print(cron_commands(sys.executable, os.path.abspath(__file__),
                        os.path.abspath(config.log_file or 'logs/scheduler.log')))
    return 0


def cron_commands(python: str, main_path: str, log_path: str) -> str:
    """Command lines for a supervised scheduler loop or separate cron entries"""
    py, script, log = shlex.quote(python), shlex.quote(main_path), shlex.quote(log_path)
    return "\n".join([
        "Recommended commands:",
        "",
        "[Supervisor/systemd] One scheduler process:",
        f"  {py} {script} scheduler --loop >> {log} 2>&1",
        "",
        "[cron] Separate jobs:",
        f"  * * * * * {py} {script} fetch-new >> {log} 2>&1",
        f"  */10 * * * * {py} {script} reconcile >> {log} 2>&1",
    ])


def print_sync_stats(stats):
    """Print sync statistics"""
    print(f"\n{Fore.CYAN}Statistics:{Style.RESET_ALL}")
    colors = {'success': Fore.GREEN, 'updated': Fore.GREEN, 'skipped': Fore.YELLOW,
              'failed': Fore.RED, 'invalid': Fore.RED}
    for key, value in stats.items():
        color = colors.get(key, '')
        print(f"  {color}{key.capitalize()}: {value}{Style.RESET_ALL}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Kaspi -> amoCRM order synchronization',
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--config', default='config.yaml', help='Path to config.yaml')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    subparsers.add_parser('init', help='Initialize database').set_defaults(func=cmd_init)
    subparsers.add_parser('test', help='Test connections').set_defaults(func=cmd_test)
    subparsers.add_parser('fetch-new', help='Create leads for new orders').set_defaults(func=cmd_fetch_new)
    subparsers.add_parser('reconcile', help='Reconcile recent orders').set_defaults(func=cmd_reconcile)

    parser_scheduler = subparsers.add_parser('scheduler', help='Run the job scheduler')
    parser_scheduler.add_argument('--loop', '--daemon', action='store_true',
                                  help='Poll forever instead of a single pass')
    parser_scheduler.set_defaults(func=cmd_scheduler)

    subparsers.add_parser('status', help='Show sync status').set_defaults(func=cmd_status)

    parser_mappings = subparsers.add_parser('mappings', help='Show status mappings')
    parser_mappings.add_argument('--active', action='store_true', help='Only active mappings')
    parser_mappings.set_defaults(func=cmd_mappings)

    subparsers.add_parser('pipelines', help='List amoCRM pipelines').set_defaults(func=cmd_pipelines)
    subparsers.add_parser('serve', help='Start admin server').set_defaults(func=cmd_serve)
    subparsers.add_parser('cron-paths', help='Show cron commands').set_defaults(func=cmd_cron_paths)
    return parser


def main(argv=None):
    """Main CLI entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        print_banner()
        parser.print_help()
        return 1

    try:
        config = load_settings(config_path=args.config)
    except ConfigurationError as e:
        print(f"{Fore.RED}Configuration error: {e}{Style.RESET_ALL}", file=sys.stderr)
        return 2

    setup_logging(config.log_level, config.log_format, config.log_file)

    try:
        return args.func(args, config) or 0
    except KeyboardInterrupt:
        print(f"\n{Fore.YELLOW}Interrupted by user{Style.RESET_ALL}")
        return 130
    except Exception as e:
        logger.exception("Command %s failed", args.command)
        print(f"{Fore.RED}Error: {e}{Style.RESET_ALL}", file=sys.stderr)
        return 1


if __name__ == '__main__':
    sys.exit(main())
