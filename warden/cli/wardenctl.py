#!/usr/bin/env python3
"""
wardenctl - Generation Warden Control CLI

Commands:
    update          Verify, stage and activate a bundle
    recover         Restore a retained generation
    verify          Check the active generation in place
    status          Show active generation, rollback target and health
    ledger          Show or verify the event ledger
    quarantine      Clear monitor quarantine after an incident
    run             Run the integrity monitor in the foreground
    keygen          Create a ledger signing key

Usage:
    wardenctl update /srv/incoming/1.1.0
    wardenctl recover --to 1.0.0
    wardenctl verify --deep
    wardenctl status --json
    wardenctl ledger show -n 50 --kind RolledBack
    wardenctl ledger verify
    wardenctl quarantine clear --operator alice
    wardenctl run

Exit codes:
    0 success, 1 error, 2 verification failed, 3 activation conflict,
    4 rollback unavailable, 5 ledger corrupt, 6 activation failed,
    7 authorization denied, 8 stage conflict

Environment:
    WARDEN_CONFIG     Path to configuration file
    WARDEN_STATE_DIR  State directory
    WARDEN_TOKEN      Operator token (instead of --token)
"""

import argparse
import json
import os
import signal
import sys

from warden import __version__
from warden.config.settings import WardenConfig, load_config
from warden.constants import ExitCode, Limits
from warden.exceptions import WardenError
from warden.ledger.event_ledger import EventKind, generate_signing_key, verify_key_hex
from warden.logging_config import configure_from_environment, get_logger
from warden.service import Warden

logger = get_logger('warden.cli')


def _token(args):
    return getattr(args, 'token', None) or os.environ.get('WARDEN_TOKEN')


def _warden(args, reconcile: bool = True) -> Warden:
    return Warden.from_config(args.warden_config, reconcile=reconcile)


def _print_json(data):
    print(json.dumps(data, indent=2, sort_keys=True, default=str))


def cmd_update(args):
    """Verify, stage and activate a bundle."""
    warden = _warden(args)
    report = warden.update(args.bundle, token=_token(args))
    activation = report.activation
    print(f"✓ Verified {report.verification.checked} artifacts "
          f"(manifest {report.verification.manifest_hash[:16]}...)")
    print(f"✓ Staged {report.generation.version} (sequence {report.generation.sequence})")
    print(f"✓ Activated {activation.active}")
    if activation.rollback_target:
        print(f"  Rollback target: {activation.rollback_target}")
    if activation.retired:
        print(f"  Retired: {activation.retired}")
    return ExitCode.SUCCESS


def cmd_recover(args):
    """Restore a retained generation."""
    warden = _warden(args)
    outcome = warden.recover(args.to, token=_token(args))
    if outcome.action == 'noop':
        print(f"{outcome.active} is already active")
    else:
        print(f"✓ Recovered {outcome.active}")
        if outcome.rollback_target:
            print(f"  Rollback target: {outcome.rollback_target}")
    return ExitCode.SUCCESS


def cmd_verify(args):
    """Check the active generation without changing anything."""
    warden = _warden(args, reconcile=False)
    result = warden.verify(deep=args.deep)
    if args.json:
        _print_json(result.to_dict())
    elif result.valid:
        if result.version:
            print(f"✓ {result.version}: {result.checked} artifacts verified")
        else:
            print(result.message or "Nothing to verify")
    else:
        print(f"✗ {result.version}: {result.reason.value} {result.path or ''}".rstrip())
        print(f"  {result.message}")
    return ExitCode.SUCCESS if result.valid else ExitCode.VERIFICATION_FAILED


def cmd_status(args):
    """Show active generation, rollback target, quarantine and ledger health."""
    warden = _warden(args, reconcile=False)
    status = warden.status()

    if args.json:
        _print_json(status)
    else:
        quarantine = status['quarantine']
        ledger = status['ledger']
        print("Generation Warden Status:")
        print(f"  Active:              {status['active'] or '-'}")
        print(f"  Rollback target:     {status['rollback_target'] or '-'}")
        remaining = status['retention_remaining']
        print(f"  Retention remaining: {remaining if remaining is not None else '-'} clean cycles")
        if quarantine['active']:
            print(f"  Monitor:             QUARANTINED since {quarantine['entered_at']} "
                  f"({quarantine['reason']} {quarantine['path'] or ''})".rstrip())
        else:
            print("  Monitor:             armed")
        if ledger['valid']:
            signed = ', signed' if ledger['signed'] else ''
            print(f"  Ledger:              OK ({ledger['entries']} entries{signed})")
        else:
            print(f"  Ledger:              CORRUPT at entry {ledger['corrupt_index']}")
        if status['generations']:
            print("  Generations:")
            for generation in status['generations']:
                print(f"    {generation['version']:<20} {generation['status']:<15} "
                      f"#{generation['sequence']}")

    if not status['ledger']['valid']:
        return ExitCode.LEDGER_CORRUPT
    return ExitCode.SUCCESS


def cmd_ledger(args):
    """Show or verify the event ledger."""
    warden = _warden(args, reconcile=False)

    if args.ledger_cmd == 'verify':
        result = warden.verify_ledger()
        if result.valid:
            print(f"✓ Ledger chain intact ({result.checked} entries)")
            return ExitCode.SUCCESS
        print(f"✗ {result.message}")
        return ExitCode.LEDGER_CORRUPT

    kind = EventKind(args.kind) if args.kind else None
    entries = warden.ledger_entries(count=args.count, kind=kind)
    if args.json:
        _print_json([entry.to_dict() for entry in entries])
        return ExitCode.SUCCESS

    if not entries:
        print("No ledger entries")
    for entry in entries:
        payload = json.dumps(entry.payload, sort_keys=True, separators=(',', ':'))
        print(f"#{entry.sequence:<5} {entry.timestamp}  {entry.kind.value:<20} {payload}")
    return ExitCode.SUCCESS


def cmd_quarantine(args):
    """Clear monitor quarantine."""
    warden = _warden(args)
    before = warden.quarantine.load()
    state = warden.clear_quarantine(args.operator, token=_token(args))
    if before.active:
        print(f"✓ Quarantine cleared by {state.cleared_by}; automatic rollback re-armed")
    else:
        print("Monitor was not quarantined")
    return ExitCode.SUCCESS


def cmd_run(args):
    """Run the integrity monitor until SIGINT/SIGTERM."""
    warden = _warden(args)

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, stopping monitor after current cycle")
        warden.stop_monitor()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info(f"Watching {warden.state_dir} (interval {warden.monitor.interval}s)")
    warden.run_monitor()
    return ExitCode.SUCCESS


def cmd_keygen(args):
    """Create a ledger signing key and print its public half."""
    try:
        signing_key = generate_signing_key(args.path)
    except FileExistsError:
        print(f"Refusing to overwrite existing key: {args.path}", file=sys.stderr)
        return ExitCode.ERROR
    print(f"Ledger signing key written to {args.path}")
    print(f"Verify key: {verify_key_hex(signing_key)}")
    return ExitCode.SUCCESS


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='wardenctl',
        description='Generation Warden Control CLI',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--config', '-c', help='Configuration file (YAML or JSON)')
    parser.add_argument('--state-dir', help='State directory (overrides config)')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose logging')
    parser.add_argument('--json-logs', action='store_true', help='Log as JSON lines')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # update
    update_parser = subparsers.add_parser('update', help='Verify, stage and activate a bundle')
    update_parser.add_argument('bundle', help='Bundle directory')
    update_parser.add_argument('--token', help='Update-scope operator token')
    update_parser.set_defaults(func=cmd_update)

    # recover
    recover_parser = subparsers.add_parser('recover', help='Restore a retained generation')
    recover_parser.add_argument('--to', required=True, metavar='VERSION', help='Generation to restore')
    recover_parser.add_argument('--token', help='Update-scope operator token')
    recover_parser.set_defaults(func=cmd_recover)

    # verify
    verify_parser = subparsers.add_parser('verify', help='Check the active generation')
    verify_parser.add_argument('--deep', action='store_true', help='Also report unlisted files')
    verify_parser.add_argument('--json', action='store_true', help='JSON output')
    verify_parser.set_defaults(func=cmd_verify)

    # status
    status_parser = subparsers.add_parser('status', help='Show warden status')
    status_parser.add_argument('--json', action='store_true', help='JSON output')
    status_parser.set_defaults(func=cmd_status)

    # ledger
    ledger_parser = subparsers.add_parser('ledger', help='Event ledger')
    ledger_sub = ledger_parser.add_subparsers(dest='ledger_cmd')
    ledger_sub.required = True
    show_parser = ledger_sub.add_parser('show', help='Show recent entries')
    show_parser.add_argument('-n', '--count', type=int, default=Limits.LEDGER_SHOW_DEFAULT,
                             help='Number of entries')
    show_parser.add_argument('--kind', choices=[kind.value for kind in EventKind],
                             help='Only entries of this kind')
    show_parser.add_argument('--json', action='store_true', help='JSON output')
    ledger_sub.add_parser('verify', help='Verify the hash chain')
    ledger_parser.set_defaults(func=cmd_ledger)

    # quarantine
    quarantine_parser = subparsers.add_parser('quarantine', help='Monitor quarantine')
    quarantine_sub = quarantine_parser.add_subparsers(dest='quarantine_cmd')
    quarantine_sub.required = True
    clear_parser = quarantine_sub.add_parser('clear', help='Acknowledge and clear quarantine')
    clear_parser.add_argument('--operator', required=True, help='Who is acknowledging')
    clear_parser.add_argument('--token', help='Quarantine-scope operator token')
    quarantine_parser.set_defaults(func=cmd_quarantine)

    # run
    run_parser = subparsers.add_parser('run', help='Run the integrity monitor')
    run_parser.set_defaults(func=cmd_run)

    # keygen
    keygen_parser = subparsers.add_parser('keygen', help='Create a ledger signing key')
    keygen_parser.add_argument('path', help='Where to write the private key')
    keygen_parser.set_defaults(func=cmd_keygen, needs_config=False)

    return parser


def _load_config(args) -> WardenConfig:
    config = load_config(args.config)
    if args.state_dir:
        config.state_dir = args.state_dir
    return config


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return ExitCode.SUCCESS

    try:
        if getattr(args, 'needs_config', True):
            args.warden_config = _load_config(args)
            log_settings = args.warden_config.logging
            configure_from_environment(
                verbose=args.verbose or log_settings.verbose,
                json_format=args.json_logs or log_settings.json,
                log_file=log_settings.log_file,
            )
        else:
            configure_from_environment(verbose=args.verbose, json_format=args.json_logs)

        result = args.func(args)
    except WardenError as e:
        print(f"✗ {e.reason.value}: {e.message}", file=sys.stderr)
        return e.exit_code
    except OSError as e:
        logger.debug("Command failed on a filesystem error", exc_info=True)
        print(f"✗ Filesystem error: {e}", file=sys.stderr)
        return ExitCode.ERROR
    except KeyboardInterrupt:
        return ExitCode.ERROR

    return result if result else ExitCode.SUCCESS


if __name__ == "__main__":
    sys.exit(main())
