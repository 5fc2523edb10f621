#!/usr/bin/env python3
"""
Wallet Guard - Operator Command Line Interface

Usage:
    wallet-guard status                              Show store health, emergency mode and alerts
    wallet-guard emergency-clear [--actor NAME]      Clear emergency mode early
    wallet-guard rate-limit-status <user> <op>       Show a user's current window for an operation
    wallet-guard rate-limit-reset <user> <op>        Reset a user's window for an operation
    wallet-guard audit-verify <path>                 Verify a tamper-evident security event log
    wallet-guard scan                                Run one activity-monitor pass now

The store is taken from WG_STORE_URL unless --store-url is given.
"""

import argparse
import dataclasses
import json
import sys
from typing import List, Optional

from wallet_guard.audit_log import verify_file
from wallet_guard.config import SecurityConfig
from wallet_guard.errors import GuardError
from wallet_guard.redact import configure_logging
from wallet_guard.system import WalletGuard


def _build_guard(args) -> WalletGuard:
    config = SecurityConfig.from_env()
    if args.store_url:
        config = dataclasses.replace(config, store=dataclasses.replace(config.store, url=args.store_url))
    return WalletGuard(config)


def _print_json(obj) -> None:
    print(json.dumps(obj, indent=2, sort_keys=True, default=str))


def cmd_status(args) -> int:
    guard = _build_guard(args)
    try:
        _print_json(guard.status())
    finally:
        guard.close()
    return 0


def cmd_emergency_clear(args) -> int:
    guard = _build_guard(args)
    try:
        was_active = guard.emergency.clear(actor=args.actor)
    finally:
        guard.close()
    if was_active:
        print(f"✓ Emergency mode cleared by {args.actor}")
    else:
        print("Emergency mode was not active")
    return 0


def cmd_rate_limit_status(args) -> int:
    guard = _build_guard(args)
    try:
        decision = guard.rate_limiter.status(args.user_id, args.operation)
    finally:
        guard.close()
    _print_json(decision.to_dict())
    return 0


def cmd_rate_limit_reset(args) -> int:
    guard = _build_guard(args)
    try:
        if guard.config.policies.get(args.operation) is None:
            print(f"✗ Unknown operation: {args.operation}", file=sys.stderr)
            return 2
        guard.rate_limiter.reset(args.user_id, args.operation)
    finally:
        guard.close()
    print(f"✓ Rate limit reset for user {args.user_id} operation {args.operation}")
    return 0


def cmd_audit_verify(args) -> int:
    print(f"Verifying security event log {args.path}...")
    ok, reason, count = verify_file(args.path)
    print(f"Records checked: {count}")
    if ok:
        print(f"✓ Audit log integrity verified ({reason})")
        return 0
    print(f"✗ Audit log integrity check FAILED at record {count}: {reason}")
    return 1


def cmd_scan(args) -> int:
    guard = _build_guard(args)
    try:
        alerts = guard.monitor.scan_once()
    finally:
        guard.close()
    print(f"Alerts raised: {len(alerts)}")
    for alert in alerts:
        print(f"  - [{alert.severity.value}] {alert.type} user={alert.user_id or '-'}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wallet-guard",
        description="Wallet Guard operator CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--store-url", default=None, help="Override WG_STORE_URL")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    status_parser = subparsers.add_parser("status", help="Show security status")
    status_parser.set_defaults(func=cmd_status)

    clear_parser = subparsers.add_parser("emergency-clear", help="Clear emergency mode")
    clear_parser.add_argument("--actor", default="cli", help="Operator name recorded in the event")
    clear_parser.set_defaults(func=cmd_emergency_clear)

    rls_parser = subparsers.add_parser("rate-limit-status", help="Show a rate limit window")
    rls_parser.add_argument("user_id")
    rls_parser.add_argument("operation")
    rls_parser.set_defaults(func=cmd_rate_limit_status)

    rlr_parser = subparsers.add_parser("rate-limit-reset", help="Reset a rate limit window")
    rlr_parser.add_argument("user_id")
    rlr_parser.add_argument("operation")
    rlr_parser.set_defaults(func=cmd_rate_limit_reset)

    av_parser = subparsers.add_parser("audit-verify", help="Verify a security event log")
    av_parser.add_argument("path", help="Path to the JSONL event log")
    av_parser.set_defaults(func=cmd_audit_verify)

    scan_parser = subparsers.add_parser("scan", help="Run one activity monitor pass")
    scan_parser.set_defaults(func=cmd_scan)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    configure_logging(args.verbose)
    try:
        return int(args.func(args))
    except GuardError as e:
        print(f"✗ {e}", file=sys.stderr)
        return 3


if __name__ == "__main__":
    sys.exit(main())
