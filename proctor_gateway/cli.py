#!/usr/bin/env python3
"""
Proctor Gateway CLI

Usage:
    proctor-gateway serve [--host HOST] [--port PORT]
    proctor-gateway issue-portal-link STUDENT_ID [--ttl SECONDS]
    proctor-gateway issue-cover-link SESSION_ID [--ttl SECONDS]
    proctor-gateway revoke HANDLE
    proctor-gateway purge-expired

Global options:
    --db PATH       sqlite database (default: PG_DB_PATH or proctor_gateway.db)
    -v, --verbose   debug logging

Issued tokens are printed exactly once; only their digests are stored.
"""

import argparse
import json
import logging
import sys
from dataclasses import replace
from typing import List, Optional

from .capabilities import CapabilityStore
from .config import PORTAL_TTL_BOUNDS, SUBSTITUTE_TTL_BOUNDS, GatewayConfig
from .metrics import record_capability_issued
from .server import COVER_LINK_PATH, PORTAL_LINK_PATH
from .store import RecordStore
from .tokens import CapabilityKind

logger = logging.getLogger("proctor_gateway")


def setup_logging(verbose: bool = False, default_level: str = "INFO"):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else getattr(logging, default_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    logger.setLevel(level)


def _positive_int(value: str) -> int:
    try:
        n = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if n <= 0:
        raise argparse.ArgumentTypeError(f"must be positive: {n}")
    return n


def _config(args) -> GatewayConfig:
    config = GatewayConfig.from_env()
    if args.db:
        config = replace(config, db_path=args.db)
    return config


def _capabilities(config: GatewayConfig) -> CapabilityStore:
    return CapabilityStore(RecordStore(config.db_path))


def _issue(config: GatewayConfig, args, kind: CapabilityKind, default_ttl: int, link_path: str, bounds) -> int:
    lo, hi = bounds
    if args.ttl is not None and not lo <= args.ttl <= hi:
        print(f"ERROR: --ttl must be between {lo} and {hi} seconds", file=sys.stderr)
        return 1
    caps = _capabilities(config)
    store = caps.store
    exists = store.get_student(args.subject_id) if kind is CapabilityKind.GUARDIAN_PORTAL else store.get_session(args.subject_id)
    if exists is None:
        print(f"ERROR: unknown {'student' if kind is CapabilityKind.GUARDIAN_PORTAL else 'session'} {args.subject_id}", file=sys.stderr)
        return 1

    others = caps.active_count(args.subject_id, kind)
    issued = caps.issue(args.subject_id, kind, args.ttl if args.ttl is not None else default_ttl, created_by="cli")
    record_capability_issued(kind.value)
    print(json.dumps({
        "token": issued.token,
        "link": f"{link_path}?token={issued.token}",
        "handle": issued.handle.handle,
        "expiresAt": issued.handle.expires_at.isoformat(),
        "otherActiveLinks": others,
    }, indent=2))
    return 0


def cmd_issue_portal_link(args) -> int:
    """Issue a guardian portal link for a student."""
    config = _config(args)
    return _issue(config, args, CapabilityKind.GUARDIAN_PORTAL, config.portal_token_ttl_seconds, PORTAL_LINK_PATH, PORTAL_TTL_BOUNDS)


def cmd_issue_cover_link(args) -> int:
    """Issue a substitute-proctor link for a session."""
    config = _config(args)
    return _issue(config, args, CapabilityKind.SUBSTITUTE_PROCTOR, config.substitute_token_ttl_seconds, COVER_LINK_PATH, SUBSTITUTE_TTL_BOUNDS)


def cmd_revoke(args) -> int:
    caps = _capabilities(_config(args))
    if not caps.revoke(args.handle):
        print(f"No such link: {args.handle}", file=sys.stderr)
        return 1
    print(f"Revoked {args.handle}")
    return 0


def cmd_purge_expired(args) -> int:
    caps = _capabilities(_config(args))
    n = caps.purge_expired()
    print(f"Purged {n} expired link(s)")
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    from .server import create_app

    app = create_app(config=_config(args))
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="proctor-gateway",
        description="Proctor Gateway CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", default=None, help="Database path (default: PG_DB_PATH or proctor_gateway.db)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP/WebSocket server")
    serve_parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, default=8000, help="Port to bind (default: 8000)")
    serve_parser.set_defaults(func=cmd_serve)

    portal_parser = subparsers.add_parser("issue-portal-link", help="Issue a guardian portal link")
    portal_parser.add_argument("subject_id", metavar="STUDENT_ID")
    portal_parser.add_argument("--ttl", type=_positive_int, default=None, help="Lifetime in seconds")
    portal_parser.set_defaults(func=cmd_issue_portal_link)

    cover_parser = subparsers.add_parser("issue-cover-link", help="Issue a substitute-proctor link")
    cover_parser.add_argument("subject_id", metavar="SESSION_ID")
    cover_parser.add_argument("--ttl", type=_positive_int, default=None, help="Lifetime in seconds")
    cover_parser.set_defaults(func=cmd_issue_cover_link)

    revoke_parser = subparsers.add_parser("revoke", help="Revoke a link by handle")
    revoke_parser.add_argument("handle")
    revoke_parser.set_defaults(func=cmd_revoke)

    purge_parser = subparsers.add_parser("purge-expired", help="Delete expired link records")
    purge_parser.set_defaults(func=cmd_purge_expired)

    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose, GatewayConfig.from_env().log_level)
    sys.exit(args.func(args))


if __name__ == "__main__":
    main()
