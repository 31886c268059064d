#!/usr/bin/env python3
"""Administrative actions on users and refresh sessions.

Usage:
    DATABASE_URL=postgresql://... python scripts/manage_sessions.py block alice
    python scripts/manage_sessions.py unblock alice@example.com
    python scripts/manage_sessions.py revoke-all alice
    python scripts/manage_sessions.py list alice
    python scripts/manage_sessions.py purge

Blocking a user also revokes every session they hold, so an outstanding
refresh token cannot be used to mint new access tokens. Access tokens already
issued stay valid until they expire.

Environment Variables:
    DATABASE_URL: PostgreSQL connection string
    JWT_SECRET: Required by the settings loader (not used by these commands)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def set_blocked(store, login: str, blocked: bool, dry_run: bool = False) -> dict:
    user = store.get_user_by_login(login)
    if user is None:
        return {"login": login, "status": "not_found"}
    if dry_run:
        return {"user_id": user.id, "status": "dry_run"}
    store.set_user_blocked(user.id, blocked)
    revoked = store.delete_user_sessions(user.id) if blocked else 0
    return {
        "user_id": user.id,
        "status": "blocked" if blocked else "unblocked",
        "revoked": revoked,
    }


def revoke_all(store, login: str, dry_run: bool = False) -> dict:
    user = store.get_user_by_login(login)
    if user is None:
        return {"login": login, "status": "not_found"}
    if dry_run:
        sessions = store.list_user_sessions(user.id)
        return {"user_id": user.id, "status": "dry_run", "revoked": len(sessions)}
    return {"user_id": user.id, "status": "revoked", "revoked": store.delete_user_sessions(user.id)}


def list_sessions(store, login: str) -> dict:
    user = store.get_user_by_login(login)
    if user is None:
        return {"login": login, "status": "not_found"}
    sessions = [
        {
            "session_id": sess.id,
            "created_at": sess.created_at.isoformat(),
            "expires_at": sess.expires_at.isoformat(),
            "user_agent": sess.user_agent,
            "client_ip": sess.client_ip,
        }
        for sess in store.list_user_sessions(user.id)
    ]
    return {"user_id": user.id, "status": "ok", "sessions": sessions}


def purge_expired(store, dry_run: bool = False) -> dict:
    if dry_run:
        return {"status": "dry_run"}
    return {"status": "purged", "removed": store.delete_expired_sessions()}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Manage authgate users and sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--dry-run", action="store_true", help="Report without changing anything")
    sub = parser.add_subparsers(dest="command", required=True)
    for name, help_text in (
        ("block", "Block a user and revoke their sessions"),
        ("unblock", "Unblock a user"),
        ("revoke-all", "Revoke every session of a user"),
        ("list", "List a user's sessions"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("login", help="username or email")
    sub.add_parser("purge", help="Delete expired sessions")

    args = parser.parse_args(argv)

    if not os.environ.get("DATABASE_URL"):
        print("Error: DATABASE_URL is required; the in-memory store is per-process")
        return 1

    from authgate.logging import get_logger
    from authgate.service.runtime import get_runtime

    logger = get_logger("manage_sessions")
    runtime = get_runtime()
    store = runtime.store
    try:
        if args.command in ("block", "unblock"):
            result = set_blocked(store, args.login, args.command == "block", args.dry_run)
        elif args.command == "revoke-all":
            result = revoke_all(store, args.login, args.dry_run)
        elif args.command == "list":
            result = list_sessions(store, args.login)
        else:
            result = purge_expired(store, args.dry_run)
    finally:
        store.close()

    logger.info("manage_sessions_completed", command=args.command, **result)
    print(result)
    return 0 if result.get("status") != "not_found" else 2


if __name__ == "__main__":
    sys.exit(main())
