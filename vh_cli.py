#!/usr/bin/env python3
"""
VanderHub Gateway - Admin Command Line Interface

Usage:
    vh-admin issue-key [--kind K] [--count N]   Issue unused access keys (trial|time_limited|lifetime)
    vh-admin list-keys [--unused]               List access keys and their bindings
    vh-admin revoke <hwid>                      Revoke a device's entitlement
    vh-admin expire-trials [--at ISO]           Force every trial entitlement to expire
    vh-admin sync-scripts <manifest.json>       Upload local scripts into repositories
    vh-admin session-key                        Show the current rotating session key
    vh-admin reveal <artifact.lua>              Undo the protection layers of an artifact
    vh-admin pending                            Show writes journaled while the store was down
"""

import argparse
import dataclasses
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Tuple

from vh_gateway.config import GatewayConfig
from vh_gateway.entitlements import TRIAL_WIPE_TIMESTAMP, CredentialKind, EntitlementStore
from vh_gateway.errors import VH_E_BAD_REQUEST, VHError, vh_error
from vh_gateway.mirror import LocalMirror
from vh_gateway.repos import Repository, RepositoryStore
from vh_gateway.session_key import RotatingSessionKey
from vh_gateway.transform import reveal

logger = logging.getLogger("vh_gateway")


def setup_logging(verbose: bool = False):
    """Configure logging for CLI usage."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S"
    )
    logger.setLevel(level)


def load_config(args) -> GatewayConfig:
    config = GatewayConfig.from_env()
    if args.db:
        config = dataclasses.replace(config, db_path=args.db)
    return config


def open_entitlements(config: GatewayConfig) -> EntitlementStore:
    mirror = LocalMirror(config.resolved_mirror_path)
    return EntitlementStore(config.db_path, mirror=mirror, entitlement_days=config.entitlement_days).open()


def open_repos(config: GatewayConfig) -> RepositoryStore:
    return RepositoryStore(config.db_path, mirror=LocalMirror(config.resolved_mirror_path)).open()


def cmd_issue_key(args):
    """Issue unused access keys."""
    store = open_entitlements(load_config(args))
    kind = CredentialKind(args.kind)
    for _ in range(args.count):
        cred = store.issue_credential(kind)
        print(cred.id)


def cmd_list_keys(args):
    """List access keys."""
    store = open_entitlements(load_config(args))
    creds = store.list_credentials()
    if args.unused:
        creds = [c for c in creds if not c.used]

    print(f"\n{'='*60}")
    print(f"ACCESS KEYS ({len(creds)})")
    print(f"{'='*60}")
    for c in creds:
        bound = c.bound_device_id or "-"
        print(f"  {c.id:<22} {c.kind.value:<13} {'used' if c.used else 'unused':<7} {bound}")
    print(f"{'='*60}\n")


def cmd_revoke(args):
    """Revoke a device's entitlement."""
    store = open_entitlements(load_config(args))
    record = store.revoke(args.hwid)
    print(f"Revoked {record.device_id} (key {record.linked_credential_id})")


def cmd_expire_trials(args):
    """Force every trial-derived entitlement to expire."""
    at = TRIAL_WIPE_TIMESTAMP
    if args.at:
        try:
            at = datetime.fromisoformat(args.at)
        except ValueError:
            raise vh_error(VH_E_BAD_REQUEST, f"--at is not an ISO 8601 timestamp: {args.at!r}")
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
    store = open_entitlements(load_config(args))
    n = store.expire_trials(at=at)
    print(f"Expired {n} trial entitlement(s) at {at.isoformat()}")


def _resolve_manifest(manifest_path: Path) -> Tuple[List[Tuple[str, str, str]], List[str]]:
    """Return ([(repo_id, name, content)], [skipped names]).

    Each manifest entry is {"repo": id, "name": file, "paths": [candidates]}.
    The first existing candidate wins; relative paths resolve against the
    manifest's directory.
    """
    try:
        entries = json.loads(manifest_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise vh_error(VH_E_BAD_REQUEST, f"cannot read manifest {manifest_path}: {e}")
    if not isinstance(entries, list):
        raise vh_error(VH_E_BAD_REQUEST, "manifest must be a JSON list")
    found: List[Tuple[str, str, str]] = []
    skipped: List[str] = []
    for pos, entry in enumerate(entries):
        if not isinstance(entry, dict) or not isinstance(entry.get("paths", []), list):
            raise vh_error(VH_E_BAD_REQUEST, f"manifest entry {pos} must be an object with a 'paths' list")
        missing = [k for k in ("repo", "name") if not entry.get(k)]
        if missing:
            raise vh_error(VH_E_BAD_REQUEST, f"manifest entry {pos} is missing {', '.join(missing)}")
        content = None
        for candidate in entry.get("paths", []):
            p = Path(candidate)
            if not p.is_absolute():
                p = manifest_path.parent / p
            if p.is_file():
                content = p.read_text(encoding="utf-8")
                break
        if content is None:
            skipped.append(entry["name"])
        else:
            found.append((entry["repo"], entry["name"], content))
    return found, skipped


def cmd_sync_scripts(args):
    """Upload local script files into their repositories."""
    found, skipped = _resolve_manifest(Path(args.manifest))
    for name in skipped:
        logger.warning("Skipped %s (no local file found)", name)

    # Never push an empty sync: a missing checkout must not wipe the store.
    if not found:
        print("✗ SYNC BLOCKED: no local files were found; the store was not updated")
        sys.exit(1)

    store = open_repos(load_config(args))
    for repo_id, name, content in found:
        if store.get_repository(repo_id) is None:
            store.ensure_repository(Repository(id=repo_id, name=repo_id, owner=args.owner))
        store.put_file(repo_id, name, content, owner=args.owner)
        print(f"✓ {repo_id}/{name} ({len(content)} chars)")
    print(f"\nSynced {len(found)} file(s), skipped {len(skipped)}")


def cmd_session_key(args):
    """Show the current rotating session key."""
    config = load_config(args)
    keys = RotatingSessionKey(config.session_secret, config.session_bucket_seconds)
    print(f"Key:       {keys.current_key()}")
    print(f"Bucket:    {keys.bucket()}")
    print(f"Rotates in {int(keys.seconds_remaining())}s")


def cmd_reveal(args):
    """Undo the protection layers of an artifact."""
    artifact = Path(args.artifact).read_text(encoding="utf-8")
    sys.stdout.write(reveal(artifact, session_key=args.session_key))


def cmd_pending(args):
    """Show writes journaled while the primary store was unavailable."""
    config = load_config(args)
    entries = LocalMirror(config.resolved_mirror_path).pending()
    print(f"Pending writes: {len(entries)}")
    for e in entries:
        print(f"  {e.get('ts_utc', '?')} {e.get('op')} {json.dumps(e.get('payload', {}), sort_keys=True)}")


def main():
    parser = argparse.ArgumentParser(
        description="VanderHub Gateway admin CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--db", default=None, help="Path to gateway database (default: VH_GATEWAY_DB_PATH)")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    issue_parser = subparsers.add_parser("issue-key", help="Issue unused access keys")
    issue_parser.add_argument(
        "--kind", choices=[k.value for k in CredentialKind], default=CredentialKind.LIFETIME.value,
        help="Key kind (default: lifetime)",
    )
    issue_parser.add_argument("--count", type=int, default=1, help="Number of keys")
    issue_parser.set_defaults(func=cmd_issue_key)

    list_parser = subparsers.add_parser("list-keys", help="List access keys")
    list_parser.add_argument("--unused", action="store_true", help="Only unused keys")
    list_parser.set_defaults(func=cmd_list_keys)

    revoke_parser = subparsers.add_parser("revoke", help="Revoke a device's entitlement")
    revoke_parser.add_argument("hwid", help="Device identifier")
    revoke_parser.set_defaults(func=cmd_revoke)

    expire_parser = subparsers.add_parser("expire-trials", help="Force trial entitlements to expire")
    expire_parser.add_argument("--at", default=None, help="Expiry timestamp, ISO 8601 (default: 2024-01-01)")
    expire_parser.set_defaults(func=cmd_expire_trials)

    sync_parser = subparsers.add_parser("sync-scripts", help="Upload local scripts into repositories")
    sync_parser.add_argument("manifest", help="JSON manifest of {repo, name, paths}")
    sync_parser.add_argument("--owner", default="System", help="Owner for newly created repositories")
    sync_parser.set_defaults(func=cmd_sync_scripts)

    sk_parser = subparsers.add_parser("session-key", help="Show the current session key")
    sk_parser.set_defaults(func=cmd_session_key)

    reveal_parser = subparsers.add_parser("reveal", help="Undo the protection layers of an artifact")
    reveal_parser.add_argument("artifact", help="Path to a protected .lua artifact")
    reveal_parser.add_argument("--session-key", default=None, help="Session key for handshake-delivery artifacts")
    reveal_parser.set_defaults(func=cmd_reveal)

    pending_parser = subparsers.add_parser("pending", help="Show journaled writes awaiting reconciliation")
    pending_parser.set_defaults(func=cmd_pending)

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    setup_logging(args.verbose)
    try:
        args.func(args)
    except VHError as e:
        print(f"✗ {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
