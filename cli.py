"""
Command-line interface for ShieldShare.

Operator commands for:
- Subject registration
- Encrypted upload, listing and deletion
- Share link creation, update and revocation
- Share link download and preview
- Reclamation sweeps and statistics
"""

import argparse
import dataclasses
import json
import logging
import mimetypes
import os
import sys
import tempfile
import time
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from accounts.models import ROLE_ADMIN, ROLE_USER
from config import Settings
from errors import NotFoundError, ShareVaultError
from sharing.models import AccessContext, AccessMode, Grant, GrantPolicy
from storage.db import to_iso
from vault import ShareVault


def create_vault(args) -> ShareVault:
    settings = Settings.from_env()
    if args.home:
        settings = dataclasses.replace(settings, data_dir=Path(args.home),
                                       db_path=None, blob_dir=None)
    level = logging.DEBUG if args.verbose else getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    return ShareVault(settings)


def resolve_subject(vault: ShareVault, ident: Optional[str]) -> Optional[str]:
    """Accept a subject id or a registered email."""
    if not ident:
        return None
    if "@" in ident:
        subject = vault.subjects.get_by_email(ident.strip().lower())
        if subject is None:
            raise NotFoundError(f"No subject registered as {ident}", resource="subject")
        return subject.subject_id
    return vault.accounts.get(ident).subject_id


def print_grant(vault: ShareVault, grant: Grant) -> None:
    info = grant.to_dict(vault.clock())
    remaining = info["remaining_downloads"]
    print(f"   🔗 {vault.share_url(grant)}")
    print(f"     ID: {grant.grant_id[:8]}... | Mode: {grant.mode.value} | "
          f"Used: {grant.consumed_count}"
          f"{'' if remaining is None else f' | Remaining: {remaining}'}")
    print(f"     Expires: {info['expires_at']} ({info['expires_in']}) | State: {info['state']}")
    if grant.is_password_protected:
        print("     🔒 Password protected")
    if grant.deactivation_reason:
        print(f"     Deactivated: {grant.deactivation_reason.value}")


def policy_from_args(args) -> GrantPolicy:
    return GrantPolicy(
        mode=args.mode,
        download_limit=args.limit,
        expires_in_hours=args.hours,
        password=args.password,
        allowed_ips=args.allow_ip or [],
        allowed_emails=args.allow_email or [],
        requires_auth=args.require_auth,
        custom_message=args.message or "",
        notify_on_download=args.notify,
        notification_email=args.notify_email,
    )


# ==================== Command Handlers ====================

def handle_register(vault: ShareVault, args) -> int:
    role = ROLE_ADMIN if args.admin else ROLE_USER
    subject = vault.register(args.email, args.name or "", role=role, storage_quota=args.quota)
    print(f"✅ Subject registered: {subject.email}")
    print(f"   Subject ID: {subject.subject_id}")
    print(f"   Quota: {vault.accounts.storage_info(subject.subject_id)['quota']}")
    return 0


def handle_upload(vault: ShareVault, args) -> int:
    owner = resolve_subject(vault, args.as_subject)
    path = Path(args.file).expanduser()
    if not path.is_file():
        print(f"❌ File not found: {args.file}")
        return 1
    content_type = args.content_type or mimetypes.guess_type(path.name)[0]
    policy = policy_from_args(args) if args.share else None
    with path.open("rb") as fh:
        entry, grant = vault.upload(owner, path.name, fh, size=path.stat().st_size,
                                    content_type=content_type or "application/octet-stream",
                                    share=policy)
    print("\n✅ File uploaded successfully!")
    print(f"   📄 Filename: {entry.filename}")
    print(f"   🔑 Object ID: {entry.object_id}")
    print(f"   📊 Size: {entry.size_formatted}")
    print(f"   🔒 Encrypted with {entry.algorithm.upper()}")
    if grant:
        print_grant(vault, grant)
    return 0


def handle_list(vault: ShareVault, args) -> int:
    requester = resolve_subject(vault, args.as_subject)
    if args.all:
        if not vault.accounts.is_admin(requester):
            print("❌ --all requires an admin subject")
            return 1
        objects, total = vault.list_all_objects(limit=args.limit, skip=args.skip)
        print(f"\n📁 All objects ({total})")
    else:
        objects = vault.list_objects(requester, limit=args.limit, skip=args.skip)
        print("\n📁 My objects")
    if not objects:
        print("   No objects stored")
        return 0
    for o in objects:
        present = "" if vault.objects.verify_integrity(o.object_id) else " ⚠️ bytes missing"
        print(f"   • {o.filename}{present}")
        print(f"     ID: {o.object_id} | Size: {o.size_formatted} | {to_iso(o.created_at)[:10]}")
    return 0


def handle_share(vault: ShareVault, args) -> int:
    requester = resolve_subject(vault, args.as_subject)
    grant = vault.share(args.object_id, requester, policy_from_args(args))
    print("✅ Share link created")
    print_grant(vault, grant)
    return 0


def handle_links(vault: ShareVault, args) -> int:
    requester = resolve_subject(vault, args.as_subject)
    grants = vault.links(requester, object_id=args.object_id, active_only=args.active)
    print("\n🔗 Share links")
    if not grants:
        print("   No share links")
        return 0
    for g in grants:
        print_grant(vault, g)
    return 0


def handle_revoke(vault: ShareVault, args) -> int:
    requester = resolve_subject(vault, args.as_subject)
    grant = vault.revoke(args.grant_id, requester)
    print(f"✅ Share link revoked ({grant.deactivation_reason.value})")
    return 0


def handle_update_link(vault: ShareVault, args) -> int:
    requester = resolve_subject(vault, args.as_subject)
    changes = {}
    if args.limit is not None:
        changes["download_limit"] = args.limit
    if args.hours is not None:
        changes["expires_at"] = vault.clock() + timedelta(hours=args.hours)
    if args.message is not None:
        changes["custom_message"] = args.message
    if args.password is not None:
        changes["password"] = args.password
    if args.clear_password:
        changes["password"] = None
    if args.notify is not None:
        changes["notify_on_download"] = args.notify
    if args.notify_email is not None:
        changes["notification_email"] = args.notify_email
    if not changes:
        print("❌ Nothing to update")
        return 1
    grant = vault.update_link(args.grant_id, requester, **changes)
    print("✅ Share link updated")
    print_grant(vault, grant)
    return 0


def _context(vault: ShareVault, args) -> AccessContext:
    return AccessContext(
        address=args.ip,
        subject_id=resolve_subject(vault, args.as_subject),
        secret=args.password,
        user_agent="shieldshare-cli",
    )


def handle_download(vault: ShareVault, args) -> int:
    context = _context(vault, args)
    result = vault.download(args.token, context)
    # the stored name comes from the uploader; never let it pick a directory
    target = Path(args.output).expanduser() if args.output else Path(Path(result.filename).name)
    written = 0
    fd, tmp_name = tempfile.mkstemp(prefix=".download-", dir=target.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            for chunk in result.stream:
                fh.write(chunk)
                written += len(chunk)
        os.replace(tmp_name, target)
    finally:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
    print("\n✅ File downloaded successfully!")
    print(f"   📁 Saved to: {target}")
    print(f"   📊 Size: {written:,} bytes")
    if result.grant and result.grant.custom_message:
        print(f"   💬 {result.grant.custom_message}")
    return 0


def handle_info(vault: ShareVault, args) -> int:
    info = vault.link_info(args.token, _context(vault, args))
    print(json.dumps(info, indent=2))
    return 0


def handle_delete(vault: ShareVault, args) -> int:
    requester = resolve_subject(vault, args.as_subject)
    entry = vault.delete(args.object_id, requester)
    print(f"✅ Object deleted: {entry.filename}")
    return 0


def handle_sweep(vault: ShareVault, args) -> int:
    report = vault.sweep(purge=args.purge)
    print(f"✅ Sweep complete: {report}")
    return 0


def handle_watch(vault: ShareVault, args) -> int:
    vault.start_sweeper()
    print(f"🧹 Sweeper running every {vault.settings.sweep_interval:g}s (Ctrl+C to stop)")
    try:
        while vault.sweeper.running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nGoodbye! 👋")
    return 0


def handle_stats(vault: ShareVault, args) -> int:
    subject = resolve_subject(vault, args.as_subject)
    data = vault.stats(subject)
    if args.top:
        data["top_objects"] = vault.ledger.top_objects(limit=args.top)
    print(json.dumps(data, indent=2, default=str))
    return 0


HANDLERS = {
    "register": handle_register,
    "upload": handle_upload,
    "list": handle_list,
    "share": handle_share,
    "links": handle_links,
    "revoke": handle_revoke,
    "update-link": handle_update_link,
    "download": handle_download,
    "info": handle_info,
    "delete": handle_delete,
    "sweep": handle_sweep,
    "watch": handle_watch,
    "stats": handle_stats,
}


def _add_policy_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--mode", choices=[m.value for m in AccessMode], default=AccessMode.MULTIPLE.value)
    p.add_argument("--limit", type=int, help="Download limit for 'multiple' links")
    p.add_argument("--hours", type=float, help="Hours until the link expires")
    p.add_argument("--password", help="Protect the link with a password")
    p.add_argument("--allow-ip", action="append", help="Allowed client address (repeatable)")
    p.add_argument("--allow-email", action="append", help="Allowed subject email (repeatable)")
    p.add_argument("--require-auth", action="store_true")
    p.add_argument("--message", help="Message shown to downloaders")
    p.add_argument("--notify", action="store_true", help="Notify on each download")
    p.add_argument("--notify-email")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shieldshare",
        description="ShieldShare - encrypted objects with bounded, revocable share links",
    )
    parser.add_argument("--home", help="Data directory (overrides SHIELDSHARE_HOME)")
    parser.add_argument("-v", "--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("register", help="Register a subject")
    p.add_argument("email")
    p.add_argument("--name")
    p.add_argument("--quota", type=int, help="Storage quota in bytes")
    p.add_argument("--admin", action="store_true")

    p = subparsers.add_parser("upload", help="Encrypt and store a file")
    p.add_argument("file")
    p.add_argument("--as", dest="as_subject", required=True)
    p.add_argument("--content-type")
    p.add_argument("--share", action="store_true", help="Also create a share link")
    _add_policy_args(p)

    p = subparsers.add_parser("list", help="List stored objects")
    p.add_argument("--as", dest="as_subject", required=True)
    p.add_argument("--all", action="store_true", help="Store-wide listing (admin)")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--skip", type=int, default=0)

    p = subparsers.add_parser("share", help="Create a share link for an object")
    p.add_argument("object_id")
    p.add_argument("--as", dest="as_subject", required=True)
    _add_policy_args(p)

    p = subparsers.add_parser("links", help="List share links")
    p.add_argument("--as", dest="as_subject", required=True)
    p.add_argument("--object-id")
    p.add_argument("--active", action="store_true")

    p = subparsers.add_parser("revoke", help="Deactivate a share link")
    p.add_argument("grant_id")
    p.add_argument("--as", dest="as_subject", required=True)

    p = subparsers.add_parser("update-link", help="Change a share link's settings")
    p.add_argument("grant_id")
    p.add_argument("--as", dest="as_subject", required=True)
    p.add_argument("--limit", type=int)
    p.add_argument("--hours", type=float, help="New expiry, hours from now")
    p.add_argument("--message")
    p.add_argument("--password")
    p.add_argument("--clear-password", action="store_true")
    p.add_argument("--notify", dest="notify", action="store_true", default=None)
    p.add_argument("--no-notify", dest="notify", action="store_false")
    p.add_argument("--notify-email")

    for name, help_text in (("download", "Download through a share link"),
                            ("info", "Preview a share link without using it")):
        p = subparsers.add_parser(name, help=help_text)
        p.add_argument("token")
        p.add_argument("--as", dest="as_subject")
        p.add_argument("--password")
        p.add_argument("--ip", help="Client address presented to the link")
        if name == "download":
            p.add_argument("-o", "--output")

    p = subparsers.add_parser("delete", help="Delete an object and retire its links")
    p.add_argument("object_id")
    p.add_argument("--as", dest="as_subject", required=True)

    p = subparsers.add_parser("sweep", help="Run one reclamation sweep")
    p.add_argument("--purge", action="store_true", help="Also purge soft-deleted objects")

    subparsers.add_parser("watch", help="Run the sweeper until interrupted")

    p = subparsers.add_parser("stats", help="Link and download statistics")
    p.add_argument("--as", dest="as_subject")
    p.add_argument("--top", type=int, default=0, help="Include the N most downloaded objects")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        with create_vault(args) as vault:
            return HANDLERS[args.command](vault, args)
    except ShareVaultError as e:
        print(f"❌ {e.code}: {e.message}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
