"""
M365 Admin Toolkit — Command-line entry point

Usage:
    python -m m365_admin inactive-users --days 90
    python -m m365_admin license-report --include-users
    python -m m365_admin license-remove --sku SPE_E3 --disabled-only --apply
    python -m m365_admin guest-cleanup --exclude-domain partner.com
    python -m m365_admin password-reset alice@contoso.com --apply
    python -m m365_admin mfa-report | device-report | ca-report
    python -m m365_admin password-expiry-notify --sender it@contoso.com
    python -m m365_admin health-score
    python -m m365_admin proxy --port 3001
    python -m m365_admin targets add 192.168.1.10 srv01

Profile management:
    python -m m365_admin profile add <name> --tenant-id ... --client-id ... --cert-path ...
    python -m m365_admin profile list
    python -m m365_admin profile remove <name>
    python -m m365_admin profile set-default <name>

Mutating tasks only PLAN their changes unless --apply is given.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from . import __version__
from .config import (
    AUTH_MODES,
    CertificateAuth,
    ConfigError,
    DelegatedAuth,
    SecretAuth,
    ToolkitConfig,
    WRITE_PERMISSIONS,
)
from .safety.guardian import ChangeGuard
from .auth.authenticator import Authenticator, AuthenticationError
from .graph.client import GraphClient
from .cache.store import RunJournal
from .tasks import (
    HEALTH_TASKS,
    ConditionalAccessReport,
    DeviceComplianceReport,
    GuestCleanup,
    InactiveUsersReport,
    LicenseRemoval,
    LicenseReport,
    MfaRegistrationReport,
    PasswordExpiryNotifier,
    PasswordReset,
    TaskResult,
)
from .scoring import compute_health
from .reporting import export_csv, export_health_csv, export_json
from .monitoring import targets as prom_targets
from .profiles import ProfileStore, TenantProfile, resolve_profile

logger = logging.getLogger("m365_admin.cli")

DEFAULT_TARGETS_FILE = Path("./prometheus/targets/windows.json")


# ---------------------------------------------------------------------------
# Profile management sub-commands
# ---------------------------------------------------------------------------

def _cmd_profile(args: argparse.Namespace) -> int:
    """Handle `profile add|list|remove|set-default` sub-commands."""
    action = args.profile_action

    if action == "list":
        return _profile_list()
    elif action == "add":
        return _profile_add(args)
    elif action == "remove":
        return _profile_remove(args)
    elif action == "set-default":
        return _profile_set_default(args)
    print("Usage: python -m m365_admin profile {add|list|remove|set-default}")
    return 0


def _profile_list() -> int:
    store = ProfileStore.load()
    profiles = store.list_profiles()
    if not profiles:
        print("No profiles configured. Add one with:\n")
        print("  python -m m365_admin profile add <name> \\")
        print("    --tenant-id <GUID or domain> --client-id <GUID> --cert-path ./base64.txt")
        return 0

    print(f"\n  {'Name':<24s} {'Tenant ID':<38s} {'Client ID':<38s} {'Auth':<12s} {'Default'}")
    print(f"  {'─'*24} {'─'*38} {'─'*38} {'─'*12} {'─'*7}")
    for p in profiles:
        default_marker = "  ✓" if p.name == store.default_profile else ""
        name_col = p.name + (f" ({p.tenant_display_name})" if p.tenant_display_name else "")
        print(f"  {name_col:<24s} {p.tenant_id:<38s} {p.client_id:<38s} {p.auth_mode:<12s}{default_marker}")
    if store.skipped:
        print(f"\n  Unreadable entries left in the file: {', '.join(store.skipped)}")
    print()
    return 0


def _profile_add(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    name = args.profile_name
    if store.get(name):
        print(f"  Profile '{name}' already exists. It will be overwritten.")

    profile = TenantProfile(
        name=name,
        tenant_id=args.tenant_id,
        client_id=args.client_id,
        auth_mode=args.auth_mode,
        cert_path=args.cert_path or "",
        tenant_display_name=args.display_name or "",
        notes=args.notes or "",
    )
    set_as_default = args.set_default or not store.profiles
    try:
        store.add(profile, set_default=set_as_default)
    except ValueError as e:
        print(f"  ❌ Profile '{name}' not saved: {e}")
        return 1
    print(f"  ✅ Profile '{name}' saved.")
    if set_as_default:
        print("  ✅ Set as default profile.")
    return 0


def _profile_remove(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.remove(args.profile_name):
        print(f"  ✅ Profile '{args.profile_name}' removed.")
        return 0
    print(f"  ❌ Profile '{args.profile_name}' not found.")
    return 1


def _profile_set_default(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.set_default(args.profile_name):
        print(f"  ✅ Default profile set to '{args.profile_name}'.")
        return 0
    print(f"  ❌ Profile '{args.profile_name}' not found.")
    return 1


# ---------------------------------------------------------------------------
# Prometheus targets sub-commands
# ---------------------------------------------------------------------------

def _cmd_targets(args: argparse.Namespace) -> int:
    path = args.file
    action = args.targets_action
    try:
        if action == "add":
            if prom_targets.add_server(path, args.address, args.name, port=args.port):
                print(f"  ✅ Added {args.name} ({args.address}:{args.port}) to {path}")
            else:
                print(f"  ⚠  {args.address}:{args.port} is already monitored")
            return 0
        if action == "remove":
            if prom_targets.remove_server(path, args.address, port=args.port):
                print(f"  ✅ Removed {args.address}:{args.port}")
                return 0
            print(f"  ❌ {args.address}:{args.port} is not in {path}")
            return 1
        if action == "list":
            servers = prom_targets.list_servers(path)
            if not servers:
                print(f"  No servers in {path}")
            for s in servers:
                print(f"  {s['name']:<24s} {s['address']}:{s['port']}")
            return 0
    except ValueError as e:
        print(f"  ❌ {e}")
        return 1
    print("Usage: python -m m365_admin targets {add|remove|list}")
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _common_options() -> argparse.ArgumentParser:
    """Options shared by every tenant-facing sub-command."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--profile", "-p", default=None,
                        help="Tenant profile name to use (run 'profile list' to see available)")
    common.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    common.add_argument("--delegated", action="store_true",
                        help="Use delegated (device-code) authentication")
    common.add_argument("--secret", action="store_true",
                        help="Use client-secret authentication (AZURE_CLIENT_SECRET)")
    common.add_argument("--tenant-id", default=None, help="Tenant ID (overrides profile)")
    common.add_argument("--client-id", default=None, help="Client ID (overrides profile)")
    common.add_argument("--cert-path", type=Path, help="Path to PFX or base64 PFX (overrides profile)")
    common.add_argument("--output-dir", "-o", type=Path, default=None,
                        help="Output directory (default: ./m365_admin_output)")
    common.add_argument("--formats", nargs="+", choices=["json", "csv"], default=None,
                        help="Output formats to generate")
    common.add_argument("--no-journal", action="store_true",
                        help="Do not record the run in the local journal")
    common.add_argument("--apply", action="store_true",
                        help="Execute planned changes (default is a dry run)")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return common


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="m365_admin",
        description=f"M365 Admin Toolkit v{__version__}",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")
    common = _common_options()

    # --- profile ---
    prof_parser = subparsers.add_parser("profile", help="Manage tenant profiles")
    prof_sub = prof_parser.add_subparsers(dest="profile_action", help="Profile actions")

    add_p = prof_sub.add_parser("add", help="Add or update a tenant profile")
    add_p.add_argument("profile_name", help="Short name for the profile (e.g. 'contoso-prod')")
    add_p.add_argument("--tenant-id", required=True, help="Entra tenant ID (GUID)")
    add_p.add_argument("--client-id", required=True, help="App registration client ID (GUID)")
    add_p.add_argument("--auth-mode", choices=AUTH_MODES, default="certificate")
    add_p.add_argument("--cert-path", default="", help="Path to PFX or base64 PFX")
    add_p.add_argument("--display-name", help="Friendly tenant display name")
    add_p.add_argument("--notes", help="Optional admin notes")
    add_p.add_argument("--set-default", action="store_true", help="Set as default profile")

    prof_sub.add_parser("list", help="List all configured profiles")
    rm_p = prof_sub.add_parser("remove", help="Remove a profile")
    rm_p.add_argument("profile_name")
    sd_p = prof_sub.add_parser("set-default", help="Set the default profile")
    sd_p.add_argument("profile_name")

    # --- reports and admin tasks ---
    p = subparsers.add_parser("inactive-users", parents=[common], help="Report inactive users")
    p.add_argument("--days", type=int, default=None, help="Inactivity threshold in days")
    p.add_argument("--include-disabled", action="store_true")
    p.add_argument("--include-guests", action="store_true")

    p = subparsers.add_parser("license-report", parents=[common], help="Report license usage")
    p.add_argument("--include-users", action="store_true", help="Add per-user assignments")

    p = subparsers.add_parser("license-remove", parents=[common], help="Remove a license SKU from users")
    p.add_argument("--sku", required=True, help="SKU part number (e.g. SPE_E3)")
    p.add_argument("--users", nargs="+", default=None, help="UPNs or object ids")
    p.add_argument("--disabled-only", action="store_true",
                   help="Target every disabled user holding the SKU")

    p = subparsers.add_parser("guest-cleanup", parents=[common], help="Find and remove stale guests")
    p.add_argument("--days", type=int, default=None, help="Guest inactivity threshold in days")
    p.add_argument("--pending-days", type=int, default=None,
                   help="Days before an unaccepted invitation is stale")
    p.add_argument("--exclude-domain", action="append", default=None)
    p.add_argument("--exclude-user", action="append", default=None)
    p.add_argument("--max-deletions", type=int, default=None)
    p.add_argument("--report-only", action="store_true", help="Report candidates without deleting")

    p = subparsers.add_parser("password-reset", parents=[common], help="Reset user passwords")
    p.add_argument("users", nargs="+", help="UPNs or object ids")
    p.add_argument("--length", type=int, default=None)
    p.add_argument("--no-force-change", action="store_true",
                   help="Do not require a change at next sign-in")
    p.add_argument("--revoke-sessions", action="store_true")

    subparsers.add_parser("mfa-report", parents=[common], help="Report MFA registration")

    p = subparsers.add_parser("device-report", parents=[common], help="Report Intune device compliance")
    p.add_argument("--stale-days", type=int, default=None)

    subparsers.add_parser("ca-report", parents=[common], help="Report Conditional Access policies")

    p = subparsers.add_parser("password-expiry-notify", parents=[common],
                              help="Email users whose password expires soon")
    p.add_argument("--sender", required=True, help="Mailbox the notices are sent from")
    p.add_argument("--max-age", type=int, default=None, help="Password max age in days")
    p.add_argument("--warning-days", type=int, default=None)

    subparsers.add_parser("health-score", parents=[common], help="Compute the tenant health score")

    # --- monitoring ---
    p = subparsers.add_parser("proxy", parents=[common], help="Run the Grafana Graph API proxy")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None, help="Listen port (default: $PORT or 3001)")

    t_parser = subparsers.add_parser("targets", help="Manage windows_exporter scrape targets")
    t_parser.add_argument("--file", type=Path, default=DEFAULT_TARGETS_FILE,
                          help=f"file_sd JSON file (default: {DEFAULT_TARGETS_FILE})")
    t_sub = t_parser.add_subparsers(dest="targets_action")
    t_add = t_sub.add_parser("add", help="Add a Windows server")
    t_add.add_argument("address")
    t_add.add_argument("name")
    t_add.add_argument("--port", type=int, default=prom_targets.WINDOWS_EXPORTER_PORT)
    t_rm = t_sub.add_parser("remove", help="Remove a Windows server")
    t_rm.add_argument("address")
    t_rm.add_argument("--port", type=int, default=prom_targets.WINDOWS_EXPORTER_PORT)
    t_sub.add_parser("list", help="List Windows servers")

    return parser


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def _auth_for(config: ToolkitConfig, mode: str, tenant_id: str, client_id: str, cert_path: str):
    config.auth.mode = mode
    if mode == "certificate":
        config.auth.certificate = CertificateAuth(
            tenant_id=tenant_id, client_id=client_id, certificate_path=cert_path or "./base64.txt"
        )
    elif mode == "secret":
        secret = config.auth.secret.client_secret if config.auth.secret else ""
        config.auth.secret = SecretAuth(tenant_id, client_id, secret)
    else:
        config.auth.delegated = DelegatedAuth(tenant_id, client_id)


def _configured_identity(config: ToolkitConfig) -> Optional[tuple[str, str, str]]:
    for auth in (config.auth.certificate, config.auth.secret, config.auth.delegated):
        if auth:
            return auth.tenant_id, auth.client_id, getattr(auth, "certificate_path", "")
    return None


def build_config(args: argparse.Namespace) -> ToolkitConfig:
    """
    Build the toolkit configuration. Precedence, highest first:
    CLI flags, --profile (or the default profile), --config file, environment.
    """
    if args.config:
        config = ToolkitConfig.from_file(args.config)
    else:
        config = ToolkitConfig.from_env()

    config.apply = args.apply
    config.verbose = args.verbose or config.verbose
    if args.no_journal:
        config.journal_enabled = False
    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    if args.formats:
        config.output.formats = args.formats

    existing = _configured_identity(config)
    profile = None
    if args.profile:
        profile = resolve_profile(args.profile)
        if not profile:
            raise ConfigError(
                f"Profile '{args.profile}' not found. Use 'profile list' to see available profiles."
            )
    elif not existing and not args.tenant_id:
        profile = resolve_profile()

    mode = config.auth.mode
    if profile:
        mode = profile.auth_mode
        tenant_id, client_id, cert_path = (
            profile.tenant_id, profile.client_id, profile.resolve_cert_path()
        )
    elif existing:
        tenant_id, client_id, cert_path = existing
    else:
        tenant_id, client_id, cert_path = "", "", ""

    tenant_id = args.tenant_id or tenant_id
    client_id = args.client_id or client_id
    if args.cert_path:
        cert_path = str(args.cert_path)
    if args.delegated:
        mode = "delegated"
    elif args.secret:
        mode = "secret"

    if not tenant_id or not client_id:
        raise ConfigError(
            "No tenant credentials found. Use --profile <name>, "
            "--tenant-id X --client-id Y, --config config.json, "
            "or AZURE_TENANT_ID / AZURE_CLIENT_ID in the environment."
        )
    _auth_for(config, mode, tenant_id, client_id, cert_path)

    # Per-command task settings
    overrides = {
        "inactive_days": getattr(args, "days", None) if args.command == "inactive-users" else None,
        "guest_inactive_days": getattr(args, "days", None) if args.command == "guest-cleanup" else None,
        "guest_pending_days": getattr(args, "pending_days", None),
        "guest_excluded_domains": getattr(args, "exclude_domain", None),
        "guest_excluded_users": getattr(args, "exclude_user", None),
        "max_deletions": getattr(args, "max_deletions", None),
        "stale_device_days": getattr(args, "stale_days", None),
        "password_max_age_days": getattr(args, "max_age", None),
        "password_warning_days": getattr(args, "warning_days", None),
        "password_length": getattr(args, "length", None),
    }
    for key, value in overrides.items():
        if value is not None:
            setattr(config.tasks, key, value)
    if getattr(args, "include_disabled", False):
        config.tasks.include_disabled = True
    if getattr(args, "include_guests", False):
        config.tasks.include_guests = True
    if getattr(args, "include_users", False):
        config.tasks.include_user_licenses = True
    if getattr(args, "no_force_change", False):
        config.tasks.force_change_password = False
    if getattr(args, "revoke_sessions", False):
        config.tasks.revoke_sessions = True
    if getattr(args, "host", None):
        config.proxy.host = args.host
    if getattr(args, "port", None) and args.command == "proxy":
        config.proxy.port = args.port

    return config


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


# ---------------------------------------------------------------------------
# Task execution
# ---------------------------------------------------------------------------

TaskFactory = Callable[[dict], list]


def task_factory(args: argparse.Namespace) -> TaskFactory:
    """Return a builder producing the task instances for a command."""
    command = args.command
    if command == "inactive-users":
        return lambda kw: [InactiveUsersReport(**kw)]
    if command == "license-report":
        return lambda kw: [LicenseReport(**kw)]
    if command == "license-remove":
        return lambda kw: [LicenseRemoval(
            sku_part_number=args.sku, users=args.users, disabled_only=args.disabled_only, **kw
        )]
    if command == "guest-cleanup":
        return lambda kw: [GuestCleanup(delete=not args.report_only, **kw)]
    if command == "password-reset":
        return lambda kw: [PasswordReset(users=args.users, **kw)]
    if command == "mfa-report":
        return lambda kw: [MfaRegistrationReport(**kw)]
    if command == "device-report":
        return lambda kw: [DeviceComplianceReport(**kw)]
    if command == "ca-report":
        return lambda kw: [ConditionalAccessReport(**kw)]
    if command == "password-expiry-notify":
        return lambda kw: [PasswordExpiryNotifier(sender=args.sender, **kw)]
    if command == "health-score":
        # Health scoring only reads; guest candidates are reported, never deleted
        return lambda kw: [
            cls(delete=False, **kw) if cls is GuestCleanup else cls(**kw)
            for cls in HEALTH_TASKS
        ]
    raise ConfigError(f"Unknown command: {command}")


async def run_tasks(tasks: list) -> dict[str, TaskResult]:
    """Run tasks concurrently; returns task name → TaskResult."""
    completed = await asyncio.gather(*(t.execute() for t in tasks))
    results = {}
    for task, result in zip(tasks, completed):
        status = "✅" if result.ok else "❌"
        counts = result.action_counts()
        actions = f" actions {counts}" if counts else ""
        print(f"  {status} {task.__class__.__name__}: {len(result.rows)} rows{actions} "
              f"({result.metadata.get('duration_seconds', '?')}s)")
        for w in result.metadata.get("warnings", []):
            print(f"      ⚠  {w}")
        for e in result.metadata.get("errors", []):
            print(f"      ❌ {e}")
        results[task.name] = result
    return results


def generate_reports(
    results: dict[str, TaskResult],
    config: ToolkitConfig,
    run_id: str,
    health: Any = None,
    audit: Optional[dict] = None,
    mode: str = "DRY-RUN",
) -> list[Path]:
    output_dir = config.output.run_dir
    created = []

    if "json" in config.output.formats:
        path = export_json(results, output_dir, run_id, health=health, audit=audit, mode=mode)
        created.append(path)
        print(f"  📄 JSON:  {path}")

    if "csv" in config.output.formats:
        for result in results.values():
            for path in export_csv(result, output_dir, run_id):
                created.append(path)
                print(f"  📊 CSV:   {path}")
        if health is not None:
            path = export_health_csv(health, output_dir, run_id)
            if path:
                created.append(path)
                print(f"  📊 CSV:   {path}")

    return created


def health_summaries(results: dict[str, TaskResult]) -> dict[str, dict]:
    """Summaries of the tasks that completed cleanly; a failed task is not measured."""
    return {name: r.summary for name, r in results.items() if r.ok and r.summary}


def _print_summary(results: dict[str, TaskResult]) -> None:
    for name, result in results.items():
        print(f"\n  [{name}]")
        for key, value in result.summary.items():
            if isinstance(value, dict):
                value = ", ".join(f"{k}={v}" for k, v in value.items()) or "-"
            print(f"    {key:32s} {value}")


async def run_command(args: argparse.Namespace, config: ToolkitConfig) -> int:
    guard = ChangeGuard(apply=config.apply)
    guard.print_banner()

    run_id = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S") + "_" + uuid.uuid4().hex[:8]
    print(f"\n📋 Run ID:  {run_id}")
    print(f"📂 Output:  {config.output.run_dir.resolve()}")
    needed = WRITE_PERMISSIONS.get(args.command)
    if needed:
        print(f"🔑 Needs:   {', '.join(needed)}")

    print("\n🔐 Authenticating...")
    authenticator = Authenticator(config.auth)
    try:
        token = await authenticator.acquire_token()
    except AuthenticationError as e:
        print(f"❌ {e}")
        return 1
    print("✅ Authentication successful.")

    journal = None
    if config.journal_enabled:
        journal = RunJournal(str(config.output.journal_dir), ttl_hours=config.cache_ttl_hours)
        journal.clear_expired()

    build = task_factory(args)
    async with GraphClient(access_token=token, guardian=guard) as graph:
        kwargs = {
            "graph": graph,
            "config": config.tasks,
            "journal": journal,
            "run_id": run_id,
            "shared": {},
        }
        tasks = build(kwargs)
        print(f"\n  Running {len(tasks)} task(s)...\n")
        results = await run_tasks(tasks)
        stats = graph.get_stats()
    logger.debug(f"Graph stats: {stats}")

    _print_summary(results)

    health = None
    if args.command == "health-score":
        health = compute_health(health_summaries(results), config.weights)
        print(f"\n  Health Score: {health.overall_score:.1f}/100 ({health.rating})")
        for cs in health.categories.values():
            print(f"    {cs.display_name:32s} {cs.score:5.1f}/100  (weight {cs.effective_weight:.2f})")
        for missing in health.missing_categories:
            print(f"    {missing:32s}   n/a")

    print()
    audit = guard.get_audit_record()
    created = generate_reports(results, config, run_id, health=health, audit=audit, mode=guard.mode)

    changes = audit["change_guard"]
    print(f"\n  Mode:    {guard.mode}")
    print(f"  Planned: {changes['planned_changes']}  Executed: {changes['executed_changes']}")
    print(f"  Files:   {len(created)}")
    if changes["planned_changes"] and not config.apply:
        print("  Re-run with --apply to execute the planned changes.")
    print()

    return 0 if all(r.ok for r in results.values()) else 1


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for `python -m m365_admin` and the console script."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "profile":
        return _cmd_profile(args)
    if args.command == "targets":
        return _cmd_targets(args)

    setup_logging(args.verbose)
    try:
        config = build_config(args)
    except ConfigError as e:
        print(f"\n❌ {e}")
        return 1

    if args.command == "proxy":
        # uvicorn owns the event loop
        from .monitoring.proxy import serve
        serve(config)
        return 0

    return asyncio.run(run_command(args, config))


if __name__ == "__main__":
    sys.exit(main())
