from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Optional

from termcolor import colored

from appregkit import cache as c
from appregkit.auth import GraphSession, build_credential
from appregkit.console import err, info, ok, print_kv, print_section, warn
from appregkit.context import CatalogContext
from appregkit.errors import AppRegKitError
from appregkit.graph import GraphDirectoryClient
from appregkit.models import APPLICATION, DELEGATED, PERMISSION_KINDS
from appregkit.paths import CatalogPaths
from appregkit.report import build_refresh_report, fmt_utc_z
from appregkit.storage import atomic_write_json


def _add_auth_args(ap: argparse.ArgumentParser) -> None:
    g = ap.add_argument_group("authentication (no az CLI)")
    g.add_argument(
        "--auth-method",
        default="auto",
        help="Authentication method: auto, client-secret, device-code, az-cache (default: auto).",
    )
    g.add_argument("--tenant-id", help="Tenant ID (required for client-secret auth; optional for device-code).")
    g.add_argument("--client-id", help="App (client) ID for client-secret auth.")
    g.add_argument("--client-secret", help="Client secret for client-secret auth.")
    g.add_argument("--graph-token", help="Microsoft Graph access token (Bearer). Bypasses other auth methods.")
    g.add_argument("--device-client-id", help="Public client ID for device-code auth (default: Azure CLI public app id).")
    g.add_argument(
        "--no-az-token-cache",
        action="store_true",
        help="Do not read tokens from ~/.azure/msal_token_cache.json; force device-code/client-secret auth.",
    )


def _connect(ctx: CatalogContext, args) -> None:
    session = GraphSession(build_credential(args))
    ctx.attach_upstream(GraphDirectoryClient(session), session)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="appregkit",
        description="Local catalog of Entra ID service principals and their application/delegated permissions.",
    )
    ap.add_argument("--config-dir", help="Catalog directory (default: per-user config dir; env APPREGKIT_CONFIG_DIR).")
    sub = ap.add_subparsers(dest="command", required=True)

    sub.add_parser("paths", help="Show install, user and active catalog directories.")
    sub.add_parser("status", help="Show catalog metadata, storage format and counts.")

    p = sub.add_parser("init", help="Create an empty normalized catalog structure.")
    p.add_argument("--force", action="store_true", help="Overwrite existing catalog files.")
    p.add_argument("--refresh-interval-days", type=int, default=30, help="Days before a refresh is considered due (default: 30).")
    p.add_argument("--manual-refresh", action="store_true", help="Disable automatic refresh; only --force refreshes.")

    p = sub.add_parser("refresh", help="Rebuild the catalog from Microsoft Graph.")
    p.add_argument("--include-graph", action="store_true", help="Include the Microsoft Graph service principal itself.")
    p.add_argument("--include-custom-apis", action="store_true", help="Include non-Microsoft (tenant/third-party) APIs.")
    p.add_argument("--force", action="store_true", help="Refresh even if the catalog is fresh or auto refresh is off.")
    legacy = p.add_mutually_exclusive_group()
    legacy.add_argument("--legacy", dest="write_legacy", action="store_true", default=None, help="Also write KnownServices.json.")
    legacy.add_argument("--no-legacy", dest="write_legacy", action="store_false", help="Never write KnownServices.json.")
    p.set_defaults(write_legacy=None)
    p.add_argument("--out-json", help="Write the refresh summary as JSON to this path.")
    _add_auth_args(p)

    p = sub.add_parser("find", help="Find services by name, key or appId.")
    p.add_argument("pattern", nargs="?", help="Name/key fragment or exact appId (omit for all services).")
    p.add_argument("--permissions", action="store_true", help="Include permission definitions.")
    p.add_argument("--live", action="store_true", help="Attach the live service principal from Microsoft Graph.")
    p.add_argument("--json", action="store_true", help="Print JSON instead of text.")
    _add_auth_args(p)

    p = sub.add_parser("lookup", help="Search Microsoft Graph live for service principals by display-name prefix.")
    p.add_argument("prefix")
    p.add_argument("--limit", type=int, default=50)
    _add_auth_args(p)

    p = sub.add_parser("permission", help="Find permission definitions by name.")
    p.add_argument("name")
    p.add_argument("--kind", choices=PERMISSION_KINDS)

    p = sub.add_parser("convert", help="Write the normalized catalog from KnownServices.json.")
    p.add_argument("--force", action="store_true", help="Overwrite an existing normalized catalog.")

    p = sub.add_parser("prefer", help="Persist the catalog storage format preference.")
    p.add_argument("format", choices=("normalized", "legacy", "clear"))
    return ap


def cmd_paths(ctx: CatalogContext, paths: Optional[CatalogPaths], args) -> int:
    print_section("Catalog paths")
    if paths is not None:
        print_kv("Install", paths.install_dir)
        print_kv("User", paths.user_dir)
    print_kv("Active", ctx.config_dir)
    return 0


def cmd_status(ctx: CatalogContext, paths: Optional[CatalogPaths], args) -> int:
    pref = ctx.preference.resolve()
    print_section("Catalog status")
    print_kv("Directory", ctx.config_dir)
    print_kv("Storage format", f"{'normalized' if pref.use_normalized_storage else 'legacy'} ({pref.reason})")
    print_kv("Legacy file present", ctx.storage.legacy_exists())
    print_kv("Interrupted refresh", ctx.storage.refresh_interrupted())
    index = ctx.cache.get(c.INDEX)
    if index is None:
        print_kv("Normalized catalog", "not available")
    else:
        meta = index.metadata
        print_kv("Version", meta.version)
        print_kv("Last updated", fmt_utc_z(meta.last_updated) if meta.last_updated else "never")
        print_kv("Refresh interval (days)", meta.refresh_interval_days)
        print_kv("Auto refresh", meta.auto_refresh_enabled)
        print_kv("Service principals", len(ctx.cache.get(c.SERVICE_PRINCIPALS) or {}))
        definitions = ctx.cache.get(c.PERMISSION_DEFINITIONS)
        print_kv("Unique definitions", len(definitions) if definitions is not None else 0)
    return 0


def cmd_init(ctx: CatalogContext, paths: Optional[CatalogPaths], args) -> int:
    res = ctx.storage.initialize_structure(
        force=args.force,
        refresh_interval_days=args.refresh_interval_days,
        auto_refresh_enabled=not args.manual_refresh,
    )
    if not res.created:
        warn(f"Catalog files already exist in {ctx.config_dir}: {', '.join(res.existing_files)}. Use --force to overwrite.")
        return 1
    ctx.cache.invalidate()
    ok(f"Initialized normalized catalog in {ctx.config_dir} ({', '.join(res.created_files)})")
    return 0


def cmd_refresh(ctx: CatalogContext, paths: Optional[CatalogPaths], args) -> int:
    _connect(ctx, args)
    res = ctx.refresh_engine().refresh(
        include_builtin_service=args.include_graph,
        include_custom_apis=args.include_custom_apis,
        force=args.force,
        write_legacy=args.write_legacy,
    )
    if not res.refreshed:
        info(f"Refresh skipped: {res.reason}")
        return 0
    if args.out_json:
        report = build_refresh_report(
            summary=res.summary,
            config_dir=str(ctx.config_dir),
            include_builtin_service=args.include_graph,
            include_custom_apis=args.include_custom_apis,
            wrote_legacy=res.wrote_legacy,
        )
        atomic_write_json(Path(args.out_json), report)
        ok(f"Summary written to {args.out_json}")
    return 0


def _print_service(svc) -> None:
    print(f"{colored(svc.display_name or svc.service_key, 'blue')} ({colored(svc.service_key, 'yellow')})")
    print_kv("AppId", svc.app_id)
    if svc.service_principal_id:
        print_kv("ServicePrincipalId", svc.service_principal_id)
    if svc.publisher:
        print_kv("Publisher", svc.publisher)
    for label, perms in (("Application", svc.application_permissions), ("Delegated", svc.delegated_permissions)):
        if perms is None:
            continue
        print_kv(f"{label} permissions", len(perms))
        for p in perms:
            print(f"    - `{p.name}`" + (f": {p.display_name}" if p.display_name else ""))
    if svc.live_service_principal is not None:
        print_kv("Live", "found" if svc.live_service_principal else "not found in tenant")
    print()


def cmd_find(ctx: CatalogContext, paths: Optional[CatalogPaths], args) -> int:
    if args.live:
        _connect(ctx, args)
    services = ctx.query.find_services(
        args.pattern,
        include_permissions=args.permissions,
        include_live_service_principal=args.live,
    )
    if services is None:
        err(f"No catalog found in {ctx.config_dir}. Run `appregkit refresh` (or `appregkit init`) first.")
        return 1
    if args.json:
        print(json.dumps([s.to_dict() for s in services], indent=2, default=str))
        return 0
    if not services:
        info(f"No services match {args.pattern!r}")
        return 0
    for svc in services:
        _print_service(svc)
    ok(f"{len(services)} service(s)")
    return 0


def cmd_lookup(ctx: CatalogContext, paths: Optional[CatalogPaths], args) -> int:
    _connect(ctx, args)
    records = ctx.query.find_live_services(args.prefix, limit=args.limit)
    for r in records:
        print(f"{colored(r.get('displayName') or '?', 'blue')} {r.get('appId')} ({r.get('publisherName') or 'unknown publisher'})")
    ok(f"{len(records)} live service principal(s)")
    return 0


def cmd_permission(ctx: CatalogContext, paths: Optional[CatalogPaths], args) -> int:
    found = ctx.query.find_permissions(args.name, kind=args.kind)
    if found is None:
        err(f"No catalog found in {ctx.config_dir}.")
        return 1
    if not found:
        info(f"No permissions match {args.name!r}")
        return 0
    for m in found:
        color = "red" if m.kind == APPLICATION else "cyan"
        print(f"{colored(m.kind, color)} `{m.definition.name}` {m.definition.id}")
        if m.definition.display_name:
            print_kv("DisplayName", m.definition.display_name)
        if m.kind == DELEGATED and m.definition.type:
            print_kv("Consent", m.definition.type)
        print_kv("Services", ", ".join(m.services) or "-")
    return 0


def cmd_convert(ctx: CatalogContext, paths: Optional[CatalogPaths], args) -> int:
    catalog = ctx.storage.convert_legacy_to_normalized(force=args.force)
    if catalog is None:
        err(f"No legacy catalog ({ctx.storage.legacy_path.name}) found in {ctx.config_dir}.")
        return 1
    ctx.cache.invalidate()
    ok(
        f"Converted {len(catalog.service_principals)} service principal(s) and "
        f"{len(catalog.definitions)} unique definition(s) to the normalized format"
    )
    return 0


def cmd_prefer(ctx: CatalogContext, paths: Optional[CatalogPaths], args) -> int:
    if args.format == "clear":
        if ctx.preference_store.clear():
            ok("Storage preference cleared")
        else:
            info("No stored storage preference")
        return 0
    ctx.preference_store.save(args.format == "normalized")
    pref = ctx.preference.resolve(force_recheck=True)
    ok(f"Storage preference saved; active format: {'normalized' if pref.use_normalized_storage else 'legacy'} ({pref.reason})")
    return 0


COMMANDS = {
    "paths": cmd_paths,
    "status": cmd_status,
    "init": cmd_init,
    "refresh": cmd_refresh,
    "find": cmd_find,
    "lookup": cmd_lookup,
    "permission": cmd_permission,
    "convert": cmd_convert,
    "prefer": cmd_prefer,
}


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        if args.config_dir:
            paths = None
            ctx = CatalogContext(Path(args.config_dir))
        else:
            paths = CatalogPaths()
            ctx = CatalogContext.from_paths(paths)
        return COMMANDS[args.command](ctx, paths, args)
    except ValueError as e:
        err(f"Error: {e}")
        return 2
    except AppRegKitError as e:
        err(str(e))
        return 1
    except OSError as e:
        err(f"Filesystem error: {e}")
        return 1
    except KeyboardInterrupt:
        err("Interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
