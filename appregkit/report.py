from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from appregkit.console import ok, print_kv, print_section


TOOL_NAME = "AppRegKit"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return fmt_utc_z(utc_now())


def fmt_utc_z(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_iso_dt(s: Any) -> Optional[datetime]:
    if not isinstance(s, str) or not s.strip():
        return None
    try:
        dt = datetime.fromisoformat(s.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class RefreshSummary:
    services: int = 0
    skipped_services: int = 0
    application_mappings: int = 0
    delegated_mappings: int = 0
    unique_application_definitions: int = 0
    unique_delegated_definitions: int = 0
    pages: int = 0

    @property
    def unique_definitions(self) -> int:
        return self.unique_application_definitions + self.unique_delegated_definitions


def build_refresh_report(
    *,
    summary: RefreshSummary,
    config_dir: str,
    include_builtin_service: bool,
    include_custom_apis: bool,
    wrote_legacy: bool,
) -> dict:
    counts = asdict(summary)
    counts["unique_definitions"] = summary.unique_definitions
    return {
        "tool": TOOL_NAME,
        "generated_at": utc_now_iso(),
        "config_dir": config_dir,
        "configuration": {
            "include_builtin_service": include_builtin_service,
            "include_custom_apis": include_custom_apis,
        },
        "wrote_legacy": wrote_legacy,
        "summary": counts,
    }


def print_refresh_summary(summary: RefreshSummary) -> None:
    ok("Permission catalog refreshed")
    print_section("Summary")
    print_kv("Service principals", summary.services)
    print_kv("Skipped by inclusion policy", summary.skipped_services)
    print_kv("Application permission references", summary.application_mappings)
    print_kv("Delegated permission references", summary.delegated_mappings)
    print_kv(
        "Unique definitions",
        f"{summary.unique_definitions} "
        f"(application: {summary.unique_application_definitions}, delegated: {summary.unique_delegated_definitions})",
    )
    print_kv("Pages fetched", summary.pages)
