from __future__ import annotations

import argparse
import copy
import os

import anyio
import uvicorn
import uvicorn.config

from switchboard.core.config.settings import Settings, get_settings


def _build_log_config(settings: Settings) -> dict:
    # Uvicorn's LOGGING_CONFIG leaves the `switchboard.*` namespace without handlers.
    config = copy.deepcopy(uvicorn.config.LOGGING_CONFIG)
    loggers = config.setdefault("loggers", {})
    loggers["switchboard"] = {
        "handlers": ["default"],
        "level": "DEBUG" if settings.debug_routing_logs else "INFO",
        "propagate": False,
    }
    return config


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the switchboard routing server.")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8964")))

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser(
        "accounts",
        help="List stored accounts per provider.",
    )
    cleanup = subparsers.add_parser(
        "cleanup-routing",
        help="Drop routing entries that reference accounts which no longer exist.",
    )
    cleanup.add_argument(
        "--dry-run",
        action="store_true",
        help="Print how many entries would be removed without rewriting the routing config.",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()

    if args.command is None:
        settings = get_settings()
        uvicorn.run(
            "switchboard.main:app",
            host=args.host,
            port=args.port,
            log_config=_build_log_config(settings),
            access_log=settings.access_log_enabled,
        )
        return

    from switchboard.main import build_services

    if args.command == "accounts":
        services = build_services()
        for provider, summaries in services.routing.list_accounts().items():
            print(f"{provider} count={len(summaries)}")
            for summary in summaries:
                state = "disabled" if summary.disabled else "active"
                print(f"  {summary.id} {summary.display_name} {state}")
        return

    if args.command == "cleanup-routing":
        services = build_services()

        if args.dry_run:
            removed = services.routing.count_stale_entries()
            print(f"removed={removed} dry_run=true")
            return

        async def _run() -> None:
            result = await services.routing.cleanup_stale()
            print(f"removed={result.removed_count}")

        anyio.run(_run)
        return

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
