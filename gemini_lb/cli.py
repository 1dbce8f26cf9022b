from __future__ import annotations

import argparse
import copy
import json
import os

import anyio
import uvicorn
import uvicorn.config

from gemini_lb.core.config.settings import Settings, get_settings


def _build_log_config(settings: Settings, *, verbose: bool = False) -> dict:
    # Uvicorn's default LOGGING_CONFIG does not attach handlers to the `gemini_lb.*` logger namespace.
    config = copy.deepcopy(uvicorn.config.LOGGING_CONFIG)
    loggers = config.setdefault("loggers", {})
    loggers["gemini_lb"] = {
        "handlers": ["default"],
        "level": "DEBUG" if verbose else "INFO",
        "propagate": False,
    }
    return config


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the gemini-lb API server.")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "2456")))
    parser.add_argument("--verbose", action="store_true", help="Log per-request balancer decisions.")

    subparsers = parser.add_subparsers(dest="command")

    load_test = subparsers.add_parser(
        "test-balancer",
        help="Run a dry-run synthetic load against an in-memory pool built from settings.",
    )
    load_test.add_argument("--count", type=int, default=10)
    load_test.add_argument("--model", default=None)

    subparsers.add_parser(
        "show-usage",
        help="Print the persisted per-key balancer state.",
    )

    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    settings = get_settings()

    if args.command is None:
        uvicorn.run(
            "gemini_lb.main:app",
            host=args.host,
            port=args.port,
            log_config=_build_log_config(settings, verbose=args.verbose),
            # Access logs are off by default; controlled via `GEMINI_LB_ACCESS_LOG_ENABLED`.
            access_log=settings.access_log_enabled,
        )
        return

    if args.command == "test-balancer":
        from gemini_lb.modules.balancer.load_test import run_synthetic_load
        from gemini_lb.modules.balancer.schemas import LoadTestResponse
        from gemini_lb.modules.balancer.service import build_key_balancer

        if not 1 <= args.count <= settings.load_test_max_count:
            raise SystemExit(f"--count must be between 1 and {settings.load_test_max_count}")
        balancer = build_key_balancer(settings)
        if balancer is None:
            raise SystemExit("No API keys configured; set GEMINI_LB_API_KEYS")

        async def _run_load_test() -> None:
            report = await run_synthetic_load(
                balancer,
                count=args.count,
                model=args.model or settings.default_model,
                dry_run=True,
            )
            response = LoadTestResponse.from_report(report)
            print(json.dumps(response.model_dump(mode="json", by_alias=True), indent=2))

        anyio.run(_run_load_test)
        return

    if args.command == "show-usage":
        from gemini_lb.core.balancer import short_key_id
        from gemini_lb.core.utils.time import epoch_iso
        from gemini_lb.db.session import close_db, init_db
        from gemini_lb.modules.balancer.persistence import PersistenceStore, repo_factory_for

        async def _show_usage() -> None:
            try:
                store = PersistenceStore(repo_factory_for(await init_db()))
                state = await store.load()
                if state is None:
                    print("no persisted balancer state")
                    return
                print(f"rr_index={state.rr_index} persisted_at={epoch_iso(state.persisted_at)}")
                for key in state.keys:
                    print(
                        f"key={short_key_id(key.key_id)} position={key.position} "
                        f"rpm={key.rpm_used} rpd={key.rpd_used} tpm={key.tpm_used} "
                        f"total_requests={key.total_requests} total_tokens={key.total_tokens} "
                        f"cooldown_until={epoch_iso(key.cooldown_until)}"
                    )
            finally:
                await close_db()

        anyio.run(_show_usage)
        return

    raise SystemExit(f"Unknown command: {args.command}")


if __name__ == "__main__":
    main()
