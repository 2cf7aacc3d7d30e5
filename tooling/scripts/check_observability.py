#!/usr/bin/env python3
"""Quick health check for Stampline readiness and loyalty telemetry.

Usage:
    python tooling/scripts/check_observability.py \
        --base-url https://staging-api.example.com \
        --api-key "$ADMIN_API_KEY"

The script validates:
  * Readiness: the database component reports ready.
  * Earn telemetry: conflicts and version-conflict retries stay within thresholds.
  * Pass delivery: failed wallet pass updates stay within thresholds.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Dict, Optional

import httpx


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stampline observability checker")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Base URL of the Stampline API service.",
    )
    parser.add_argument(
        "--api-key",
        default=None,
        help="Admin API key (required for the loyalty observability endpoint).",
    )
    parser.add_argument(
        "--max-earn-conflicts",
        type=int,
        default=0,
        help="Maximum earns abandoned after repeated version conflicts (default: 0).",
    )
    parser.add_argument(
        "--max-earn-retry-ratio",
        type=float,
        default=0.05,
        help="Maximum ratio (0-1) of earn attempts that needed a conflict retry (default: 0.05).",
    )
    parser.add_argument(
        "--max-pass-sync-failures",
        type=int,
        default=0,
        help="Maximum failed wallet pass deliveries before failing (default: 0).",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="HTTP request timeout in seconds.",
    )
    return parser.parse_args()


async def _get_json(
    client: httpx.AsyncClient,
    path: str,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    response = await client.get(path, headers=headers)
    response.raise_for_status()
    return response.json()


def _fail(message: str) -> None:
    print(f"[check-observability] ❌ {message}")
    sys.exit(1)


def _log_ok(message: str) -> None:
    print(f"[check-observability] ✅ {message}")


async def validate_readiness(client: httpx.AsyncClient) -> None:
    payload = await _get_json(client, "/api/v1/health/readyz")
    database = payload.get("components", {}).get("database", {})
    if database.get("status") != "ready":
        _fail(f"Database component not ready ({database.get('detail') or database.get('status')})")
    _log_ok(f"Readiness OK (status={payload.get('status')})")


async def validate_loyalty(
    client: httpx.AsyncClient,
    api_key: Optional[str],
    max_conflicts: int,
    max_retry_ratio: float,
    max_pass_sync_failures: int,
) -> None:
    if not api_key:
        _log_ok("Skipping loyalty observability (no API key provided)")
        return

    payload = await _get_json(client, "/api/v1/observability/loyalty", headers={"X-API-Key": api_key})
    earns = payload.get("earns", {}) or {}
    pass_sync = payload.get("pass_sync", {}) or {}

    attempts = int(earns.get("total", 0))
    conflicts = int(earns.get("conflict", 0))
    retries = int(earns.get("retries", 0))
    sync_failures = int(pass_sync.get("failed", 0))

    if conflicts > max_conflicts:
        _fail(f"Earn conflicts {conflicts} exceed threshold {max_conflicts}")
    if attempts and retries / attempts > max_retry_ratio:
        _fail(
            "Earn retry ratio {:.1%} exceeds threshold {:.1%} (retries={}, attempts={})".format(
                retries / attempts, max_retry_ratio, retries, attempts
            )
        )
    if sync_failures > max_pass_sync_failures:
        _fail(f"Pass sync failures {sync_failures} exceed threshold {max_pass_sync_failures}")

    _log_ok(
        f"Loyalty observability OK (earn attempts={attempts}, earned={earns.get('earned', 0)}, "
        f"retries={retries}, pass sync failures={sync_failures})"
    )


async def main() -> None:
    args = parse_args()

    async with httpx.AsyncClient(base_url=args.base_url, timeout=args.timeout) as client:
        await validate_readiness(client)
        await validate_loyalty(
            client,
            api_key=args.api_key,
            max_conflicts=args.max_earn_conflicts,
            max_retry_ratio=args.max_earn_retry_ratio,
            max_pass_sync_failures=args.max_pass_sync_failures,
        )

    _log_ok("Observability checks completed successfully")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except httpx.HTTPStatusError as exc:
        _fail(f"HTTP {exc.response.status_code} while calling {exc.request.url}")
    except Exception as exc:  # pragma: no cover - best-effort logging
        _fail(f"Unexpected error: {exc}")
