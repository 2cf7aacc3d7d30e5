"""Observability endpoints for loyalty telemetry and Prometheus metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from stampline_api.api.dependencies.security import require_admin_api_key
from stampline_api.observability.loyalty import get_loyalty_store


router = APIRouter(prefix="/observability", tags=["Observability"])


@router.get(
    "/loyalty",
    dependencies=[Depends(require_admin_api_key)],
    summary="Loyalty observability snapshot",
)
async def get_loyalty_snapshot() -> dict[str, object]:
    """Aggregated earn, redemption, and program counters (requires admin API key)."""
    return get_loyalty_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    dependencies=[Depends(require_admin_api_key)],
    summary="Prometheus-formatted observability metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    snapshot = get_loyalty_store().snapshot().as_dict()
    earns: dict[str, int] = snapshot.get("earns", {})
    redemptions: dict[str, int] = snapshot.get("redemptions", {})

    lines: list[str] = []
    lines.extend(_format_metric("stampline_loyalty_earn_attempts_total", "Earn attempts received", earns.get("total", 0)))
    lines.extend(
        _format_metric(
            "stampline_loyalty_earn_conflict_retries_total",
            "Earn critical sections retried after a version conflict",
            earns.get("retries", 0),
        )
    )
    for outcome, value in sorted(earns.items()):
        if outcome in {"total", "retries"}:
            continue
        lines.extend(
            _format_metric(
                "stampline_loyalty_earn_outcomes_total",
                "Earn attempts grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )

    lines.extend(
        _format_metric(
            "stampline_loyalty_redemption_attempts_total",
            "Redemption requests received",
            redemptions.get("total", 0),
        )
    )
    for outcome, value in sorted(redemptions.items()):
        if outcome == "total":
            continue
        lines.extend(
            _format_metric(
                "stampline_loyalty_redemption_outcomes_total",
                "Redemption requests grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )

    for event, value in sorted(snapshot.get("programs", {}).items()):
        lines.extend(
            _format_metric(
                "stampline_loyalty_program_events_total",
                "Program lifecycle and token rotation events",
                value,
                labels={"event": event},
            )
        )

    for outcome, value in sorted(snapshot.get("pass_sync", {}).items()):
        lines.extend(
            _format_metric(
                "stampline_loyalty_pass_sync_total",
                "Wallet pass field deliveries grouped by outcome",
                value,
                labels={"outcome": outcome},
            )
        )

    body = "\n".join(lines) + "\n"
    return PlainTextResponse(content=body, media_type="text/plain; version=0.0.4")
