from __future__ import annotations

from dataclasses import dataclass
from typing import Final, Literal

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

_PROM_CONTENT_TYPE: Final[str] = "text/plain; version=0.0.4; charset=utf-8"

ChatRequestOutcome = Literal["success", "rate_limited", "exhausted", "invalid_request", "error"]
AttemptResult = Literal["success", "rate_limited", "account_rejected", "transient", "timeout", "pool_contention"]


@dataclass(slots=True)
class ChatRequestObservation:
    outcome: ChatRequestOutcome
    model: str | None
    stream: bool
    latency_ms: int | None
    attempts: int
    account_id: str | None = None


class Metrics:
    def __init__(self, *, registry: CollectorRegistry | None = None) -> None:
        self._registry = registry or CollectorRegistry(auto_describe=True)

        self._chat_requests_total = Counter(
            "gateway_chat_requests_total",
            "Total chat completion requests by outcome.",
            labelnames=("outcome", "model", "stream"),
            registry=self._registry,
        )
        self._chat_latency_ms = Histogram(
            "gateway_chat_latency_ms",
            "Chat completion latency in milliseconds, account selection through transcoding.",
            labelnames=("outcome",),
            buckets=(100, 250, 500, 1_000, 2_000, 5_000, 10_000, 30_000, 60_000, 120_000, 240_000),
            registry=self._registry,
        )
        self._chat_attempts_total = Counter(
            "gateway_chat_attempts_total",
            "Upstream attempts by result class.",
            labelnames=("result",),
            registry=self._registry,
        )
        self._chat_account_requests_total = Counter(
            "gateway_chat_account_requests_total",
            "Successful chat completions by serving account.",
            labelnames=("account_id",),
            registry=self._registry,
        )
        self._accounts_disabled_total = Counter(
            "gateway_accounts_disabled_total",
            "Accounts marked unavailable after the upstream rejected their credentials.",
            registry=self._registry,
        )
        self._pool_select_conflicts_total = Counter(
            "gateway_pool_select_conflicts_total",
            "Round-robin cursor updates lost to a concurrent selection or availability change.",
            registry=self._registry,
        )
        self._image_artifacts_total = Counter(
            "gateway_image_artifacts_total",
            "Generated images resolved, by storage kind.",
            labelnames=("storage",),
            registry=self._registry,
        )
        self._image_failures_total = Counter(
            "gateway_image_failures_total",
            "Generated images skipped because resolving them failed.",
            registry=self._registry,
        )
        self._accounts = Gauge(
            "gateway_accounts",
            "Pooled accounts by availability, refreshed on scrape.",
            labelnames=("state",),
            registry=self._registry,
        )

    @property
    def content_type(self) -> str:
        return _PROM_CONTENT_TYPE

    def render(self) -> bytes:
        return generate_latest(self._registry)

    def observe_chat_request(self, obs: ChatRequestObservation) -> None:
        model = obs.model or "unknown"
        self._chat_requests_total.labels(outcome=obs.outcome, model=model, stream=str(obs.stream).lower()).inc()
        if obs.latency_ms is not None and obs.latency_ms >= 0:
            self._chat_latency_ms.labels(outcome=obs.outcome).observe(float(obs.latency_ms))
        if obs.outcome == "success" and obs.account_id:
            self._chat_account_requests_total.labels(account_id=obs.account_id).inc()

    def observe_chat_attempt(self, result: AttemptResult) -> None:
        self._chat_attempts_total.labels(result=result).inc()

    def observe_account_disabled(self) -> None:
        self._accounts_disabled_total.inc()

    def observe_pool_conflict(self) -> None:
        self._pool_select_conflicts_total.inc()

    def observe_image_artifact(self, storage: Literal["upload", "cache"]) -> None:
        self._image_artifacts_total.labels(storage=storage).inc()

    def observe_image_failure(self) -> None:
        self._image_failures_total.inc()

    def refresh_account_gauges(self, *, available: int, unavailable: int) -> None:
        self._accounts.labels(state="available").set(available)
        self._accounts.labels(state="unavailable").set(unavailable)
