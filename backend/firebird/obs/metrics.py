"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

REQUEST_COUNTER = Counter(
	"firebird_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"firebird_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"firebird_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"firebird_socketio_events_total",
	"Socket.IO events handled or emitted per namespace",
	["namespace", "event"],
)

CHAT_SEND = Counter(
	"firebird_chat_send_total",
	"Chat send attempts by outcome",
	["result"],
)

CHAT_REALTIME_EVENTS = Counter(
	"firebird_chat_realtime_events_total",
	"Realtime message inserts observed by sessions, by merge outcome",
	["outcome"],
)

CHAT_STALE_FETCHES = Counter(
	"firebird_chat_stale_fetches_total",
	"History fetches discarded because the selected chat changed",
)

CHAT_SUBSCRIPTIONS = Gauge(
	"firebird_chat_realtime_subscriptions",
	"Active realtime subscriptions",
)

CHAT_RESUBSCRIBES = Counter(
	"firebird_chat_resubscribes_total",
	"Realtime resubscriptions triggered by chat-id set changes",
)

CHAT_REALTIME_FAILURES = Counter(
	"firebird_chat_realtime_failures_total",
	"Realtime subscription failures by phase",
	["phase"],
)

CHAT_REACTION_TOGGLES = Counter(
	"firebird_chat_reaction_toggles_total",
	"Reaction toggles by outcome",
	["result"],
)

CHAT_REPOSITORY_ERRORS = Counter(
	"firebird_chat_repository_errors_total",
	"Repository failures by operation",
	["operation"],
)

REDIS_UP = Gauge("firebird_redis_up", "Redis readiness")
POSTGRES_UP = Gauge("firebird_postgres_up", "Postgres readiness")


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_chat_send(result: str) -> None:
	CHAT_SEND.labels(result=result).inc()


def inc_realtime_event(outcome: str) -> None:
	CHAT_REALTIME_EVENTS.labels(outcome=outcome).inc()


def inc_stale_fetch() -> None:
	CHAT_STALE_FETCHES.inc()


def subscription_opened() -> None:
	CHAT_SUBSCRIPTIONS.inc()


def subscription_closed() -> None:
	CHAT_SUBSCRIPTIONS.dec()


def inc_resubscribe() -> None:
	CHAT_RESUBSCRIBES.inc()


def inc_realtime_failure(phase: str) -> None:
	CHAT_REALTIME_FAILURES.labels(phase=phase).inc()


def inc_reaction_toggle(result: str) -> None:
	CHAT_REACTION_TOGGLES.labels(result=result).inc()


def inc_repository_error(operation: str) -> None:
	CHAT_REPOSITORY_ERRORS.labels(operation=operation).inc()


def mark_redis(ok: bool) -> None:
	REDIS_UP.set(1 if ok else 0)


def mark_postgres(ok: bool) -> None:
	POSTGRES_UP.set(1 if ok else 0)
