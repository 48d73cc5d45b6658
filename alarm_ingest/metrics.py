"""Métricas Prometheus del servicio de ingesta.

Expuestas en GET /metrics (ver api.py).
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

PAYLOADS_RECEIVED = Counter(
    'alarm_ingest_payloads_total',
    'Total raw payloads received from the ingestion source',
    ['status']  # processed, malformed, dropped, rejected
)

FALLBACK_TIMESTAMPS = Counter(
    'alarm_ingest_fallback_timestamps_total',
    'Payloads without ts that used wall-clock time',
)

READINGS_DISPATCHED = Counter(
    'alarm_ingest_readings_dispatched_total',
    'Normalized readings fanned out',
    ['metric']
)

SINK_FAILURES = Counter(
    'alarm_ingest_sink_failures_total',
    'Failed writes per sink',
    ['sink']  # current_state, history, alarm_history, alert
)

ALERTS_EMITTED = Counter(
    'alarm_ingest_alerts_total',
    'Alert events forwarded to the alert channel',
    ['metric', 'severity']
)

SOURCE_CONNECTED = Gauge(
    'alarm_ingest_source_connected',
    'Ingestion source connection status',
    ['source']
)

SOURCE_RECONNECTS = Counter(
    'alarm_ingest_source_reconnects_total',
    'Transport-level disconnects handled by the source',
    ['source']
)

PROCESSING_LATENCY = Histogram(
    'alarm_ingest_processing_seconds',
    'Time from dequeue to fan-out of one payload',
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0]
)
