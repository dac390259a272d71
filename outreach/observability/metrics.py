from __future__ import annotations
from prometheus_client import Counter, Histogram, Gauge

ws_connections = Gauge("outreach_ws_connections", "Active event-stream WebSocket connections")
dispatches = Counter("outreach_dispatches_total", "Send requests by kind and outcome", ["kind", "outcome"])
fallback_attempts = Counter("outreach_fallback_attempts_total", "Secondary-transport retries", ["result"])
gateway_latency = Histogram("outreach_gateway_latency_seconds", "Gateway call latency seconds", ["endpoint"])
webhook_events = Counter("outreach_webhook_events_total", "Gateway webhook events", ["type", "result"])
broadcast_recipients = Counter("outreach_broadcast_recipients_total", "Broadcast recipients by outcome", ["outcome"])
store_errors = Counter("outreach_store_errors_total", "Swallowed persistence failures", ["op"])
