# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Prometheus metrics for monitoring the delivery pipeline.

All metrics use the ``mox_`` prefix (mail-outbox).

Metrics exposed:
    - ``mox_sent_total``: Messages delivered and recorded as sent.
    - ``mox_failed_attempts_total``: Failed delivery attempts.
    - ``mox_discarded_total``: Messages given up after exhausting attempts.
    - ``mox_recovered_total``: Messages re-queued from the ledger at startup.
    - ``mox_ledger_errors_total``: Ledger updates that failed during delivery.
    - ``mox_queue_size``: Messages currently waiting in memory.
"""

from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest


class OutboxMetrics:
    """Prometheus metrics collector for the mail outbox.

    Attributes:
        registry: The Prometheus CollectorRegistry holding all metrics.
    """

    def __init__(self, registry: CollectorRegistry | None = None):
        """Initialize metrics with an optional custom registry.

        Args:
            registry: Optional Prometheus CollectorRegistry. A private registry
                is created when omitted, so several outboxes can coexist.
        """
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("mox_sent_total", "Total delivered messages", registry=self.registry)
        self.failed_attempts = Counter(
            "mox_failed_attempts_total", "Total failed delivery attempts", registry=self.registry
        )
        self.discarded = Counter(
            "mox_discarded_total", "Total messages given up after max attempts", registry=self.registry
        )
        self.recovered = Counter(
            "mox_recovered_total", "Total messages resumed from the ledger", registry=self.registry
        )
        self.ledger_errors = Counter(
            "mox_ledger_errors_total", "Total failed ledger updates during delivery", registry=self.registry
        )
        self.queue_size = Gauge("mox_queue_size", "Messages waiting in memory", registry=self.registry)

    def inc_sent(self) -> None:
        self.sent.inc()

    def inc_failed_attempt(self) -> None:
        self.failed_attempts.inc()

    def inc_discarded(self) -> None:
        self.discarded.inc()

    def inc_recovered(self, count: int = 1) -> None:
        self.recovered.inc(count)

    def inc_ledger_error(self) -> None:
        self.ledger_errors.inc()

    def set_queue_size(self, value: int) -> None:
        self.queue_size.set(value)

    def generate_latest(self) -> bytes:
        """Export all metrics in Prometheus text exposition format."""
        return generate_latest(self.registry)
