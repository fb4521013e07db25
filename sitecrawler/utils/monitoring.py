"""
Monitoring and metrics collection for the crawler workers.
"""

import logging
import time
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class MetricsCollector:
    """Owns the Prometheus metrics of one worker process."""

    def __init__(self, enable_prometheus: bool = False, prometheus_port: int = 8000,
                 registry: Optional[CollectorRegistry] = None):
        self.logger = logging.getLogger(__name__)
        self.enable_prometheus = enable_prometheus
        self.prometheus_port = prometheus_port
        self.registry = registry or CollectorRegistry()

        self.messages_consumed = Counter(
            'crawler_messages_consumed_total',
            'Messages pulled from the queue',
            ['topic'],
            registry=self.registry
        )
        self.messages_dropped = Counter(
            'crawler_messages_dropped_total',
            'Messages dropped without retry',
            ['reason'],
            registry=self.registry
        )
        self.fetches = Counter(
            'crawler_fetches_total',
            'Page fetch attempts by result',
            ['result'],
            registry=self.registry
        )
        self.fetch_duration = Histogram(
            'crawler_fetch_duration_seconds',
            'Time spent fetching a page',
            registry=self.registry
        )
        self.upserts = Counter(
            'crawler_upserts_total',
            'Upsert-if-changed outcomes',
            ['outcome'],
            registry=self.registry
        )
        self.retries = Counter(
            'crawler_retries_total',
            'Fetches scheduled for retry',
            registry=self.registry
        )
        self.dead_letters = Counter(
            'crawler_dead_letters_total',
            'Messages sent to the dead letter topic',
            registry=self.registry
        )
        self.links_published = Counter(
            'crawler_links_published_total',
            'Links pushed back onto the fetch topic',
            registry=self.registry
        )
        self.pages_processed = Counter(
            'crawler_pages_processed_total',
            'Pages run through link and text extraction',
            ['result'],
            registry=self.registry
        )
        self.queue_depth = Gauge(
            'crawler_queue_depth',
            'Messages waiting per topic',
            ['topic'],
            registry=self.registry
        )

    def start_server(self):
        """Start the Prometheus metrics HTTP server if enabled."""
        if not self.enable_prometheus:
            return
        start_http_server(self.prometheus_port, registry=self.registry)
        self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")

    def value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Current value of a sample, 0 if it was never recorded."""
        result = self.registry.get_sample_value(name, labels or {})
        return result if result is not None else 0.0


class CrawlerMonitor:
    """High-level monitoring interface for the workers."""

    def __init__(self, metrics_collector: MetricsCollector):
        self.metrics = metrics_collector
        self.start_time = time.time()

    def record_consumed(self, topic: str, count: int = 1):
        self.metrics.messages_consumed.labels(topic=topic).inc(count)

    def record_dropped(self, reason: str):
        self.metrics.messages_dropped.labels(reason=reason).inc()

    def record_fetch(self, success: bool, fetch_time: float):
        self.metrics.fetches.labels(result='success' if success else 'transient_failure').inc()
        self.metrics.fetch_duration.observe(fetch_time)

    def record_upsert(self, outcome: str):
        self.metrics.upserts.labels(outcome=outcome).inc()

    def record_retry(self):
        self.metrics.retries.inc()

    def record_dead_letter(self):
        self.metrics.dead_letters.inc()

    def record_link_published(self):
        self.metrics.links_published.inc()

    def record_page_processed(self, result: str):
        self.metrics.pages_processed.labels(result=result).inc()

    def update_queue_depth(self, topic: str, depth: int):
        self.metrics.queue_depth.labels(topic=topic).set(depth)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of the main counters."""
        runtime = time.time() - self.start_time
        fetched = self.metrics.value('crawler_fetches_total', {'result': 'success'})
        return {
            'runtime_seconds': runtime,
            'fetched': fetched,
            'links_published': self.metrics.value('crawler_links_published_total'),
            'dead_letters': self.metrics.value('crawler_dead_letters_total'),
            'fetches_per_second': fetched / runtime if runtime > 0 else 0,
        }


def initialize_monitoring(enable_prometheus: bool = False, prometheus_port: int = 8000) -> CrawlerMonitor:
    """Create the monitor for this process and start its metrics server."""
    metrics_collector = MetricsCollector(enable_prometheus, prometheus_port)
    metrics_collector.start_server()
    return CrawlerMonitor(metrics_collector)
