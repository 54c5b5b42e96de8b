"""Tests for the metrics and health check HTTP endpoints."""

import json
from urllib.request import urlopen

from prometheus_client import CONTENT_TYPE_LATEST

from script_exporter import (
    CollectionResult, CollectionStats, ExporterMetrics, ExpositionRenderer,
    HealthCheck, MetricsServer, ResultCache
)

# Fixtures imported from conftest.py: config, logger


def call_app(app, path):
    captured = {}

    def start_response(status, headers):
        captured["status"] = status
        captured["headers"] = dict(headers)

    body = b"".join(app({"PATH_INFO": path, "REQUEST_METHOD": "GET"}, start_response))
    return captured["status"], captured["headers"], body


class TestMetricsServer:
    """The script exposition endpoint."""

    def test_renders_cache_on_request(self, config, logger):
        cache = ResultCache()
        server = MetricsServer(config, cache, ExpositionRenderer(), logger)

        status, headers, body = call_app(server.wsgi_app, "/metrics")
        assert status == "200 OK"
        assert body == b""

        cache.put("a.sh", CollectionResult(metric_lines=("a 1",)))
        status, headers, body = call_app(server.wsgi_app, "/metrics")

        assert headers["Content-Type"] == CONTENT_TYPE_LATEST
        assert headers["Content-Length"] == str(len(body))
        assert body.decode().endswith("a 1\n")

    def test_non_utf8_output_served_unchanged(self, config, logger):
        cache = ResultCache()
        line = b'host_info{name="caf\xe9"} 1'.decode("utf-8", "surrogateescape")
        cache.put("latin1.sh", CollectionResult(metric_lines=(line, "b 2")))
        server = MetricsServer(config, cache, ExpositionRenderer(), logger)

        status, _, body = call_app(server.wsgi_app, "/metrics")

        assert status == "200 OK"
        assert body.endswith(b'host_info{name="caf\xe9"} 1\nb 2\n')

    def test_uses_library_threading_server(self):
        from prometheus_client.exposition import ThreadingWSGIServer
        import script_exporter

        assert script_exporter.ThreadingWSGIServer is ThreadingWSGIServer

    def test_other_paths_not_found(self, config, logger):
        server = MetricsServer(config, ResultCache(), ExpositionRenderer(), logger)

        status, _, _ = call_app(server.wsgi_app, "/")

        assert status == "404 Not Found"

    def test_custom_metrics_path(self, make_config, logger):
        config = make_config(metrics_path="/scripts/metrics")
        server = MetricsServer(config, ResultCache(), ExpositionRenderer(), logger)

        assert call_app(server.wsgi_app, "/scripts/metrics")[0] == "200 OK"
        assert call_app(server.wsgi_app, "/metrics")[0] == "404 Not Found"

    def test_serves_over_http(self, config, logger):
        cache = ResultCache()
        cache.put("http.sh", CollectionResult(metric_lines=("http_metric 1",)))
        server = MetricsServer(config, cache, ExpositionRenderer(), logger)

        assert server.start()
        try:
            with urlopen(f"http://127.0.0.1:{server.server_port}/metrics", timeout=5) as response:
                body = response.read().decode()
                content_type = response.headers["Content-Type"]
        finally:
            server.stop()

        assert not server.running
        assert content_type == CONTENT_TYPE_LATEST
        assert 'script_name="http.sh"' in body
        assert "http_metric 1\n" in body


class TestHealthCheck:
    """Health endpoint and exporter self-metrics."""

    def make_health_check(self, config, logger):
        cache = ResultCache()
        stats = CollectionStats()
        return HealthCheck(config, cache, stats, ExporterMetrics(), logger)

    def test_unhealthy_before_first_cycle(self, config, logger):
        health_check = self.make_health_check(config, logger)

        status, headers, body = call_app(health_check.wsgi_app, "/health")

        assert status == "503 Service Unavailable"
        assert headers["Content-Type"] == "application/json"
        assert json.loads(body)["service"]["status"] == "unhealthy"

    def test_healthy_report(self, config, logger):
        health_check = self.make_health_check(config, logger)
        health_check.stats.cycles = 1
        health_check.stats.runs_started = 3
        health_check.stats.runs_completed = 2
        health_check.cache.put("a.sh", CollectionResult())

        status, _, body = call_app(health_check.wsgi_app, "/health")
        report = json.loads(body)

        assert status == "200 OK"
        assert report["service"]["status"] == "healthy"
        assert report["stats"]["collection"]["in_flight"] == 1
        assert report["stats"]["collection"]["cached_scripts"] == 1
        assert report["stats"]["configuration"]["scripts_path"] == str(config.scripts_path)

    def test_self_metrics(self, config, logger):
        health_check = self.make_health_check(config, logger)
        health_check.metrics.cycles.inc()
        health_check.metrics.runs.labels(outcome="success").inc()
        health_check.cache.put("a.sh", CollectionResult())

        status, headers, body = call_app(health_check.wsgi_app, "/metrics")
        text = body.decode()

        assert status == "200 OK"
        assert headers["Content-Type"] == CONTENT_TYPE_LATEST
        assert "script_exporter_refresh_cycles_total 1.0" in text
        assert 'script_exporter_script_runs_total{outcome="success"} 1.0' in text
        assert "script_exporter_cached_scripts 1.0" in text
        assert "script_exporter_uptime_seconds" in text

    def test_unknown_path(self, config, logger):
        health_check = self.make_health_check(config, logger)

        status, _, body = call_app(health_check.wsgi_app, "/nope")

        assert status == "404 Not Found"
        assert json.loads(body)["error"] == "Not Found"
