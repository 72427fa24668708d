"""
Tests for the Prometheus exporter.
"""

from routing_ledger.metrics import METRIC_HELP, MetricNames, PrometheusExporter


class TestExporter:

    def test_counters_accumulate_per_label_set(self):
        exporter = PrometheusExporter()
        exporter.inc_counter(MetricNames.EVENTS_RECORDED_TOTAL, 1, {"kind": "forward"})
        exporter.inc_counter(MetricNames.EVENTS_RECORDED_TOTAL, 2, {"kind": "forward"})
        exporter.inc_counter(MetricNames.EVENTS_RECORDED_TOTAL, 1, {"kind": "rebalance"})

        assert exporter.get_metric(MetricNames.EVENTS_RECORDED_TOTAL, {"kind": "forward"}) == 3
        assert exporter.get_metric(MetricNames.EVENTS_RECORDED_TOTAL, {"kind": "rebalance"}) == 1
        assert exporter.get_metric(MetricNames.EVENTS_RECORDED_TOTAL, {"kind": "invoice"}) is None

    def test_gauge_overwrites(self):
        exporter = PrometheusExporter()
        exporter.set_gauge(MetricNames.STREAM_CURSOR, 10, {"category": "forwards"})
        exporter.set_gauge(MetricNames.STREAM_CURSOR, 12, {"category": "forwards"})
        assert exporter.get_metric(MetricNames.STREAM_CURSOR, {"category": "forwards"}) == 12

    def test_text_format(self):
        exporter = PrometheusExporter()
        exporter.inc_counter(
            MetricNames.REPORT_RUNS_TOTAL, 1, {"trigger": "scheduled"},
            METRIC_HELP[MetricNames.REPORT_RUNS_TOTAL]
        )
        exporter.set_gauge(MetricNames.REPORT_LAST_SUCCESS_TIMESTAMP, 1704067200)

        text = exporter.format_prometheus()

        assert f"# HELP {MetricNames.REPORT_RUNS_TOTAL} Daily report computations by trigger" in text
        assert f"# TYPE {MetricNames.REPORT_RUNS_TOTAL} counter" in text
        assert f'{MetricNames.REPORT_RUNS_TOTAL}{{trigger="scheduled"}} 1' in text
        assert f"{MetricNames.REPORT_LAST_SUCCESS_TIMESTAMP} 1704067200" in text

    def test_not_running_until_started(self):
        assert PrometheusExporter().is_running() is False
