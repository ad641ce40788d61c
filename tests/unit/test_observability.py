"""
Unit Tests for Structured Logging and Metrics
"""
import json
import logging
import pytest
import sys
import os

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..', 'src'))

from ontology_engine.config import MetricsConfig
from ontology_engine.utils import (
    OntologyMetrics,
    clear_context,
    get_correlation_id,
    get_metrics_collector,
    log_context,
    log_operation,
    set_correlation_id,
)
from ontology_engine.utils.logging import ConsoleFormatter, StructuredFormatter, current_scope, get_logger


def make_record(msg="hello", extra_fields=None):
    record = logging.LogRecord("ontology_engine.test", logging.INFO, __file__, 10, msg, None, None)
    if extra_fields is not None:
        record.extra_fields = extra_fields
    return record


class TestLogScope:
    """Tests for thread-scoped log context"""

    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()

    def test_nested_scope_restored(self):
        with log_context(project_id="shop", dag_id="dag-1"):
            with log_context(node="FKDiscovery"):
                assert current_scope() == {"project_id": "shop", "dag_id": "dag-1", "node": "FKDiscovery"}
            assert current_scope() == {"project_id": "shop", "dag_id": "dag-1"}
        assert current_scope() == {}

    def test_unknown_field_rejected(self):
        with pytest.raises(ValueError):
            with log_context(table="orders"):
                pass

    def test_correlation_id(self):
        generated = set_correlation_id()
        assert get_correlation_id() == generated
        assert set_correlation_id("req-42") == "req-42"
        with log_context(workflow_id="wf-1"):
            assert get_correlation_id() == "req-42"


class TestFormatters:
    """Tests for JSON and console formatting"""

    def teardown_method(self):
        clear_context()

    def test_json_includes_scope_and_extra(self):
        with log_context(project_id="shop", dag_id="dag-1"):
            line = StructuredFormatter().format(make_record(extra_fields={"retry_count": 2}))
        entry = json.loads(line)
        assert entry["msg"] == "hello"
        assert entry["project_id"] == "shop"
        assert entry["dag_id"] == "dag-1"
        assert entry["retry_count"] == 2

    def test_console_prefix(self):
        with log_context(project_id="shop", dag_id="0123456789abcdef", node="GlossaryDiscovery"):
            line = ConsoleFormatter(use_color=False).format(make_record(extra_fields={"terms": 3}))
        assert "[dag:01234567] [node:GlossaryDiscovery] hello" in line
        assert "shop" not in line
        assert line.endswith("terms=3")


class TestLogOperation:
    """Tests for operation timing logs"""

    def test_success_and_failure(self, caplog):
        logger = get_logger("ontology_engine.test")
        with caplog.at_level(logging.INFO, logger="ontology_engine.test"):
            with log_operation(logger, "scan", table="orders") as ctx:
                ctx["columns"] = 3
            with pytest.raises(KeyError):
                with log_operation(logger, "join"):
                    raise KeyError("boom")

        completed = caplog.records[1]
        assert completed.getMessage() == "Completed scan"
        assert completed.extra_fields["columns"] == 3
        assert completed.extra_fields["status"] == "success"
        failed = caplog.records[-1]
        assert failed.levelname == "ERROR"
        assert failed.extra_fields["error_type"] == "KeyError"


class TestMetrics:
    """Tests for the metrics collector"""

    @pytest.fixture(autouse=True)
    def collector(self):
        collector = get_metrics_collector()
        collector.configure(MetricsConfig())
        collector.reset()
        yield collector
        collector.configure(MetricsConfig())
        collector.reset()

    def test_singleton(self, collector):
        assert get_metrics_collector() is collector

    def test_node_series(self, collector):
        OntologyMetrics.record_node("FKDiscovery", 0.02, "completed")
        OntologyMetrics.record_node("FKDiscovery", 0.3, "completed")
        OntologyMetrics.record_node_retry("FKDiscovery")

        assert collector.get_counter("dag_nodes_total", {"node": "FKDiscovery", "status": "completed"}) == 2
        assert collector.get_counter("dag_node_retries_total", {"node": "FKDiscovery"}) == 1
        hist = collector.get_histogram("dag_node_seconds", {"node": "FKDiscovery"})
        assert hist["count"] == 2
        assert hist["max"] == 0.3
        assert hist["p50"] == 0.05

    def test_token_counts_configurable(self, collector):
        collector.configure(MetricsConfig(include_token_counts=False))
        OntologyMetrics.record_llm_call(0.5, "mock-model", 100, 50)

        assert collector.get_counter("llm_calls_total", {"model": "mock-model", "outcome": "success"}) == 1
        assert collector.get_counter("llm_tokens_total", {"model": "mock-model", "direction": "input"}) == 0

    def test_disabled(self, collector):
        collector.configure(MetricsConfig(enabled=False))
        OntologyMetrics.record_rejection("wrong_direction")
        assert collector.get_counter("relationship_rejections_total", {"reason": "wrong_direction"}) == 0

    def test_prometheus_export(self, collector):
        OntologyMetrics.set_active_dags(2)
        OntologyMetrics.record_phase("phase1", 0.004, 10)

        text = collector.export_prometheus()

        assert "# TYPE dag_active gauge" in text
        assert "dag_active 2.0" in text
        assert 'feature_phase_items_total{phase="phase1"} 10.0' in text
        assert 'feature_phase_seconds_bucket{phase="phase1",le="0.005"} 1' in text
        assert 'feature_phase_seconds_bucket{phase="phase1",le="+Inf"} 1' in text
        assert 'feature_phase_seconds_count{phase="phase1"} 1' in text
