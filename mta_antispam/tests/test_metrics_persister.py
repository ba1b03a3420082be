from mta_antispam.check_types import Decision
from mta_antispam.decision_metrics import (
    DecisionMetrics,
    DecisionMetricsCollection,
    Meta,
)
from mta_antispam.metrics_persister import MetricsPersister


def test_roundtrip_metrics(tmp_path):
    metrics_db = tmp_path / "metrics.db"
    metrics = DecisionMetricsCollection(
        {
            Meta(domain="example.org"): DecisionMetrics(
                total_count=42,
                decision_counts={
                    Decision.ACCEPT: 30,
                    Decision.GREYLIST_DEFER: 8,
                    Decision.REJECT: 4,
                },
            ),
            Meta(domain="example.net"): DecisionMetrics(
                total_count=1, decision_counts={Decision.QUARANTINE: 1}
            ),
        }
    )

    persister = MetricsPersister(metrics_db)
    persister.save(metrics)
    assert persister.load() == metrics


def test_loads_stored_format(tmp_path):
    metrics_db = tmp_path / "metrics.db"
    metrics_db.write_text(
        '{"metrics": [[{"domain": "example.org"},'
        '{"total_count": 3, "decision_counts": {"accept": 2, "reject": 1}}]]}'
    )

    persister = MetricsPersister(metrics_db)
    assert persister.load() == DecisionMetricsCollection(
        {
            Meta(domain="example.org"): DecisionMetrics(
                total_count=3,
                decision_counts={Decision.ACCEPT: 2, Decision.REJECT: 1},
            )
        }
    )


def test_returns_newly_initialized_metrics_if_db_is_non_existent(tmp_path):
    metrics_db = tmp_path / "metrics.db"
    persister = MetricsPersister(metrics_db)
    assert persister.load() == DecisionMetricsCollection()
