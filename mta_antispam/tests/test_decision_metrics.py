from mta_antispam.check_types import Decision
from mta_antispam.decision_metrics import (
    DecisionMetrics,
    DecisionMetricsCollection,
    Meta,
)


def test_decision_metrics_update():
    metrics = DecisionMetrics()
    metrics.update(Decision.ACCEPT)
    metrics.update(Decision.ACCEPT)
    metrics.update(Decision.REJECT)
    assert metrics == DecisionMetrics(
        total_count=3,
        decision_counts={Decision.ACCEPT: 2, Decision.REJECT: 1},
    )


def test_decision_metrics_collection_update():
    metrics_collector = DecisionMetricsCollection({})
    meta = Meta(domain="example.org")
    metrics_collector.update(meta, Decision.GREYLIST_DEFER)
    assert metrics_collector.metrics == {
        meta: DecisionMetrics(
            total_count=1, decision_counts={Decision.GREYLIST_DEFER: 1}
        )
    }
    assert list(metrics_collector) == [meta]
    assert len(metrics_collector) == 1
