import json
from pathlib import Path
from typing import Any, Dict, List

from dataclasses_serialization.json import JSONSerializer

from mta_antispam.check_types import Decision

from .decision_metrics import DecisionMetrics, DecisionMetricsCollection, Meta


# false positive, pylint: disable=no-value-for-parameter
@JSONSerializer.register_serializer(Decision)
def decision_serializer(decision: Decision) -> str:
    return decision.value


@JSONSerializer.register_serializer(DecisionMetricsCollection)
def decision_metrics_collection_serializer(
    metrics: DecisionMetricsCollection,
) -> Dict[str, List[Any]]:
    return JSONSerializer.serialize(
        {"metrics": [list(item) for item in metrics.items()]}
    )


@JSONSerializer.register_deserializer(Decision)
def decision_deserializer(_cls, obj: str) -> Decision:
    return Decision(obj)


@JSONSerializer.register_deserializer(DecisionMetricsCollection)
def decision_metrics_collection_deserializer(_cls, obj) -> DecisionMetricsCollection:
    return DecisionMetricsCollection(
        dict(
            (
                JSONSerializer.deserialize(Meta, meta),
                JSONSerializer.deserialize(DecisionMetrics, metrics),
            )
            for meta, metrics in obj.get("metrics", tuple())
        )
    )


class MetricsPersister:
    def __init__(self, path: Path):
        self.path = path

    def load(self) -> DecisionMetricsCollection:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return JSONSerializer.deserialize(
                    DecisionMetricsCollection, json.load(f)
                )
        except FileNotFoundError:
            return DecisionMetricsCollection()

    def save(self, metrics: DecisionMetricsCollection):
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(JSONSerializer.serialize(metrics), f)
