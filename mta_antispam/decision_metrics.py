from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Dict, Iterator

from mta_antispam.check_types import Decision


@dataclass(frozen=True)
class Meta:
    domain: str


@dataclass
class DecisionMetrics:
    total_count: int = 0
    decision_counts: Dict[Decision, int] = field(default_factory=dict)

    def update(self, decision: Decision):
        self.total_count += 1
        if decision not in self.decision_counts:
            self.decision_counts[decision] = 0
        self.decision_counts[decision] += 1


@dataclass
class DecisionMetricsCollection(Mapping):
    metrics: Dict[Meta, DecisionMetrics] = field(default_factory=dict)

    def __getitem__(self, key: Meta) -> DecisionMetrics:
        return self.metrics[key]

    def __iter__(self) -> Iterator[Meta]:
        return iter(self.metrics)

    def __len__(self) -> int:
        return len(self.metrics)

    def update(self, meta: Meta, decision: Decision):
        if meta not in self.metrics:
            self.metrics[meta] = DecisionMetrics()
        self.metrics[meta].update(decision)
