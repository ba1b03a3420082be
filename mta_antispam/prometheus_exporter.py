import threading
from contextlib import contextmanager
from typing import Any, Callable, Generator, Optional, Tuple

import uvicorn
from prometheus_client.core import REGISTRY, CounterMetricFamily, GaugeMetricFamily
from prometheus_client.exposition import make_asgi_app

import mta_antispam
from mta_antispam.check_types import Decision
from mta_antispam.decision_metrics import DecisionMetricsCollection


class Server:
    def __init__(self, exporter: "PrometheusExporter", listen_addr: str, port: int):
        self.exporter = exporter
        config = uvicorn.Config(
            make_asgi_app(), host=listen_addr, port=port, log_config=None
        )
        self.server = uvicorn.Server(config)
        self.host = config.host
        self.port = port
        self._main_loop = None

    async def __aenter__(self):
        REGISTRY.register(self.exporter)
        config = self.server.config
        if not config.loaded:
            config.load()
        self.server.lifespan = config.lifespan_class(config)
        await self.server.startup()
        self._main_loop = self.server.main_loop()
        return self

    async def __aexit__(self, exc_type, exc, traceback):
        self.server.should_exit = True
        await self._main_loop
        self._main_loop = None
        await self.server.shutdown()
        REGISTRY.unregister(self.exporter)


class PrometheusExporter:
    LABELS = ("domain",)
    DECISION_METRICS = (
        (Decision.ACCEPT, "antispam_accepted_total", "Total number of accepted messages."),
        (
            Decision.GREYLIST_DEFER,
            "antispam_greylisted_total",
            "Total number of messages deferred by greylisting.",
        ),
        (
            Decision.QUARANTINE,
            "antispam_quarantined_total",
            "Total number of quarantined messages.",
        ),
        (Decision.REJECT, "antispam_rejected_total", "Total number of rejected messages."),
    )

    def __init__(
        self,
        metrics: DecisionMetricsCollection,
        greylist_size: Optional[Callable[[], int]] = None,
    ):
        self._metrics_lock = threading.Lock()
        self._metrics = metrics
        self._greylist_size = greylist_size

    def start_server(self, listen_addr="127.0.0.1", port=9797) -> Server:
        return Server(self, listen_addr, port)

    @contextmanager
    def get_metrics(self) -> Generator[DecisionMetricsCollection, None, None]:
        with self._metrics_lock:
            yield self._metrics

    def collect(self) -> Tuple[Any, ...]:
        build_info = GaugeMetricFamily(
            "mta_antispam_build_info",
            "A metric with a constant '1' value labeled by version of mta-antispam.",
            labels=("version",),
        )
        build_info.add_metric((mta_antispam.__version__,), 1.0)

        checks_total = CounterMetricFamily(
            "antispam_checks_total", "Total number of checked messages.", labels=self.LABELS
        )
        decision_totals = [
            (decision, CounterMetricFamily(name, documentation, labels=self.LABELS))
            for decision, name, documentation in self.DECISION_METRICS
        ]

        with self._metrics_lock:
            for meta, metrics in self._metrics.items():
                labels = (meta.domain,)
                checks_total.add_metric(labels, metrics.total_count)
                for decision, family in decision_totals:
                    family.add_metric(labels, metrics.decision_counts.get(decision, 0))

        families: Tuple[Any, ...] = (
            build_info,
            checks_total,
            *(family for _, family in decision_totals),
        )
        if self._greylist_size is not None:
            greylist_entries = GaugeMetricFamily(
                "antispam_greylist_entries", "Number of tracked greylist tuples."
            )
            greylist_entries.add_metric((), self._greylist_size())
            families += (greylist_entries,)
        return families
