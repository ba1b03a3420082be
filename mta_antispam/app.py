import argparse
import asyncio
import json
from asyncio import CancelledError
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, Tuple

import structlog

from mta_antispam.check_types import CheckRequest, CheckResult, ConfigurationError
from mta_antispam.decision_metrics import DecisionMetricsCollection, Meta
from mta_antispam.dkim import DkimSigner
from mta_antispam.engine import Engine
from mta_antispam.greylist import GreylistConfig, GreylistStore
from mta_antispam.logging import configure_logging
from mta_antispam.metrics_persister import MetricsPersister
from mta_antispam.prometheus_exporter import PrometheusExporter
from mta_antispam.ratelimit import BucketConfig, RateLimiter
from mta_antispam.resolver import DnsResolver
from mta_antispam.scoring import ScoreWeights, Thresholds

logger = structlog.get_logger()

CONFIGURATION_KEYS = frozenset(
    (
        "listen_addr",
        "port",
        "storage_path",
        "logging",
        "dns",
        "check_timeout_seconds",
        "spf_max_dns_lookups",
        "greylist",
        "greylist_authenticated_exempt",
        "rate_limit",
        "weights",
        "legacy_weights",
        "thresholds",
        "dkim",
        "autosave_interval_seconds",
        "maintenance_interval_seconds",
        "rate_limit_idle_seconds",
    )
)


def main(argv: Optional[Sequence[str]] = None):
    parser = argparse.ArgumentParser(
        description="Decide whether inbound mail is accepted, greylisted, "
        "quarantined or rejected based on SPF, DKIM, DMARC, greylisting and "
        "rate limits, and provide a Prometheus endpoint for the decisions taken."
    )
    parser.add_argument(
        "--configuration",
        type=argparse.FileType("r"),
        default="/etc/mta-antispam.json",
        help="Configuration file",
    )
    parser.add_argument(
        "--debug",
        default=False,
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args(argv)

    configuration = json.load(args.configuration)
    args.configuration.close()

    configure_logging(configuration.get("logging", {}), debug=args.debug)

    storage_path = Path(configuration.get("storage_path", "/var/lib/mta-antispam"))
    greylist_db = storage_path / "greylist.db"
    greylist_config = _section(configuration, "greylist", GreylistConfig)
    if greylist_db.exists():
        greylist = GreylistStore.load(greylist_db, greylist_config)
    else:
        greylist = GreylistStore(greylist_config)

    app = App(
        prometheus_addr=(
            configuration.get("listen_addr", "127.0.0.1"),
            configuration.get("port", 9797),
        ),
        engine=build_engine(configuration, greylist),
        metrics_persister=MetricsPersister(storage_path / "metrics.db"),
        autosave_interval_seconds=configuration.get("autosave_interval_seconds", 60),
        maintenance_interval_seconds=configuration.get(
            "maintenance_interval_seconds", 60
        ),
        rate_limit_idle_seconds=configuration.get("rate_limit_idle_seconds", 60 * 60),
        greylist_db=greylist_db,
    )

    asyncio.run(app.run())


def _section(configuration: Dict[str, Any], key: str, cls: Callable[..., Any]) -> Any:
    try:
        return cls(**configuration.get(key, {}))
    except TypeError as err:
        raise ConfigurationError(f"Invalid '{key}' configuration: {err}") from err


def build_engine(
    configuration: Dict[str, Any], greylist: Optional[GreylistStore] = None
) -> Engine:
    """Create an engine from the parsed configuration file.

    Raises :class:`ConfigurationError` for unknown keys and invalid values.
    """
    unknown = set(configuration) - CONFIGURATION_KEYS
    if unknown:
        raise ConfigurationError(
            f"Unknown configuration keys: {', '.join(sorted(unknown))}."
        )

    rate_limit = dict(configuration.get("rate_limit", {}))
    unknown = set(rate_limit) - {"ip", "identity"}
    if unknown:
        raise ConfigurationError(
            f"Unknown rate_limit keys: {', '.join(sorted(unknown))}."
        )
    limiters = {}
    for key in ("ip", "identity"):
        if key in rate_limit and rate_limit[key] is None:
            limiters[key] = None
            continue
        try:
            limiters[key] = RateLimiter(_section(rate_limit, key, BucketConfig))
        except ValueError as err:
            raise ConfigurationError(str(err)) from err

    dkim = dict(configuration.get("dkim", {}))
    require_signer = dkim.pop("required", False)
    signer = None
    if "private_key_path" in dkim:
        try:
            signer = DkimSigner.from_pem_file(
                dkim.pop("private_key_path"),
                dkim.pop("domain"),
                dkim.pop("selector", "default"),
            )
        except KeyError as err:
            raise ConfigurationError("DKIM signing requires a domain.") from err
    if dkim:
        raise ConfigurationError(f"Unknown dkim keys: {', '.join(sorted(dkim))}.")

    legacy_weights = None
    if "legacy_weights" in configuration:
        legacy_weights = _section(configuration, "legacy_weights", ScoreWeights)

    return Engine(
        resolver=_section(configuration, "dns", DnsResolver),
        greylist=greylist,
        ip_limiter=limiters["ip"],
        identity_limiter=limiters["identity"],
        weights=_section(configuration, "weights", ScoreWeights),
        legacy_weights=legacy_weights,
        thresholds=_section(configuration, "thresholds", Thresholds),
        signer=signer,
        require_signer=require_signer,
        check_timeout_seconds=configuration.get("check_timeout_seconds", 10.0),
        spf_max_dns_lookups=configuration.get("spf_max_dns_lookups", 10),
        greylist_authenticated_exempt=configuration.get(
            "greylist_authenticated_exempt", False
        ),
    )


class App:
    """Hosts an :class:`Engine` for an embedding SMTP server.

    Connection handlers call :meth:`check` or :meth:`check_legacy`, while
    :meth:`run` serves the metrics, expires state and saves it to disk.
    """

    # pylint: disable=too-many-instance-attributes,too-many-arguments
    def __init__(
        self,
        *,
        prometheus_addr: Tuple[str, int],
        engine: Engine,
        metrics_persister: MetricsPersister,
        exporter_cls: Callable[..., Any] = PrometheusExporter,
        autosave_interval_seconds: Optional[float] = 60,
        maintenance_interval_seconds: Optional[float] = 60,
        rate_limit_idle_seconds: float = 60 * 60,
        greylist_db: Optional[Path] = None,
    ):
        self.prometheus_addr = prometheus_addr
        self.engine = engine
        self.exporter_cls = exporter_cls
        self.exporter = self._create_exporter(DecisionMetricsCollection())
        self.metrics_persister = metrics_persister
        self.autosave_interval_seconds = autosave_interval_seconds
        self.maintenance_interval_seconds = maintenance_interval_seconds
        self.rate_limit_idle_seconds = rate_limit_idle_seconds
        self.greylist_db = greylist_db

    def _create_exporter(self, metrics: DecisionMetricsCollection) -> Any:
        greylist = self.engine.greylist
        return self.exporter_cls(
            metrics, greylist.__len__ if greylist is not None else None
        )

    async def run(self):
        self.exporter = self._create_exporter(self.metrics_persister.load())
        try:
            async with self.exporter.start_server(*self.prometheus_addr):
                await asyncio.gather(self._autosave(), self._maintain())
        except CancelledError:
            pass
        finally:
            self._save_state()

    async def _autosave(self):
        while True:
            await asyncio.sleep(self.autosave_interval_seconds or 60)
            if self.autosave_interval_seconds:
                self._save_state()

    async def _maintain(self):
        while True:
            await asyncio.sleep(self.maintenance_interval_seconds or 60)
            if self.maintenance_interval_seconds:
                await self.expire_state()

    async def expire_state(self):
        removed_tuples = 0
        if self.engine.greylist is not None:
            removed_tuples = self.engine.greylist.sweep()
        removed_buckets = 0
        for limiter in (self.engine.ip_limiter, self.engine.identity_limiter):
            if limiter is not None:
                removed_buckets += limiter.prune(self.rate_limit_idle_seconds)
        await logger.adebug(
            "Expired state.",
            greylist_entries=removed_tuples,
            rate_limit_buckets=removed_buckets,
        )

    def _save_state(self):
        with self.exporter.get_metrics() as metrics:
            self.metrics_persister.save(metrics)
        if self.greylist_db and self.engine.greylist is not None:
            self.engine.greylist.persist(self.greylist_db)

    async def check(self, request: CheckRequest) -> CheckResult:
        result = await self.engine.check(request)
        self._record(request, result)
        return result

    async def check_legacy(self, request: CheckRequest) -> CheckResult:
        result = await self.engine.check_legacy(request)
        self._record(request, result)
        return result

    def _record(self, request: CheckRequest, result: CheckResult):
        with self.exporter.get_metrics() as metrics:
            metrics.update(Meta(request.recipient_domain or "unknown"), result.decision)
