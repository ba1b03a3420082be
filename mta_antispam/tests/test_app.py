import asyncio
import json
from dataclasses import dataclass, field, fields
from typing import Tuple
from unittest.mock import MagicMock

import pytest

from mta_antispam.app import App, build_engine, main
from mta_antispam.check_types import CheckRequest, ConfigurationError, Decision
from mta_antispam.decision_metrics import DecisionMetricsCollection, Meta
from mta_antispam.dkim import private_key_pem
from mta_antispam.engine import Engine
from mta_antispam.greylist import GreylistConfig, GreylistStore
from mta_antispam.ratelimit import BucketConfig, RateLimiter

from .conftest import StaticResolver, try_until_success

DNS = {"nameservers": ["127.0.0.1"]}


class ServerMock:
    async def __aenter__(self):
        pass

    async def __aexit__(self, exc_type, exc, traceback):
        pass


@dataclass
class AppDependencies:
    prometheus_addr: Tuple[str, int] = ("127.0.0.1", 9797)
    exporter_cls: MagicMock = field(default_factory=MagicMock)
    metrics_persister: MagicMock = field(default_factory=MagicMock)
    engine: Engine = field(default_factory=lambda: Engine(resolver=StaticResolver()))

    def as_flat_dict(self):
        return {field.name: getattr(self, field.name) for field in fields(self)}


@dataclass
class AppMocks:
    dependencies: AppDependencies = field(default_factory=AppDependencies)
    metrics: DecisionMetricsCollection = field(
        default_factory=DecisionMetricsCollection
    )
    metrics_provider: MagicMock = field(default_factory=MagicMock)
    exporter: MagicMock = field(default_factory=MagicMock)

    def __post_init__(self):
        self.metrics_provider.__enter__.return_value = self.metrics
        self.exporter.start_server.return_value = ServerMock()
        self.exporter.get_metrics.return_value = self.metrics_provider
        self.dependencies.exporter_cls.return_value = self.exporter
        self.dependencies.metrics_persister.load.return_value = self.metrics


def make_request(**kwargs) -> CheckRequest:
    values = {
        "ip": "203.0.113.5",
        "mail_from": "alice@example.com",
        "rcpt_to": "bob@example.org",
        "helo": "mail.example.com",
    }
    values.update(kwargs)
    return CheckRequest(**values)


@pytest.mark.asyncio
async def test_loads_persisted_metrics_and_stores_them_on_shutdown():
    mocks = AppMocks()
    app = App(autosave_interval_seconds=None, **mocks.dependencies.as_flat_dict())
    main_task = asyncio.create_task(app.run())

    try:
        await try_until_success(
            app.metrics_persister.load.assert_called_once, timeout_seconds=2
        )
    finally:
        main_task.cancel()
        await main_task
    mocks.dependencies.metrics_persister.save.assert_called_once_with(mocks.metrics)


@pytest.mark.asyncio
async def test_metrics_autosave():
    mocks = AppMocks()
    app = App(autosave_interval_seconds=0.5, **mocks.dependencies.as_flat_dict())
    main_task = asyncio.create_task(app.run())

    try:
        await asyncio.sleep(1)
        mocks.dependencies.metrics_persister.save.assert_called_with(mocks.metrics)
    finally:
        main_task.cancel()
        await main_task


@pytest.mark.asyncio
async def test_greylist_is_persisted_on_shutdown(tmp_path, clock):
    mocks = AppMocks()
    mocks.dependencies.engine = Engine(
        resolver=StaticResolver(), greylist=GreylistStore(GreylistConfig(), clock)
    )
    greylist_db = tmp_path / "greylist.db"
    app = App(
        autosave_interval_seconds=None,
        greylist_db=greylist_db,
        **mocks.dependencies.as_flat_dict(),
    )
    await app.check(make_request())

    main_task = asyncio.create_task(app.run())
    await asyncio.sleep(0.1)
    main_task.cancel()
    await main_task

    assert len(GreylistStore.load(greylist_db, GreylistConfig(), clock)) == 1


@pytest.mark.asyncio
async def test_counts_decisions_per_recipient_domain(clock):
    mocks = AppMocks()
    mocks.dependencies.engine = Engine(
        resolver=StaticResolver(), greylist=GreylistStore(GreylistConfig(), clock)
    )
    app = App(autosave_interval_seconds=None, **mocks.dependencies.as_flat_dict())

    await app.check(make_request())
    clock.advance(5 * 60)
    await app.check_legacy(make_request(authenticated_user="alice"))

    metrics = mocks.metrics[Meta(domain="example.org")]
    assert metrics.total_count == 2
    assert metrics.decision_counts == {
        Decision.GREYLIST_DEFER: 1,
        Decision.ACCEPT: 1,
    }


@pytest.mark.asyncio
async def test_expire_state_sweeps_greylist_and_prunes_buckets(clock):
    mocks = AppMocks()
    mocks.dependencies.engine = Engine(
        resolver=StaticResolver(),
        greylist=GreylistStore(GreylistConfig(), clock),
        ip_limiter=RateLimiter(BucketConfig(), clock),
    )
    app = App(
        autosave_interval_seconds=None,
        rate_limit_idle_seconds=60,
        **mocks.dependencies.as_flat_dict(),
    )
    await app.check(make_request())

    clock.advance(5 * 60 * 60)
    await app.expire_state()

    assert len(app.engine.greylist) == 0
    assert len(app.engine.ip_limiter) == 0


def test_build_engine_defaults():
    engine = build_engine({"dns": DNS})
    assert engine.ip_limiter is not None
    assert engine.identity_limiter is not None
    assert engine.greylist is None
    assert engine.signer is None
    assert not engine.greylist_authenticated_exempt


def test_build_engine_from_configuration(tmp_path, ed25519_key):
    key_path = tmp_path / "dkim.pem"
    key_path.write_bytes(private_key_pem(ed25519_key))

    engine = build_engine(
        {
            "dns": DNS,
            "rate_limit": {"ip": {"capacity": 10, "refill_per_second": 1}, "identity": None},
            "weights": {"spf_fail": 30},
            "thresholds": {"reject": 80, "quarantine": 50},
            "dkim": {
                "private_key_path": str(key_path),
                "domain": "example.com",
                "selector": "sel",
                "required": True,
            },
            "check_timeout_seconds": 2.5,
            "greylist_authenticated_exempt": True,
        },
        GreylistStore(),
    )

    assert engine.ip_limiter.config == BucketConfig(capacity=10, refill_per_second=1)
    assert engine.identity_limiter is None
    assert engine.weights.spf_fail == 30
    assert engine.legacy_weights.spf_fail == 30
    assert engine.thresholds.reject == 80
    assert engine.signer.selector == "sel"
    assert engine.check_timeout_seconds == 2.5
    assert engine.greylist is not None
    assert engine.greylist_authenticated_exempt


@pytest.mark.parametrize(
    "configuration",
    [
        {"unknown": 1},
        {"weights": {"spf_failure": 10}},
        {"thresholds": {"reject": 30, "quarantine": 40}},
        {"rate_limit": {"ip": {"capacity": 0}}},
        {"rate_limit": {"user": {}}},
        {"dns": {"servers": ["127.0.0.1"]}},
        {"dkim": {"required": True}},
        {"dkim": {"private_key_path": "/nonexistent/dkim.pem", "domain": "example.com"}},
        {"dkim": {"selector": "sel"}},
    ],
)
def test_invalid_configuration(configuration):
    configuration.setdefault("dns", DNS)
    with pytest.raises(ConfigurationError):
        build_engine(configuration)


def test_main_runs_app_from_configuration_file(tmp_path, monkeypatch):
    configuration = tmp_path / "mta-antispam.json"
    configuration.write_text(
        json.dumps(
            {
                "storage_path": str(tmp_path),
                "port": 9798,
                "dns": DNS,
                "logging": {"root": {"level": "warning"}},
            }
        )
    )
    started = []

    async def run(self):
        started.append(self)

    monkeypatch.setattr(App, "run", run)
    main(["--configuration", str(configuration)])

    (app,) = started
    assert app.prometheus_addr == ("127.0.0.1", 9798)
    assert app.greylist_db == tmp_path / "greylist.db"
    assert app.engine.greylist is not None
