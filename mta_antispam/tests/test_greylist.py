from concurrent.futures import ThreadPoolExecutor

from mta_antispam.greylist import GreylistConfig, GreylistDecision, GreylistStore

TUPLE = ("192.0.2.10", "alice@example.com", "bob@example.org")


def test_first_attempt_is_deferred_and_retry_after_wait_passes(clock):
    store = GreylistStore(GreylistConfig(), clock)

    assert store.check(*TUPLE) == (GreylistDecision.DEFER, True)
    clock.advance(5 * 60)
    assert store.check(*TUPLE) == (GreylistDecision.PASS, False)
    clock.advance(24 * 60 * 60)
    assert store.check(*TUPLE) == (GreylistDecision.PASS, False)


def test_early_retry_restarts_the_wait(clock):
    store = GreylistStore(GreylistConfig(), clock)

    store.check(*TUPLE)
    clock.advance(100)
    assert store.check(*TUPLE) == (GreylistDecision.DEFER, True)
    clock.advance(250)
    assert store.check(*TUPLE) == (GreylistDecision.DEFER, True)
    clock.advance(300)
    assert store.check(*TUPLE) == (GreylistDecision.PASS, False)


def test_retry_after_retry_window_starts_over(clock):
    store = GreylistStore(GreylistConfig(), clock)

    store.check(*TUPLE)
    clock.advance(4 * 60 * 60 + 1)
    assert store.check(*TUPLE) == (GreylistDecision.DEFER, True)


def test_passed_tuple_expires_after_inactivity(clock):
    store = GreylistStore(GreylistConfig(), clock)

    store.check(*TUPLE)
    clock.advance(5 * 60)
    store.check(*TUPLE)
    clock.advance(36 * 24 * 60 * 60)
    assert store.check(*TUPLE) == (GreylistDecision.DEFER, True)


def test_addresses_of_same_network_share_an_entry(clock):
    store = GreylistStore(GreylistConfig(), clock)

    store.check("192.0.2.10", "alice@example.com", "bob@example.org")
    clock.advance(5 * 60)
    decision, _ = store.check("192.0.2.77", "Alice@Example.com", "bob@example.org")
    assert decision == GreylistDecision.PASS

    decision, _ = store.check("192.0.3.10", "alice@example.com", "bob@example.org")
    assert decision == GreylistDecision.DEFER


def test_ipv6_clients_are_grouped_by_64_prefix(clock):
    store = GreylistStore(GreylistConfig(), clock)

    store.check("2001:db8:1:2::10", "alice@example.com", "bob@example.org")
    clock.advance(5 * 60)
    decision, _ = store.check("2001:db8:1:2::99", "alice@example.com", "bob@example.org")
    assert decision == GreylistDecision.PASS


def test_other_recipient_is_a_new_tuple(clock):
    store = GreylistStore(GreylistConfig(), clock)

    store.check(*TUPLE)
    clock.advance(5 * 60)
    assert store.check(TUPLE[0], TUPLE[1], "carol@example.org")[0] == (
        GreylistDecision.DEFER
    )


def test_sweep_removes_expired_entries(clock):
    store = GreylistStore(GreylistConfig(), clock)

    store.check(*TUPLE)
    store.check(TUPLE[0], TUPLE[1], "carol@example.org")
    clock.advance(5 * 60)
    store.check(*TUPLE)
    assert len(store) == 2

    clock.advance(4 * 60 * 60)
    assert store.sweep() == 1
    assert len(store) == 1


def test_concurrent_first_attempts_create_one_entry(clock):
    store = GreylistStore(GreylistConfig(), clock)

    with ThreadPoolExecutor(max_workers=8) as executor:
        results = list(executor.map(lambda _: store.check(*TUPLE), range(64)))

    assert len(store) == 1
    assert all(decision == GreylistDecision.DEFER for decision, _ in results)


def test_roundtrip_persistence(tmp_path, clock):
    filepath = tmp_path / "greylist.db"
    store = GreylistStore(GreylistConfig(), clock)
    store.check(*TUPLE)
    clock.advance(5 * 60)
    store.check(*TUPLE)
    store.check(TUPLE[0], TUPLE[1], "carol@example.org")
    store.persist(filepath)

    clock.advance(4 * 60 * 60)
    store = GreylistStore.load(filepath, GreylistConfig(), clock)
    assert len(store) == 1
    assert store.check(*TUPLE) == (GreylistDecision.PASS, False)
