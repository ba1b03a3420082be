import hashlib
import ipaddress
import pickle
import threading
import time
from collections.abc import Sized
from dataclasses import astuple, dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Tuple, Union


@dataclass(frozen=True)
class GreylistConfig:
    min_wait_seconds: float = 5 * 60
    retry_window_seconds: float = 4 * 60 * 60
    ttl_seconds: float = 36 * 24 * 60 * 60
    ipv4_prefix: int = 24
    ipv6_prefix: int = 64
    shards: int = 16


class GreylistDecision(Enum):
    DEFER = "defer"
    PASS = "pass"


@dataclass
class GreylistEntry:
    first_seen: float
    last_seen: float
    passed: bool
    expires_at: float


class GreylistStore(Sized):
    """Tracks (client network, sender, recipient) tuples across retries.

    Entries live in a fixed number of shards, each guarded by its own lock, so
    that lookups for unrelated tuples do not contend. Unpassed tuples expire
    at the end of the retry window, passed tuples after ``ttl_seconds`` of
    inactivity.
    """

    __PICKLE_PROTOCOL = 4
    __VERSION = 0

    _shards: List[Tuple[threading.Lock, Dict[str, GreylistEntry]]]

    def __init__(
        self,
        config: GreylistConfig = GreylistConfig(),
        time_fn: Callable[[], float] = time.time,
    ):
        self.config = config
        self._time = time_fn
        self._shards = [(threading.Lock(), {}) for _ in range(max(1, config.shards))]

    def tuple_key(self, ip: str, sender: str, recipient: str) -> str:
        try:
            address = ipaddress.ip_address(ip)
            prefix = (
                self.config.ipv4_prefix
                if address.version == 4
                else self.config.ipv6_prefix
            )
            network = str(ipaddress.ip_network(f"{address}/{prefix}", strict=False))
        except ValueError:
            network = ip
        material = "\0".join((network, sender.lower(), recipient.lower()))
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def _shard(self, key: str) -> Tuple[threading.Lock, Dict[str, GreylistEntry]]:
        return self._shards[int(key[:8], 16) % len(self._shards)]

    def check(
        self, ip: str, sender: str, recipient: str
    ) -> Tuple[GreylistDecision, bool]:
        """Record a delivery attempt for the tuple.

        Returns the decision and whether a new defer cycle was recorded.
        """
        key = self.tuple_key(ip, sender, recipient)
        lock, entries = self._shard(key)
        with lock:
            now = self._time()
            entry = entries.get(key)
            if entry is None or now >= entry.expires_at:
                entries[key] = self._new_entry(now)
                return GreylistDecision.DEFER, True

            entry.last_seen = now
            if entry.passed:
                entry.expires_at = now + self.config.ttl_seconds
                return GreylistDecision.PASS, False

            if now - entry.first_seen < self.config.min_wait_seconds:
                entries[key] = self._new_entry(now)
                return GreylistDecision.DEFER, True

            entry.passed = True
            entry.expires_at = now + self.config.ttl_seconds
            return GreylistDecision.PASS, False

    def _new_entry(self, now: float) -> GreylistEntry:
        return GreylistEntry(
            first_seen=now,
            last_seen=now,
            passed=False,
            expires_at=now + self.config.retry_window_seconds,
        )

    def sweep(self) -> int:
        removed = 0
        for lock, entries in self._shards:
            with lock:
                now = self._time()
                expired = [key for key, entry in entries.items() if now >= entry.expires_at]
                for key in expired:
                    del entries[key]
                removed += len(expired)
        return removed

    def __len__(self) -> int:
        return sum(len(entries) for _, entries in self._shards)

    def persist(self, path: Union[Path, str]):
        snapshot = {}
        for lock, entries in self._shards:
            with lock:
                now = self._time()
                snapshot.update(
                    (key, astuple(entry))
                    for key, entry in entries.items()
                    if now < entry.expires_at
                )
        with open(path, "wb") as f:
            pickle.dump(
                {"version": self.__VERSION, "entries": snapshot},
                f,
                self.__PICKLE_PROTOCOL,
            )

    @classmethod
    def load(
        cls,
        path: Union[Path, str],
        config: GreylistConfig = GreylistConfig(),
        time_fn: Callable[[], float] = time.time,
    ) -> "GreylistStore":
        # pylint: disable=protected-access
        reconstructed = cls(config, time_fn)
        with open(path, "rb") as f:
            data = pickle.load(f)
        if data["version"] != cls.__VERSION:
            raise RuntimeError("Unsupported version.")
        now = time_fn()
        for key, fields in data["entries"].items():
            entry = GreylistEntry(*fields)
            if now < entry.expires_at:
                _, entries = reconstructed._shard(key)
                entries[key] = entry
        return reconstructed
