import asyncio
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import (
    Any,
    Awaitable,
    Callable,
    Iterable,
    List,
    Optional,
    Protocol,
    Tuple,
    TypeVar,
)

import dns.asyncresolver
import dns.exception
import dns.resolver
import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class DnsError(Exception):
    def __init__(self, domain: str, message: str = "DNS lookup failed"):
        super().__init__(f"{message}: {domain}")
        self.domain = domain


class DnsTimeout(DnsError):
    def __init__(self, domain: str):
        super().__init__(domain, "DNS lookup timed out")


@dataclass(frozen=True)
class Deadline:
    expires_at: Optional[float] = None

    @classmethod
    def after(cls, seconds: Optional[float]) -> "Deadline":
        if seconds is None:
            return cls()
        return cls(time.monotonic() + seconds)

    def remaining(self) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - time.monotonic())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    async def run(
        self, lookup: Callable[[str], Awaitable[T]], domain: str
    ) -> T:
        if self.expired:
            raise DnsTimeout(domain)
        try:
            return await asyncio.wait_for(lookup(domain), self.remaining())
        except asyncio.TimeoutError as err:
            raise DnsTimeout(domain) from err


class Resolver(Protocol):
    async def lookup_txt(self, domain: str) -> List[str]:
        ...

    async def lookup_addresses(self, domain: str) -> List[str]:
        ...

    async def lookup_mx(self, domain: str) -> List[str]:
        ...


class _TtlCache:
    def __init__(self, max_size: int, time_fn: Callable[[], float]):
        self.max_size = max_size
        self._time = time_fn
        self._lock = threading.Lock()
        self._entries: "OrderedDict[Tuple[str, str], Tuple[float, Tuple[Any, ...]]]" = (
            OrderedDict()
        )

    def get(self, key: Tuple[str, str]) -> Optional[Tuple[Any, ...]]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, records = entry
            if self._time() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return records

    def put(self, key: Tuple[str, str], records: Iterable[Any], ttl: float):
        if self.max_size <= 0 or ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (self._time() + ttl, tuple(records))
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)


class DnsResolver:
    """Asynchronous resolver backed by dnspython with a bounded TTL cache."""

    NEGATIVE_TTL_SECONDS = 300

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        *,
        timeout_seconds: float = 5.0,
        nameservers: Optional[Iterable[str]] = None,
        cache_size: int = 4096,
        max_ttl_seconds: float = 3600,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self._resolver = dns.asyncresolver.Resolver(configure=nameservers is None)
        if nameservers is not None:
            self._resolver.nameservers = list(nameservers)
        self._resolver.lifetime = timeout_seconds
        self._resolver.timeout = timeout_seconds
        self.max_ttl_seconds = max_ttl_seconds
        self._cache = _TtlCache(cache_size, time_fn)

    async def _query(self, domain: str, rdtype: str) -> Tuple[Any, ...]:
        key = (domain.lower().rstrip("."), rdtype)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        log = logger.bind(logger=self.__class__.__name__, domain=domain, rdtype=rdtype)
        try:
            answer = await self._resolver.resolve(domain, rdtype)
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            self._cache.put(key, (), self.NEGATIVE_TTL_SECONDS)
            return ()
        except dns.exception.Timeout as err:
            await log.awarning("DNS lookup timed out.")
            raise DnsTimeout(domain) from err
        except dns.exception.DNSException as err:
            await log.awarning("DNS lookup failed.", error=str(err))
            raise DnsError(domain) from err

        records = tuple(answer)
        ttl = answer.rrset.ttl if answer.rrset is not None else 0
        self._cache.put(key, records, min(ttl, self.max_ttl_seconds))
        return records

    async def lookup_txt(self, domain: str) -> List[str]:
        return [
            b"".join(rdata.strings).decode("utf-8", errors="replace")
            for rdata in await self._query(domain, "TXT")
        ]

    async def lookup_addresses(self, domain: str) -> List[str]:
        ipv4, ipv6 = await asyncio.gather(
            self._query(domain, "A"), self._query(domain, "AAAA")
        )
        return [rdata.address for rdata in ipv4 + ipv6]

    async def lookup_mx(self, domain: str) -> List[str]:
        records = sorted(await self._query(domain, "MX"), key=lambda r: r.preference)
        return [str(rdata.exchange).rstrip(".").lower() for rdata in records]
