import asyncio
import ipaddress
from enum import Enum

import spf
import structlog

from mta_antispam.resolver import Deadline, DnsError, Resolver

logger = structlog.get_logger()


class SpfResult(Enum):
    PASS = "pass"
    FAIL = "fail"
    SOFTFAIL = "softfail"
    NEUTRAL = "neutral"
    NONE = "none"
    TEMPERROR = "temperror"
    PERMERROR = "permerror"


class ResolverQuery(spf.query):
    """pyspf query that asks the engine's resolver instead of the system one.

    pyspf evaluates synchronously, so the query runs in a worker thread and
    submits every lookup to the event loop owning the resolver. Lookups are
    bounded by the deadline of the check.
    """

    # pylint: disable=too-many-arguments
    def __init__(
        self,
        ip: str,
        domain: str,
        *,
        resolver: Resolver,
        deadline: Deadline,
        loop: asyncio.AbstractEventLoop,
        max_lookups: int,
    ):
        super().__init__(ip, f"postmaster@{domain}", domain)
        self.resolver = resolver
        self.deadline = deadline
        self.loop = loop
        self.max_lookups = max_lookups

    def check_lookups(self):
        self.lookups += 1
        if self.lookups > self.max_lookups:
            raise spf.PermError(f"More than {self.max_lookups} DNS lookups")

    def _resolve(self, lookup, name: str):
        future = asyncio.run_coroutine_threadsafe(
            self.deadline.run(lookup, name), self.loop
        )
        try:
            return future.result()
        except DnsError as err:
            raise spf.TempError(f"DNS {err}") from err

    def dns(self, name, qtype, cnames=None, ignore_void=False):
        name = name.rstrip(".").lower()
        if not name:
            return []
        if qtype == "TXT":
            return [
                (record.encode("utf-8"),)
                for record in self._resolve(self.resolver.lookup_txt, name)
            ]
        if qtype in ("A", "AAAA"):
            version = 4 if qtype == "A" else 6
            return [
                address
                for address in self._resolve(self.resolver.lookup_addresses, name)
                if ipaddress.ip_address(address).version == version
            ]
        if qtype == "MX":
            return list(enumerate(self._resolve(self.resolver.lookup_mx, name)))
        # PTR names are never validated, so the ptr mechanism does not match.
        return []


class SpfChecker:
    """Evaluates ``v=spf1`` records against the connecting IP address."""

    def __init__(self, resolver: Resolver, *, max_dns_lookups: int = 10):
        self.resolver = resolver
        self.max_dns_lookups = max_dns_lookups

    async def check(
        self, ip: str, domain: str, deadline: Deadline = Deadline()
    ) -> SpfResult:
        log = logger.bind(logger=self.__class__.__name__, ip=ip, domain=domain)
        domain = domain.lower().rstrip(".")
        if not domain:
            return SpfResult.NONE
        try:
            ipaddress.ip_address(ip)
        except ValueError:
            await log.awarning("Client address is not a valid IP address.")
            return SpfResult.PERMERROR

        query = ResolverQuery(
            ip,
            domain,
            resolver=self.resolver,
            deadline=deadline,
            loop=asyncio.get_running_loop(),
            max_lookups=self.max_dns_lookups,
        )
        result, _, explanation = await asyncio.to_thread(query.check)
        result = SpfResult(result)
        if result == SpfResult.TEMPERROR:
            await log.awarning("SPF evaluation hit a DNS error.", error=explanation)
        elif result == SpfResult.PERMERROR:
            await log.ainfo("SPF permanent error.", error=explanation)
        else:
            await log.adebug(
                "SPF evaluated.", result=result.value, lookups=query.lookups
            )
        return result
