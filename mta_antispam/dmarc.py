from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import List, Optional

import structlog
import tldextract

from mta_antispam.dkim import DkimOutcome
from mta_antispam.resolver import Deadline, DnsError, Resolver
from mta_antispam.spf import SpfResult

logger = structlog.get_logger()

# Only the public suffix list snapshot bundled with tldextract is used.
_extract = tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)


class DmarcPolicy(Enum):
    NONE_VALUE = "none"
    QUARANTINE = "quarantine"
    REJECT = "reject"


class AlignmentMode(Enum):
    RELAXED = "r"
    STRICT = "s"


@dataclass(frozen=True)
class DmarcRecord:
    policy: DmarcPolicy
    subdomain_policy: Optional[DmarcPolicy] = None
    adkim: AlignmentMode = AlignmentMode.RELAXED
    aspf: AlignmentMode = AlignmentMode.RELAXED


@dataclass(frozen=True)
class DmarcOutcome:
    policy: Optional[DmarcPolicy] = None
    spf_aligned: bool = False
    dkim_aligned: bool = False
    temperror: bool = False

    @property
    def record_found(self) -> bool:
        return self.policy is not None

    @property
    def aligned(self) -> bool:
        return self.spf_aligned or self.dkim_aligned


@lru_cache(maxsize=4096)
def organizational_domain(domain: str) -> str:
    domain = domain.lower().rstrip(".")
    extracted = _extract(domain)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}"
    return domain


def is_aligned(domain: str, from_domain: str, mode: AlignmentMode) -> bool:
    domain = domain.lower().rstrip(".")
    from_domain = from_domain.lower().rstrip(".")
    if not domain or not from_domain:
        return False
    if mode == AlignmentMode.STRICT:
        return domain == from_domain
    return organizational_domain(domain) == organizational_domain(from_domain)


def _parse_policy(value: Optional[str]) -> Optional[DmarcPolicy]:
    if value is None:
        return None
    try:
        return DmarcPolicy(value.strip().lower())
    except ValueError:
        return None


def _parse_mode(value: Optional[str]) -> AlignmentMode:
    if value and value.strip().lower() == "s":
        return AlignmentMode.STRICT
    return AlignmentMode.RELAXED


def parse_record(records: List[str]) -> Optional[DmarcRecord]:
    candidates = [
        record
        for record in records
        if record.replace(" ", "").upper().startswith("V=DMARC1")
    ]
    if len(candidates) != 1:
        return None

    tags = {}
    for part in candidates[0].split(";"):
        if "=" in part:
            key, value = part.split("=", 1)
            tags.setdefault(key.strip().lower(), value.strip())

    policy = _parse_policy(tags.get("p"))
    if policy is None:
        # A record with a missing or invalid p= is treated as monitoring only.
        policy = DmarcPolicy.NONE_VALUE
    return DmarcRecord(
        policy=policy,
        subdomain_policy=_parse_policy(tags.get("sp")),
        adkim=_parse_mode(tags.get("adkim")),
        aspf=_parse_mode(tags.get("aspf")),
    )


class DmarcEvaluator:
    def __init__(self, resolver: Resolver):
        self.resolver = resolver

    async def evaluate(
        self,
        from_domain: str,
        spf_result: SpfResult,
        spf_domain: str,
        dkim: DkimOutcome,
        deadline: Deadline = Deadline(),
    ) -> DmarcOutcome:
        log = logger.bind(logger=self.__class__.__name__, from_domain=from_domain)
        from_domain = from_domain.lower().rstrip(".")
        if not from_domain:
            return DmarcOutcome()

        try:
            record = await self.fetch_record(from_domain, deadline)
        except DnsError as err:
            await log.awarning("DMARC record lookup failed.", error=str(err))
            return DmarcOutcome(temperror=True)
        if record is None:
            return DmarcOutcome()

        outcome = DmarcOutcome(
            policy=record.policy,
            spf_aligned=spf_result == SpfResult.PASS
            and is_aligned(spf_domain, from_domain, record.aspf),
            dkim_aligned=dkim.valid and is_aligned(dkim.domain, from_domain, record.adkim),
        )
        if not outcome.aligned:
            await log.ainfo(
                "DMARC alignment failed.",
                policy=record.policy.value,
                spf_result=spf_result.value,
                spf_domain=spf_domain,
                dkim_status=dkim.status.value,
                dkim_domain=dkim.domain,
            )
        return outcome

    async def fetch_record(
        self, from_domain: str, deadline: Deadline = Deadline()
    ) -> Optional[DmarcRecord]:
        record = parse_record(
            await deadline.run(self.resolver.lookup_txt, f"_dmarc.{from_domain}")
        )
        if record is not None:
            return record

        org_domain = organizational_domain(from_domain)
        if org_domain == from_domain:
            return None
        record = parse_record(
            await deadline.run(self.resolver.lookup_txt, f"_dmarc.{org_domain}")
        )
        if record is not None and record.subdomain_policy is not None:
            return DmarcRecord(
                policy=record.subdomain_policy,
                subdomain_policy=record.subdomain_policy,
                adkim=record.adkim,
                aspf=record.aspf,
            )
        return record
