"""Checks that contribute to the decision about an inbound message.

Every check implements the same :class:`Contributor` protocol. Gate
contributors may return a hard decision which ends the evaluation, scoring
contributors return a score delta. Contributors record their raw outcome in
the per-check :class:`Outcomes` so that later contributors (DMARC) can use
them.
"""

import ipaddress
from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from mta_antispam.check_types import CheckRequest, Decision, domain_of
from mta_antispam.dkim import DkimOutcome, DkimStatus, DkimVerifier
from mta_antispam.dmarc import (
    DmarcEvaluator,
    DmarcOutcome,
    DmarcPolicy,
    organizational_domain,
)
from mta_antispam.greylist import GreylistDecision, GreylistStore
from mta_antispam.ratelimit import RateLimiter
from mta_antispam.resolver import Deadline
from mta_antispam.scoring import ScoreWeights
from mta_antispam.spf import SpfChecker, SpfResult


@dataclass
class Outcomes:
    spf: Optional[SpfResult] = None
    spf_domain: str = ""
    dkim: Optional[DkimOutcome] = None
    dmarc: Optional[DmarcOutcome] = None
    greylist: Optional[GreylistDecision] = None


@dataclass(frozen=True)
class Contribution:
    score: int = 0
    decision: Optional[Decision] = None
    reason: Optional[str] = None


NO_CONTRIBUTION = Contribution()


class Contributor(Protocol):
    name: str

    async def evaluate(
        self, request: CheckRequest, outcomes: Outcomes, deadline: Deadline
    ) -> Contribution:
        ...


class RateLimitGate:
    name = "rate_limit"

    def __init__(
        self,
        ip_limiter: Optional[RateLimiter],
        identity_limiter: Optional[RateLimiter] = None,
        cost: float = 1,
    ):
        self.ip_limiter = ip_limiter
        self.identity_limiter = identity_limiter
        self.cost = cost

    async def evaluate(
        self, request: CheckRequest, outcomes: Outcomes, deadline: Deadline
    ) -> Contribution:
        if self.ip_limiter is not None:
            allowed, _ = self.ip_limiter.consume(request.ip, self.cost)
            if not allowed:
                return Contribution(
                    decision=Decision.REJECT,
                    reason=f"rate limit exceeded for client {request.ip}",
                )
        if self.identity_limiter is not None and request.authenticated_user:
            allowed, _ = self.identity_limiter.consume(
                request.authenticated_user, self.cost
            )
            if not allowed:
                return Contribution(
                    decision=Decision.REJECT,
                    reason=f"rate limit exceeded for user {request.authenticated_user}",
                )
        return NO_CONTRIBUTION


class GreylistGate:
    name = "greylist"

    def __init__(self, store: GreylistStore, exempt_authenticated: bool = False):
        self.store = store
        self.exempt_authenticated = exempt_authenticated

    async def evaluate(
        self, request: CheckRequest, outcomes: Outcomes, deadline: Deadline
    ) -> Contribution:
        if self.exempt_authenticated and request.authenticated_user:
            return NO_CONTRIBUTION
        decision, _ = self.store.check(request.ip, request.mail_from, request.rcpt_to)
        outcomes.greylist = decision
        if decision == GreylistDecision.DEFER:
            return Contribution(
                decision=Decision.GREYLIST_DEFER, reason="greylisted, retry required"
            )
        return NO_CONTRIBUTION


class SpfContributor:
    name = "spf"

    def __init__(self, checker: SpfChecker, weights: ScoreWeights):
        self.checker = checker
        self.weights = {
            SpfResult.PASS: weights.spf_pass,
            SpfResult.FAIL: weights.spf_fail,
            SpfResult.SOFTFAIL: weights.spf_softfail,
            SpfResult.NEUTRAL: weights.spf_neutral,
            SpfResult.NONE: weights.spf_none,
            SpfResult.TEMPERROR: weights.spf_temperror,
            SpfResult.PERMERROR: weights.spf_permerror,
        }

    async def evaluate(
        self, request: CheckRequest, outcomes: Outcomes, deadline: Deadline
    ) -> Contribution:
        domain = request.sender_domain
        result = await self.checker.check(request.ip, domain, deadline)
        outcomes.spf = result
        outcomes.spf_domain = domain
        return _weighted(self.weights[result], f"SPF {result.value} for {domain}")


class DkimContributor:
    name = "dkim"

    def __init__(self, verifier: DkimVerifier, weights: ScoreWeights):
        self.verifier = verifier
        self.weights = {
            DkimStatus.PASS: weights.dkim_pass,
            DkimStatus.FAIL: weights.dkim_fail,
            DkimStatus.TEMPERROR: weights.dkim_temperror,
            DkimStatus.UNSIGNED: weights.dkim_unsigned,
        }

    async def evaluate(
        self, request: CheckRequest, outcomes: Outcomes, deadline: Deadline
    ) -> Contribution:
        outcome = await self.verifier.verify(request.headers, request.body, deadline)
        outcomes.dkim = outcome
        if outcome.status == DkimStatus.UNSIGNED:
            reason = "DKIM unsigned"
        else:
            reason = f"DKIM {outcome.status.value} for {outcome.domain or 'unknown domain'}"
            if outcome.reason:
                reason += f" ({outcome.reason})"
        return _weighted(self.weights[outcome.status], reason)


class DmarcContributor:
    name = "dmarc"

    def __init__(
        self,
        evaluator: DmarcEvaluator,
        weights: ScoreWeights,
        envelope_fallback: bool = False,
    ):
        self.evaluator = evaluator
        self.temperror_weight = weights.dmarc_temperror
        self.failure_weights = {
            DmarcPolicy.REJECT: weights.dmarc_reject_fail,
            DmarcPolicy.QUARANTINE: weights.dmarc_quarantine_fail,
            DmarcPolicy.NONE_VALUE: weights.dmarc_none_fail,
        }
        self.envelope_fallback = envelope_fallback

    async def evaluate(
        self, request: CheckRequest, outcomes: Outcomes, deadline: Deadline
    ) -> Contribution:
        from_domain = request.from_domain
        if not from_domain and self.envelope_fallback:
            from_domain = domain_of(request.mail_from)
        if not from_domain:
            return NO_CONTRIBUTION

        outcome = await self.evaluator.evaluate(
            from_domain,
            outcomes.spf or SpfResult.NONE,
            outcomes.spf_domain,
            outcomes.dkim or DkimOutcome(DkimStatus.UNSIGNED),
            deadline,
        )
        outcomes.dmarc = outcome
        if outcome.temperror:
            return _weighted(
                self.temperror_weight, f"DMARC record lookup failed for {from_domain}"
            )
        if outcome.policy is None or outcome.aligned:
            return NO_CONTRIBUTION
        return _weighted(
            self.failure_weights[outcome.policy],
            f"DMARC alignment failure for {from_domain} (p={outcome.policy.value})",
        )


def address_literal(helo: str) -> bool:
    """Whether ``helo`` is an RFC 5321 address literal such as ``[192.0.2.1]``."""
    if not (helo.startswith("[") and helo.endswith("]")):
        return False
    address = helo[1:-1]
    if address[:5].lower() == "ipv6:":
        address = address[5:]
    try:
        ipaddress.ip_address(address)
    except ValueError:
        return False
    return True


def suspicious_helo(helo: str) -> Optional[str]:
    helo = helo.strip().rstrip(".").lower()
    if not helo:
        return "empty HELO"
    if helo in ("localhost", "localhost.localdomain"):
        return f"HELO {helo}"
    if address_literal(helo):
        return None
    if "." not in helo:
        return f"HELO {helo} is not a fully qualified domain name"
    return None


def helo_matches(helo: str, domain: str) -> bool:
    """Whether ``helo`` belongs to the organization of the sender ``domain``."""
    helo = helo.strip().rstrip(".").lower()
    domain = domain.strip().rstrip(".").lower()
    if not helo or not domain or address_literal(helo):
        return True
    if helo == domain or helo.endswith("." + domain):
        return True
    return organizational_domain(helo) == organizational_domain(domain)


class HeloContributor:
    name = "helo"

    def __init__(self, weights: ScoreWeights):
        self.weight = weights.helo_suspicious
        self.mismatch_weight = weights.helo_mismatch

    async def evaluate(
        self, request: CheckRequest, outcomes: Outcomes, deadline: Deadline
    ) -> Contribution:
        reason = suspicious_helo(request.helo)
        if reason is not None:
            return _weighted(self.weight, f"suspicious {reason}")
        domain = request.sender_domain
        if not helo_matches(request.helo, domain):
            return _weighted(
                self.mismatch_weight,
                f"HELO {request.helo} does not match sender domain {domain}",
            )
        return NO_CONTRIBUTION


DEFAULT_SUBJECT_KEYWORDS = (
    "urgent",
    "act now",
    "limited time",
    "click here",
    "winner",
    "prize",
    "free money",
    "guaranteed",
)
NO_REPLY_LOCAL_PARTS = ("noreply", "no-reply", "donotreply")


class SubjectContributor:
    name = "subject"

    def __init__(
        self, weights: ScoreWeights, keywords: Iterable[str] = DEFAULT_SUBJECT_KEYWORDS
    ):
        self.weight = weights.suspicious_subject
        self.keywords = tuple(keyword.lower() for keyword in keywords)

    async def evaluate(
        self, request: CheckRequest, outcomes: Outcomes, deadline: Deadline
    ) -> Contribution:
        subject = (request.header("Subject") or "").lower()
        for keyword in self.keywords:
            if keyword in subject:
                return _weighted(self.weight, f"suspicious subject keyword '{keyword}'")
        return NO_CONTRIBUTION


class SenderContributor:
    name = "sender"

    def __init__(self, weights: ScoreWeights):
        self.weight = weights.suspicious_sender

    async def evaluate(
        self, request: CheckRequest, outcomes: Outcomes, deadline: Deadline
    ) -> Contribution:
        sender = request.mail_from.strip().strip("<>").lower()
        if not sender:
            # Null reverse-path of a bounce.
            return NO_CONTRIBUTION
        if "@" not in sender:
            return _weighted(self.weight, f"malformed envelope sender {sender}")
        local_part = sender.rsplit("@", 1)[0]
        if local_part in NO_REPLY_LOCAL_PARTS:
            return _weighted(self.weight, f"no-reply envelope sender {sender}")
        return NO_CONTRIBUTION


def _weighted(weight: int, reason: str) -> Contribution:
    if weight == 0:
        return NO_CONTRIBUTION
    return Contribution(score=weight, reason=f"{reason} ({weight:+d})")
