from typing import Iterable, List, Mapping, Optional, Sequence

import structlog

from mta_antispam.check_types import (
    CheckRequest,
    CheckResult,
    ConfigurationError,
    Decision,
)
from mta_antispam.contributors import (
    Contribution,
    Contributor,
    DkimContributor,
    DmarcContributor,
    GreylistGate,
    HeloContributor,
    Outcomes,
    RateLimitGate,
    SenderContributor,
    SpfContributor,
    SubjectContributor,
)
from mta_antispam.dkim import DkimSigner, DkimVerifier
from mta_antispam.dmarc import DmarcEvaluator
from mta_antispam.greylist import GreylistStore
from mta_antispam.ratelimit import RateLimiter
from mta_antispam.resolver import Deadline, Resolver
from mta_antispam.scoring import ScoreWeights, Thresholds, clamp_score
from mta_antispam.spf import SpfChecker

logger = structlog.get_logger()


class Engine:
    """Decides whether an inbound message is accepted.

    The engine keeps no state of its own. Greylist and rate limit state lives
    in the stores passed in, so engines built on separate stores never
    influence each other. ``check`` may be awaited concurrently from any
    number of connection handlers.
    """

    # pylint: disable=too-many-instance-attributes,too-many-arguments,too-many-locals
    def __init__(
        self,
        *,
        resolver: Resolver,
        greylist: Optional[GreylistStore] = None,
        ip_limiter: Optional[RateLimiter] = None,
        identity_limiter: Optional[RateLimiter] = None,
        weights: ScoreWeights = ScoreWeights(),
        legacy_weights: Optional[ScoreWeights] = None,
        thresholds: Thresholds = Thresholds(),
        signer: Optional[DkimSigner] = None,
        require_signer: bool = False,
        extra_contributors: Iterable[Contributor] = (),
        check_timeout_seconds: Optional[float] = 10.0,
        spf_max_dns_lookups: int = 10,
        greylist_authenticated_exempt: bool = False,
        rate_limit_cost: float = 1,
    ):
        if require_signer and signer is None:
            raise ConfigurationError("DKIM signing is required but no signer is configured.")
        if spf_max_dns_lookups < 1:
            raise ConfigurationError("spf_max_dns_lookups must be at least 1.")

        self.greylist = greylist
        self.ip_limiter = ip_limiter
        self.identity_limiter = identity_limiter
        self.weights = weights
        self.legacy_weights = legacy_weights or weights.for_minimal_headers()
        self.thresholds = thresholds
        self.signer = signer
        self.check_timeout_seconds = check_timeout_seconds
        self.greylist_authenticated_exempt = greylist_authenticated_exempt

        self.spf = SpfChecker(resolver, max_dns_lookups=spf_max_dns_lookups)
        self.dkim = DkimVerifier(resolver)
        self.dmarc = DmarcEvaluator(resolver)

        self._gates: List[Contributor] = []
        if ip_limiter is not None or identity_limiter is not None:
            self._gates.append(RateLimitGate(ip_limiter, identity_limiter, rate_limit_cost))
        if greylist is not None:
            self._gates.append(
                GreylistGate(
                    greylist, exempt_authenticated=greylist_authenticated_exempt
                )
            )
        extras = list(extra_contributors)
        self._contributors = self._scoring_contributors(self.weights, False) + extras
        self._legacy_contributors = (
            self._scoring_contributors(self.legacy_weights, True) + extras
        )

    def _scoring_contributors(
        self, weights: ScoreWeights, envelope_fallback: bool
    ) -> List[Contributor]:
        return [
            SpfContributor(self.spf, weights),
            DkimContributor(self.dkim, weights),
            DmarcContributor(self.dmarc, weights, envelope_fallback),
            HeloContributor(weights),
            SubjectContributor(weights),
            SenderContributor(weights),
        ]

    async def check(
        self, request: CheckRequest, timeout: Optional[float] = None
    ) -> CheckResult:
        return await self._evaluate(
            request, self._contributors, self.weights, timeout
        )

    async def check_legacy(
        self, request: CheckRequest, timeout: Optional[float] = None
    ) -> CheckResult:
        """Compatibility entry point for callers with a minimal header set.

        Runs the same evaluation as :meth:`check` with the legacy weights,
        which ignore the DKIM signal, and judges DMARC alignment against the
        envelope sender when the message has no From header.
        """
        return await self._evaluate(
            request, self._legacy_contributors, self.legacy_weights, timeout
        )

    def sign(self, headers: Mapping[str, str], body: bytes) -> str:
        if self.signer is None:
            raise ConfigurationError("No DKIM signer is configured.")
        return self.signer.sign(headers, body)

    async def _evaluate(
        self,
        request: CheckRequest,
        contributors: Sequence[Contributor],
        weights: ScoreWeights,
        timeout: Optional[float],
    ) -> CheckResult:
        deadline = Deadline.after(
            self.check_timeout_seconds if timeout is None else timeout
        )
        outcomes = Outcomes()
        reasons: List[str] = []
        with structlog.contextvars.bound_contextvars(
            client_ip=request.ip, mail_from=request.mail_from, rcpt_to=request.rcpt_to
        ):
            log = logger.bind(logger=self.__class__.__name__)
            for gate in self._gates:
                contribution = await gate.evaluate(request, outcomes, deadline)
                if contribution.reason:
                    reasons.append(contribution.reason)
                if contribution.decision is not None:
                    return await self._finish(
                        log, contribution.decision, contribution.score, reasons
                    )

            score = 0
            for contributor in contributors:
                contribution = await self._contribute(
                    contributor, request, outcomes, deadline, weights
                )
                score += contribution.score
                if contribution.reason:
                    reasons.append(contribution.reason)
                if contribution.decision is not None:
                    return await self._finish(log, contribution.decision, score, reasons)

            score = clamp_score(score)
            return await self._finish(log, self.thresholds.decide(score), score, reasons)

    @staticmethod
    async def _contribute(
        contributor: Contributor,
        request: CheckRequest,
        outcomes: Outcomes,
        deadline: Deadline,
        weights: ScoreWeights,
    ) -> Contribution:
        try:
            return await contributor.evaluate(request, outcomes, deadline)
        except Exception:  # pylint: disable=broad-except
            await logger.aexception("Contributor failed.", contributor=contributor.name)
            return Contribution(
                score=weights.contributor_error,
                reason=f"{contributor.name} check failed ({weights.contributor_error:+d})",
            )

    @staticmethod
    async def _finish(
        log, decision: Decision, score: int, reasons: List[str]
    ) -> CheckResult:
        result = CheckResult(decision, clamp_score(score), tuple(reasons))
        await log.ainfo(
            "Message checked.",
            decision=result.decision.value,
            score=result.score,
            reasons=list(result.reasons),
        )
        return result
