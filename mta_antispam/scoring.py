from dataclasses import dataclass, replace

from mta_antispam.check_types import ConfigurationError, Decision

MIN_SCORE = 0
MAX_SCORE = 100


@dataclass(frozen=True)
class ScoreWeights:
    # pylint: disable=too-many-instance-attributes
    spf_pass: int = 0
    spf_fail: int = 20
    spf_softfail: int = 10
    spf_neutral: int = 0
    spf_none: int = 0
    spf_temperror: int = 3
    spf_permerror: int = 5
    dkim_pass: int = 0
    dkim_fail: int = 15
    dkim_temperror: int = 3
    dkim_unsigned: int = 0
    dmarc_reject_fail: int = 50
    dmarc_quarantine_fail: int = 30
    dmarc_none_fail: int = 5
    dmarc_temperror: int = 3
    helo_suspicious: int = 5
    helo_mismatch: int = 5
    suspicious_subject: int = 10
    suspicious_sender: int = 5
    contributor_error: int = 3

    def for_minimal_headers(self) -> "ScoreWeights":
        """Weights for callers that cannot supply signature headers."""
        return replace(self, dkim_fail=0, dkim_temperror=0, dkim_unsigned=0)


@dataclass(frozen=True)
class Thresholds:
    reject: int = 70
    quarantine: int = 40

    def __post_init__(self):
        if not MIN_SCORE <= self.quarantine <= self.reject <= MAX_SCORE:
            raise ConfigurationError(
                "Thresholds must satisfy 0 <= quarantine <= reject <= 100, "
                f"got quarantine={self.quarantine} reject={self.reject}."
            )

    def decide(self, score: int) -> Decision:
        if score >= self.reject:
            return Decision.REJECT
        if score >= self.quarantine:
            return Decision.QUARANTINE
        return Decision.ACCEPT


def clamp_score(score: int) -> int:
    return max(MIN_SCORE, min(MAX_SCORE, score))
