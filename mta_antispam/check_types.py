import email.policy
import re
from dataclasses import dataclass, field
from email.parser import BytesHeaderParser
from email.utils import parseaddr
from enum import Enum
from typing import Mapping, Optional, Tuple

_HEADER_BODY_SEPARATOR = re.compile(rb"\r?\n\r?\n")


class ConfigurationError(Exception):
    pass


class Decision(Enum):
    ACCEPT = "accept"
    GREYLIST_DEFER = "greylist_defer"
    QUARANTINE = "quarantine"
    REJECT = "reject"


_SMTP_REPLIES = {
    Decision.ACCEPT: (250, "2.0.0 Ok: queued"),
    Decision.QUARANTINE: (250, "2.0.0 Ok: queued"),
    Decision.GREYLIST_DEFER: (451, "4.7.1 Greylisted, please try again later"),
    Decision.REJECT: (550, "5.7.1 Message rejected"),
}


def smtp_reply(decision: Decision) -> Tuple[int, str]:
    """Reply code and text for the SMTP layer.

    Quarantined mail is accepted like any other message; the mail store files
    it into quarantine. None of the replies name the check that fired.
    """
    return _SMTP_REPLIES[decision]


def domain_of(address: str) -> str:
    _, addr = parseaddr(address)
    if "@" not in addr:
        return ""
    return addr.rsplit("@", 1)[1].strip().rstrip(".").lower()


@dataclass(frozen=True)
class CheckRequest:
    ip: str
    mail_from: str
    rcpt_to: str
    domain: str = ""
    helo: str = ""
    headers: Mapping[str, str] = field(default_factory=dict)
    body: bytes = b""
    authenticated_user: Optional[str] = None

    @classmethod
    def from_bytes(
        cls,
        raw: bytes,
        *,
        ip: str,
        mail_from: str,
        rcpt_to: str,
        helo: str = "",
        authenticated_user: Optional[str] = None,
    ) -> "CheckRequest":
        match = _HEADER_BODY_SEPARATOR.search(raw)
        if match:
            head, body = raw[: match.start()], raw[match.end() :]
        else:
            head, body = raw, b""
        parsed = BytesHeaderParser(policy=email.policy.compat32).parsebytes(
            head + b"\r\n\r\n"
        )
        headers = {}
        for name, value in parsed.items():
            headers[name] = str(value)
        return cls(
            ip=ip,
            mail_from=mail_from,
            rcpt_to=rcpt_to,
            domain=domain_of(mail_from),
            helo=helo,
            headers=headers,
            body=body,
            authenticated_user=authenticated_user,
        )

    def header(self, name: str) -> Optional[str]:
        wanted = name.lower()
        value = None
        for key, candidate in self.headers.items():
            if key.lower() == wanted:
                value = candidate
        return value

    @property
    def sender_domain(self) -> str:
        return (
            self.domain.lower().rstrip(".")
            or domain_of(self.mail_from)
            or self.helo.lower().rstrip(".")
        )

    @property
    def from_domain(self) -> str:
        from_header = self.header("From")
        if from_header:
            return domain_of(from_header)
        return ""

    @property
    def recipient_domain(self) -> str:
        return domain_of(self.rcpt_to)


@dataclass(frozen=True)
class CheckResult:
    decision: Decision
    score: int
    reasons: Tuple[str, ...] = ()
