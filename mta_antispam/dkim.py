import base64
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, Mapping, Optional, Union

import dkim
import dkim.util
import structlog
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, rsa

from mta_antispam.check_types import ConfigurationError
from mta_antispam.resolver import Deadline, DnsError, Resolver

logger = structlog.get_logger()

PrivateKey = Union[rsa.RSAPrivateKey, ed25519.Ed25519PrivateKey]
PublicKey = Union[rsa.RSAPublicKey, ed25519.Ed25519PublicKey]

SIGNATURE_HEADER = "DKIM-Signature"
DEFAULT_SIGNED_HEADERS = (
    "from",
    "to",
    "cc",
    "subject",
    "date",
    "message-id",
    "reply-to",
    "mime-version",
    "content-type",
)
RSA_SHA256 = "rsa-sha256"
ED25519_SHA256 = "ed25519-sha256"


class DkimStatus(Enum):
    UNSIGNED = "unsigned"
    PASS = "pass"
    FAIL = "fail"
    TEMPERROR = "temperror"


@dataclass(frozen=True)
class DkimOutcome:
    status: DkimStatus
    domain: str = ""
    selector: str = ""
    reason: str = ""

    @property
    def valid(self) -> bool:
        return self.status == DkimStatus.PASS

    @property
    def signed(self) -> bool:
        return self.status != DkimStatus.UNSIGNED


def message_bytes(headers: Mapping[str, str], body: bytes) -> bytes:
    head = "".join(f"{name}: {value}\r\n" for name, value in headers.items())
    return head.encode("utf-8", errors="surrogateescape") + b"\r\n" + body


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    name = name.lower()
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def algorithm_for(key: Union[PrivateKey, PublicKey]) -> str:
    if isinstance(key, (rsa.RSAPrivateKey, rsa.RSAPublicKey)):
        return RSA_SHA256
    if isinstance(key, (ed25519.Ed25519PrivateKey, ed25519.Ed25519PublicKey)):
        return ED25519_SHA256
    raise ConfigurationError(f"unsupported DKIM key type {type(key).__name__}")


def _dkimpy_private_key(private_key: PrivateKey) -> bytes:
    # dkimpy reads PKCS#1 PEM for RSA and the base64 encoded seed for Ed25519.
    if isinstance(private_key, rsa.RSAPrivateKey):
        return private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.TraditionalOpenSSL,
            serialization.NoEncryption(),
        )
    return base64.b64encode(
        private_key.private_bytes(
            serialization.Encoding.Raw,
            serialization.PrivateFormat.Raw,
            serialization.NoEncryption(),
        )
    )


class DkimSigner:
    def __init__(
        self,
        domain: str,
        selector: str,
        private_key: Optional[PrivateKey],
        *,
        signed_headers: Iterable[str] = DEFAULT_SIGNED_HEADERS,
    ):
        if private_key is None:
            raise ConfigurationError("DKIM signing requires a private key")
        if not domain or not selector:
            raise ConfigurationError("DKIM signing requires a domain and a selector")
        self.algorithm = algorithm_for(private_key)
        self.domain = domain.lower().rstrip(".")
        self.selector = selector
        self.private_key = private_key
        self.signed_headers = tuple(name.lower() for name in signed_headers)
        self._dkimpy_key = _dkimpy_private_key(private_key)

    @classmethod
    def from_pem_file(
        cls, path: Union[Path, str], domain: str, selector: str = "default"
    ) -> "DkimSigner":
        return cls(domain, selector, load_private_key(path))

    def sign(self, headers: Mapping[str, str], body: bytes) -> str:
        """Return the value of a relaxed/relaxed DKIM-Signature header."""
        present = {name.lower() for name in headers}
        if "from" not in present:
            raise ValueError("cannot sign a message without From header")
        signed_names = [name for name in self.signed_headers if name in present]
        if "from" not in signed_names:
            signed_names.insert(0, "from")

        header = dkim.sign(
            message_bytes(headers, body),
            self.selector.encode("ascii"),
            self.domain.encode("ascii"),
            self._dkimpy_key,
            canonicalize=(b"relaxed", b"relaxed"),
            signature_algorithm=self.algorithm.encode("ascii"),
            include_headers=[name.encode("ascii") for name in signed_names],
        )
        return header.decode("ascii").split(":", 1)[1].strip()


def sign(
    domain: str,
    selector: str,
    private_key: PrivateKey,
    headers: Mapping[str, str],
    body: bytes,
) -> str:
    return DkimSigner(domain, selector, private_key).sign(headers, body)


class _KeyLookup:
    """dkimpy ``dnsfunc`` answering key queries through the resolver."""

    def __init__(self, resolver: Resolver, deadline: Deadline):
        self.resolver = resolver
        self.deadline = deadline
        self.problem: Optional[str] = None

    async def __call__(self, name: Union[bytes, str], timeout: float = 5) -> Optional[bytes]:
        if isinstance(name, bytes):
            name = name.decode("ascii", errors="replace")
        records = [
            record
            for record in await self.deadline.run(
                self.resolver.lookup_txt, name.rstrip(".")
            )
            if "p=" in record
        ]
        if not records:
            self.problem = "no public key published"
            return None
        if len(records) > 1:
            self.problem = "multiple key records published"
            return None
        record = records[0].encode("utf-8")
        try:
            if not dkim.util.parse_tag_value(record).get(b"p"):
                self.problem = "key has been revoked"
        except dkim.util.InvalidTagValueList:
            self.problem = "key record cannot be parsed"
        return record


class DkimVerifier:
    def __init__(self, resolver: Resolver):
        self.resolver = resolver

    async def verify(
        self,
        headers: Mapping[str, str],
        body: bytes,
        deadline: Deadline = Deadline(),
    ) -> DkimOutcome:
        signature_value = _header(headers, SIGNATURE_HEADER)
        if signature_value is None:
            return DkimOutcome(DkimStatus.UNSIGNED)

        log = logger.bind(logger=self.__class__.__name__)
        try:
            tags = dkim.util.parse_tag_value(
                signature_value.encode("utf-8", errors="surrogateescape")
            )
        except dkim.util.InvalidTagValueList as err:
            await log.ainfo("Malformed DKIM signature.", error=str(err))
            return DkimOutcome(DkimStatus.FAIL, reason=f"malformed signature: {err}")

        domain = _tag(tags, b"d").lower().rstrip(".")
        selector = _tag(tags, b"s")
        log = log.bind(domain=domain, selector=selector)

        def failed(reason: str) -> DkimOutcome:
            return DkimOutcome(DkimStatus.FAIL, domain, selector, reason)

        try:
            dkim.validate_signature_fields(tags)
        except dkim.ValidationError as err:
            await log.ainfo("Malformed DKIM signature.", error=str(err))
            return failed(f"malformed signature: {err}")

        key_lookup = _KeyLookup(self.resolver, deadline)
        try:
            valid = await dkim.verify_async(
                message_bytes(headers, body), dnsfunc=key_lookup
            )
        except DnsError as err:
            await log.awarning("DKIM key lookup failed.", error=str(err))
            return DkimOutcome(
                DkimStatus.TEMPERROR, domain, selector, "key lookup failed"
            )
        except ValueError as err:
            # Raised for signatures whose size does not fit the published key.
            await log.ainfo("DKIM signature does not fit the key.", error=str(err))
            valid = False

        if not valid:
            return failed(key_lookup.problem or "signature mismatch")
        await log.adebug("DKIM signature verified.")
        return DkimOutcome(DkimStatus.PASS, domain, selector)


def _tag(tags: Mapping[bytes, bytes], name: bytes) -> str:
    return tags.get(name, b"").decode("utf-8", errors="replace").strip()


def generate_private_key(algorithm: str = "rsa", key_size: int = 2048) -> PrivateKey:
    if algorithm == "rsa":
        return rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    if algorithm == "ed25519":
        return ed25519.Ed25519PrivateKey.generate()
    raise ConfigurationError(f"unsupported DKIM key algorithm '{algorithm}'")


def public_key_record(public_key: PublicKey) -> str:
    """The TXT record to publish at ``<selector>._domainkey.<domain>``."""
    if isinstance(public_key, rsa.RSAPublicKey):
        key_type = "rsa"
        key_bytes = public_key.public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    elif isinstance(public_key, ed25519.Ed25519PublicKey):
        key_type = "ed25519"
        key_bytes = public_key.public_bytes(
            serialization.Encoding.Raw, serialization.PublicFormat.Raw
        )
    else:
        raise ConfigurationError(f"unsupported DKIM key type {type(public_key).__name__}")
    return f"v=DKIM1; k={key_type}; p={base64.b64encode(key_bytes).decode('ascii')}"


def private_key_pem(private_key: PrivateKey) -> bytes:
    return private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


def load_private_key(path: Union[Path, str]) -> PrivateKey:
    try:
        with open(path, "rb") as f:
            key = serialization.load_pem_private_key(f.read(), password=None)
    except FileNotFoundError as err:
        raise ConfigurationError(f"DKIM private key '{path}' does not exist") from err
    except (TypeError, ValueError, UnsupportedAlgorithm) as err:
        raise ConfigurationError(f"DKIM private key '{path}' is not usable") from err
    if not isinstance(key, (rsa.RSAPrivateKey, ed25519.Ed25519PrivateKey)):
        raise ConfigurationError(f"DKIM private key '{path}' is neither RSA nor Ed25519")
    return key
