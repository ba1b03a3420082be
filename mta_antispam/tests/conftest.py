import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

import pytest

from mta_antispam.dkim import generate_private_key
from mta_antispam.resolver import DnsError


class StaticResolver:
    """Resolver answering from fixed tables instead of the network."""

    def __init__(
        self,
        txt: Optional[Dict[str, List[str]]] = None,
        addresses: Optional[Dict[str, List[str]]] = None,
        mx: Optional[Dict[str, List[str]]] = None,
        failing: Iterable[str] = (),
        slow: Iterable[str] = (),
    ):
        self.txt = _normalized(txt)
        self.addresses = _normalized(addresses)
        self.mx = _normalized(mx)
        self.failing = {domain.lower() for domain in failing}
        self.slow = {domain.lower() for domain in slow}
        self.queries: List[str] = []

    async def _lookup(self, table: Dict[str, List[str]], domain: str) -> List[str]:
        domain = domain.lower().rstrip(".")
        self.queries.append(domain)
        if domain in self.failing:
            raise DnsError(domain)
        if domain in self.slow:
            await asyncio.sleep(3600)
        return list(table.get(domain, ()))

    async def lookup_txt(self, domain: str) -> List[str]:
        return await self._lookup(self.txt, domain)

    async def lookup_addresses(self, domain: str) -> List[str]:
        return await self._lookup(self.addresses, domain)

    async def lookup_mx(self, domain: str) -> List[str]:
        return await self._lookup(self.mx, domain)


def _normalized(table: Optional[Dict[str, List[str]]]) -> Dict[str, List[str]]:
    return {key.lower().rstrip("."): value for key, value in (table or {}).items()}


class Clock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture(name="clock")
def fixture_clock() -> Clock:
    return Clock()


@pytest.fixture(name="rsa_key", scope="session")
def fixture_rsa_key():
    return generate_private_key("rsa", 2048)


@pytest.fixture(name="ed25519_key", scope="session")
def fixture_ed25519_key():
    return generate_private_key("ed25519")


async def try_until_success(
    function: Union[Callable[[], Awaitable], Callable[[], Any]],
    timeout_seconds: int = 10,
    max_fn_duration_seconds: int = 1,
    poll_interval_seconds: float = 0.1,
):
    timeout = time.time() + timeout_seconds
    last_err = None
    while time.time() < timeout:
        try:
            result = function()
            if hasattr(result, "__await__"):
                return await asyncio.wait_for(result, max_fn_duration_seconds)
            else:
                return result
        except asyncio.TimeoutError as err:
            raise TimeoutError(
                f"Function execution duration exceeded {max_fn_duration_seconds} seconds."
            ) from err
        except Exception as err:  # pylint: disable=broad-except
            last_err = err
            await asyncio.sleep(poll_interval_seconds)
    raise TimeoutError(
        f"Call to {function} not successful within {timeout_seconds} seconds."
    ) from last_err
