import typing

import pytest
import pytest_asyncio

import acmeflow.util
from acmeflow.clock import FakeClock
from acmeflow.client import ChallengeSolver
from acmeflow.models import ChallengeType
from .services import MockCA


class RecordingSolver(ChallengeSolver):
    """Solver that remembers every call, optionally failing *present* for some domains."""

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01])

    def __init__(self, fail_present: typing.Iterable[str] = (), fail_cleanup: bool = False):
        super().__init__()
        self.fail_present = set(fail_present)
        self.fail_cleanup = fail_cleanup
        self.presented = []
        self.cleaned = []

    async def present(self, domain: str, token: str, key_auth: str) -> None:
        self.presented.append((domain, token, key_auth))
        if domain in self.fail_present:
            raise RuntimeError(f"cannot provision {domain}")

    async def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        self.cleaned.append((domain, token, key_auth))
        if self.fail_cleanup:
            raise RuntimeError(f"cannot remove {domain}")


@pytest_asyncio.fixture
async def ca_factory():
    started = []

    async def factory(**kwargs) -> MockCA:
        ca = MockCA(**kwargs)
        await ca.start()
        started.append(ca)
        return ca

    yield factory

    for ca in started:
        await ca.close()


@pytest_asyncio.fixture
async def ca(ca_factory):
    return await ca_factory()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def account_key_path(tmp_path):
    path = tmp_path / "account.key"
    acmeflow.util.generate_ec_key(path)
    return path


@pytest.fixture
def account_key(account_key_path):
    return acmeflow.util.load_private_key(account_key_path)


@pytest.fixture
def solver():
    return RecordingSolver()
