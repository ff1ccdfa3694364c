import asyncio
import tempfile
import unittest
from pathlib import Path

import acme.messages
import dns.rdatatype
import josepy
import pytest
import pytest_asyncio
from cryptography import x509

import acmeflow.util
from acmeflow.clock import FakeClock
from acmeflow.client import AcmeClient, PropagationVerifier
from acmeflow.client.client import run_all
from acmeflow.client.dns01 import challenge_record
from acmeflow.client.exceptions import CouldNotCompleteChallenge, OrderFailed, PropagationTimeout
from acmeflow.models import AccountStatus, ChallengeType
from acmeflow.models.messages import RevocationReason
from .conftest import RecordingSolver
from .services import INCORRECT_RESPONSE, NS1, NS2, RESOLVER, FakeDNSVerifier, MockCA


class HTTPSolver(RecordingSolver):
    SUPPORTED_CHALLENGES = frozenset([ChallengeType.HTTP_01])


class RecordingVerifier:
    def __init__(self, ca, check=True, fail=False):
        self.config = PropagationVerifier.Config(check=check, nameservers=["127.0.0.1"])
        self.ca = ca
        self.fail = fail
        self.calls = []

    async def wait_for_propagation(self, domain, key_auth):
        # Remember how many challenges the CA had been asked to validate at this point.
        self.calls.append((domain, len(self.ca.validated_challenges)))
        if self.fail:
            raise PropagationTimeout(*challenge_record(domain, key_auth))


def client_config(ca, account_key_path, **kwargs):
    return AcmeClient.Config(
        directory=ca.directory_url,
        private_key=account_key_path,
        contact={"email": "admin@example.com", "phone": ""},
        dns={"check": False, "nameservers": ["127.0.0.1"]},
        **kwargs,
    )


def make_csr(tmp_path, names):
    key = acmeflow.util.generate_ec_key(tmp_path / "cert.key")
    return acmeflow.util.generate_csr(names[0], key, None, names)


@pytest_asyncio.fixture
async def make_client(account_key_path, clock):
    clients = []

    async def factory(ca, solvers=(), verifier=None, start=True, **kwargs):
        client = AcmeClient(
            client_config(ca, account_key_path, **kwargs), clock=clock, verifier=verifier
        )
        clients.append(client)
        for solver in solvers:
            client.register_challenge_solver(solver)
        if start:
            await client.start()
        return client

    yield factory

    for client in clients:
        await client.close()


@pytest.mark.asyncio
async def test_obtain_certificate(ca, make_client, solver, tmp_path):
    client = await make_client(ca, [solver])
    names = ["example.com", "www.example.com"]

    pem = await client.obtain_certificate(names, make_csr(tmp_path, names))

    certificate = x509.load_pem_x509_certificate(pem.encode())
    san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    assert sorted(san.value.get_values_for_type(x509.DNSName)) == names

    assert sorted(p[0] for p in solver.presented) == names
    assert sorted(solver.cleaned) == sorted(solver.presented)
    assert len(ca.validated_challenges) == 2
    for challenge_id in ca.validated_challenges:
        assert ca.challenges[challenge_id]["type"] == "dns-01"
        key_auth = ca.expected_key_authorization(challenge_id)
        assert key_auth in [p[2] for p in solver.presented]


@pytest.mark.asyncio
async def test_failed_authorization_cleans_up_every_challenge_once(ca_factory, make_client, solver, tmp_path):
    ca = await ca_factory(invalid_identifiers=["bad.example.com"])
    client = await make_client(ca, [solver])
    names = ["good.example.com", "bad.example.com"]

    with pytest.raises(CouldNotCompleteChallenge) as excinfo:
        await client.obtain_certificate(names, make_csr(tmp_path, names))

    error = excinfo.value.challenge.error
    assert isinstance(error, acme.messages.Error)
    assert error.typ == INCORRECT_RESPONSE
    assert "bad.example.com" in str(excinfo.value)

    assert len(solver.presented) == 2
    assert sorted(solver.cleaned) == sorted(solver.presented)
    assert not any(path.startswith("/finalize") for path in ca.requests)


@pytest.mark.asyncio
async def test_present_failure(ca, make_client, tmp_path):
    solver = RecordingSolver(fail_present=["example.com"])
    client = await make_client(ca, [solver])

    with pytest.raises(CouldNotCompleteChallenge) as excinfo:
        await client.obtain_certificate(["example.com"], make_csr(tmp_path, ["example.com"]))

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert ca.validated_challenges == []
    assert solver.cleaned == solver.presented


@pytest.mark.asyncio
async def test_cleanup_errors_are_not_raised(ca, make_client, tmp_path):
    solver = RecordingSolver(fail_cleanup=True)
    client = await make_client(ca, [solver])

    pem = await client.obtain_certificate(["example.com"], make_csr(tmp_path, ["example.com"]))

    assert "BEGIN CERTIFICATE" in pem
    assert len(solver.cleaned) == 1


@pytest.mark.asyncio
async def test_propagation_is_checked_before_validation(ca, make_client, solver, tmp_path):
    verifier = RecordingVerifier(ca)
    client = await make_client(ca, [solver], verifier=verifier)

    await client.obtain_certificate(["example.com"], make_csr(tmp_path, ["example.com"]))

    assert verifier.calls == [("example.com", 0)]


@pytest.mark.asyncio
async def test_propagation_timeout_skips_validation(ca, make_client, solver, tmp_path):
    verifier = RecordingVerifier(ca, fail=True)
    client = await make_client(ca, [solver], verifier=verifier)

    with pytest.raises(PropagationTimeout):
        await client.obtain_certificate(["example.com"], make_csr(tmp_path, ["example.com"]))

    assert ca.validated_challenges == []
    assert solver.cleaned == solver.presented


class PublishingSolver(RecordingSolver):
    """Publishes the challenge record to a fake DNS, slower on the second name server."""

    def __init__(self, dns):
        super().__init__()
        self.dns = dns

    async def present(self, domain, token, key_auth):
        await super().present(domain, token, key_auth)
        name, value = challenge_record(domain, key_auth)
        self.dns.publish(name, value, [NS1, RESOLVER])
        self.dns.publish(name, value, [NS2], after=1)


@pytest.mark.asyncio
async def test_obtain_certificate_waits_for_dns(ca, make_client, clock, tmp_path):
    verifier = FakeDNSVerifier(
        PropagationVerifier.Config(nameservers=[RESOLVER], timeout=30, interval=2), clock
    )
    solver = PublishingSolver(verifier)
    client = await make_client(ca, [solver], verifier=verifier)

    await client.obtain_certificate(["example.com"], make_csr(tmp_path, ["example.com"]))

    assert len(solver.presented) == 1
    assert solver.cleaned == solver.presented
    assert verifier.txt_queries[NS2] == 2
    assert len(ca.validated_challenges) == 1


class StalledDNSVerifier(FakeDNSVerifier):
    """Authoritative servers never answer TXT queries for one name."""

    def __init__(self, cfg, clock, stalled):
        super().__init__(cfg, clock)
        self.stalled = stalled
        self.cancelled = []

    async def _query(self, qname, rdtype, server, recursive):
        if qname.to_text() == self.stalled and rdtype == dns.rdatatype.TXT and not recursive:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled.append(server)
                raise
        return await super()._query(qname, rdtype, server, recursive)


@pytest.mark.asyncio
async def test_invalid_authorization_cancels_propagation_check(ca_factory, make_client, clock, tmp_path):
    ca = await ca_factory(invalid_identifiers=["bad.example.com"])
    verifier = StalledDNSVerifier(
        PropagationVerifier.Config(nameservers=[RESOLVER], timeout=300, interval=2),
        clock,
        "_acme-challenge.good.example.com.",
    )
    solver = PublishingSolver(verifier)
    client = await make_client(ca, [solver], verifier=verifier)
    names = ["good.example.com", "bad.example.com"]

    with pytest.raises(CouldNotCompleteChallenge) as excinfo:
        await client.obtain_certificate(names, make_csr(tmp_path, names))

    assert "bad.example.com" in str(excinfo.value)
    assert sorted(verifier.cancelled) == [NS1, NS2]
    assert clock.now < 300
    assert len(clock.sleeps) <= 4
    assert sorted(p[0] for p in solver.cleaned) == sorted(names)
    assert sorted(solver.cleaned) == sorted(solver.presented)
    assert len(ca.validated_challenges) == 1


@pytest.mark.asyncio
async def test_propagation_check_disabled(ca, make_client, solver, tmp_path):
    verifier = RecordingVerifier(ca, check=False)
    client = await make_client(ca, [solver], verifier=verifier)

    await client.obtain_certificate(["example.com"], make_csr(tmp_path, ["example.com"]))

    assert verifier.calls == []


@pytest.mark.asyncio
async def test_challenge_type_preference(ca, make_client, solver, tmp_path):
    http_solver = HTTPSolver()
    client = await make_client(ca, [http_solver, solver])

    await client.obtain_certificate(["example.com"], make_csr(tmp_path, ["example.com"]))
    await client.obtain_certificate(["*.example.com"], make_csr(tmp_path, ["*.example.com"]))

    types = [ca.challenges[c]["type"] for c in ca.validated_challenges]
    assert types == ["http-01", "dns-01"]
    assert http_solver.presented[0][0] == "example.com"
    # The wildcard label is not part of the authorization's identifier
    assert solver.presented[0][0] == "example.com"


@pytest.mark.asyncio
async def test_no_matching_solver(ca, make_client, tmp_path):
    client = await make_client(ca)

    with pytest.raises(ValueError, match="no solver"):
        await client.obtain_certificate(["example.com"], make_csr(tmp_path, ["example.com"]))


@pytest.mark.asyncio
async def test_register_conflicting_solver(ca, make_client, solver):
    client = await make_client(ca, [solver], start=False)

    with pytest.raises(ValueError):
        client.register_challenge_solver(RecordingSolver())


@pytest.mark.asyncio
async def test_retry_after_is_respected(ca_factory, make_client, solver, clock, tmp_path):
    ca = await ca_factory(retry_after=7)
    client = await make_client(ca, [solver])

    await client.obtain_certificate(["example.com"], make_csr(tmp_path, ["example.com"]))

    assert clock.sleeps
    assert set(clock.sleeps) == {7.0}


@pytest.mark.asyncio
async def test_order_failed(ca, make_client):
    client = await make_client(ca)
    order = await client.order_create(["example.com"])
    for authz in ca.authorizations.values():
        authz["status"] = "invalid"

    with pytest.raises(OrderFailed):
        await client.order_finalize(order, None)

    with pytest.raises(ValueError):
        await client.certificate_get(order)


@pytest.mark.asyncio
async def test_external_account_required(ca_factory, make_client):
    ca = await ca_factory(external_account_required=True)

    with pytest.raises(ValueError, match="external account binding"):
        await make_client(ca)

    assert ca.accounts == {}


@pytest.mark.asyncio
async def test_external_account_binding(ca_factory, make_client):
    hmac_key = josepy.b64encode(b"secret-key-for-the-external-account").decode()
    ca = await ca_factory(external_account_required=True, eab_credentials={"kid-1": hmac_key})

    client = await make_client(ca, kid="kid-1", hmac_key=hmac_key)

    assert ca.eab_bindings == ["kid-1"]
    assert client.account.status == AccountStatus.VALID


@pytest.mark.asyncio
async def test_account_operations(ca, make_client, tmp_path):
    client = await make_client(ca)
    assert ca.accounts["1"]["contact"] == ["mailto:admin@example.com"]

    assert (await client.account_lookup()).kid == client.account.kid

    updated = await client.account_update(contact=("mailto:ops@example.com",))
    assert updated.contact == ("mailto:ops@example.com",)

    acmeflow.util.generate_rsa_key(tmp_path / "new.key")
    await client.key_change(tmp_path / "new.key")
    new_key, _ = acmeflow.util.load_private_key(tmp_path / "new.key")
    assert ca.accounts["1"]["key"].thumbprint() == new_key.public_key().thumbprint()

    deactivated = await client.account_deactivate()
    assert deactivated.status == AccountStatus.DEACTIVATED


@pytest.mark.asyncio
async def test_run_all_cancels_siblings():
    cancelled = []

    async def slow(name):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            cancelled.append(name)
            raise

    async def failing():
        await asyncio.sleep(0)
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await run_all([slow("a"), failing(), slow("b")])

    assert sorted(cancelled) == ["a", "b"]


@pytest.mark.asyncio
async def test_run_all_results():
    async def value(v):
        await asyncio.sleep(0)
        return v

    assert await run_all([value(1), value(2), value(3)]) == [1, 2, 3]
    assert await run_all([]) == []


class TestOurClient(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name)
        acmeflow.util.generate_rsa_key(self.path / "account.key")

        self.ca = MockCA()
        await self.ca.start()

        self.solver = RecordingSolver()
        self.client = AcmeClient(
            client_config(self.ca, self.path / "account.key"), clock=FakeClock()
        )
        self.client.register_challenge_solver(self.solver)
        await self.client.start()

    async def asyncTearDown(self) -> None:
        await self.client.close()
        await self.ca.close()
        self._tmp.cleanup()

    async def _issue(self, names):
        csr = make_csr(self.path, names)
        pem = await self.client.obtain_certificate(names, csr)
        return acmeflow.util.pem_split(pem)[0]

    async def test_run(self):
        certificate = await self._issue(["test.example.com"])

        self.assertIsInstance(certificate, x509.Certificate)
        san = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        self.assertEqual(san.value.get_values_for_type(x509.DNSName), ["test.example.com"])

    async def test_revocation(self):
        certificate = await self._issue(["test.example.com", "www.test.example.com"])

        revoked = await self.client.certificate_revoke(certificate, RevocationReason.keyCompromise)

        self.assertTrue(revoked)
        self.assertEqual(self.ca.revoked, [(certificate.serial_number, 1)])

    async def test_bad_identifier(self):
        with self.assertRaises(acme.messages.Error) as cm:
            await self.client.obtain_certificate(["example.com"], make_csr(self.path, ["other.example.com"]))

        self.assertEqual(cm.exception.code, "badCSR")
