import logging

import dns.name
import pytest

import acmeflow.plugins.rfc2136_solver
from acmeflow.client.challenge_solver import DummySolver
from acmeflow.client.dns01 import challenge_record
from acmeflow.clock import FakeClock
from acmeflow.plugins.exec_solver import ExecError, ExecSolver
from acmeflow.plugins.manual_solver import ManualSolver
from acmeflow.plugins.rfc2136_solver import RFC2136Client

KEY_AUTH = "token.thumbprint"


@pytest.fixture
def hook(tmp_path):
    log = tmp_path / "hook.log"
    script = tmp_path / "hook.sh"
    script.write_text(f'#!/bin/sh\necho "$@ $ACMEFLOW_DOMAIN" >> "{log}"\n')
    script.chmod(0o755)
    return script, log


@pytest.mark.asyncio
async def test_exec_solver(hook):
    script, log = hook
    solver = ExecSolver(ExecSolver.Config(program=str(script)))
    fqdn, value = challenge_record("example.com", KEY_AUTH)

    await solver.present("example.com", "token", KEY_AUTH)
    await solver.cleanup("example.com", "token", KEY_AUTH)

    assert log.read_text().splitlines() == [
        f"present {fqdn} {value} example.com",
        f"cleanup {fqdn} {value} example.com",
    ]


@pytest.mark.asyncio
async def test_exec_solver_failure(tmp_path):
    script = tmp_path / "fail.sh"
    script.write_text("#!/bin/sh\necho 'zone is locked'\nexit 3\n")
    script.chmod(0o755)
    solver = ExecSolver(ExecSolver.Config(program=str(script)))

    with pytest.raises(ExecError) as excinfo:
        await solver.present("example.com", "token", KEY_AUTH)

    assert excinfo.value.returncode == 3
    assert "zone is locked" in str(excinfo.value)


@pytest.mark.asyncio
async def test_manual_solver(caplog):
    solver = ManualSolver(ManualSolver.Config(delay=0))
    fqdn, value = challenge_record("example.com", KEY_AUTH)

    with caplog.at_level(logging.WARNING, logger="acmeflow.plugins.manual_solver"):
        await solver.present("example.com", "token", KEY_AUTH)

    assert fqdn in caplog.text
    assert value in caplog.text


@pytest.mark.asyncio
async def test_manual_solver_waits_on_clock():
    clock = FakeClock()
    solver = ManualSolver(ManualSolver.Config(delay=90), clock=clock)

    await solver.present("example.com", "token", KEY_AUTH)

    assert clock.sleeps == [90]


@pytest.mark.asyncio
async def test_dummy_solver():
    solver = DummySolver()

    await solver.present("example.com", "token", KEY_AUTH)
    await solver.cleanup("example.com", "token", KEY_AUTH)


@pytest.mark.asyncio
async def test_rfc2136_solver(monkeypatch):
    sent = []

    async def zone_for_name(name, resolver=None):
        return dns.name.from_text("example.com.")

    solver = RFC2136Client(
        RFC2136Client.Config(server="127.0.0.1", keyid="tsig-key", alg="hmac-sha256", secret="dGVzdA==")
    )

    async def run_query(msg):
        sent.append(msg)

    monkeypatch.setattr(acmeflow.plugins.rfc2136_solver.dns.asyncresolver, "zone_for_name", zone_for_name)
    monkeypatch.setattr(solver, "_run_query", run_query)
    _, value = challenge_record("sub.example.com", KEY_AUTH)

    await solver.present("sub.example.com", "token", KEY_AUTH)
    await solver.cleanup("sub.example.com", "token", KEY_AUTH)

    assert len(sent) == 2
    added, deleted = (msg.to_text() for msg in sent)
    assert "_acme-challenge.sub 60 IN TXT" in added
    assert value in added
    assert "_acme-challenge.sub" in deleted
    assert value in deleted
