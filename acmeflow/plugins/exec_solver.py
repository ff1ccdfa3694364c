import asyncio
import logging
import os
import typing

from acmeflow.client.challenge_solver import ChallengeSolver
from acmeflow.client.dns01 import challenge_record
from acmeflow.models import ChallengeType
from acmeflow.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


class ExecError(Exception):
    """Raised if the external program exits with a non-zero status."""

    def __init__(self, command, returncode, output):
        super().__init__(command, returncode, output)
        self.command = command
        self.returncode = returncode
        self.output = output

    def __str__(self):
        return f"{' '.join(self.command)} exited with status {self.returncode}: {self.output}"


@PluginRegistry.register_plugin("exec")
class ExecSolver(ChallengeSolver):
    """Delegates DNS-01 records to an external program.

    The program is called as ``<program> present <fqdn> <value>`` and ``<program> cleanup <fqdn> <value>``,
    where *fqdn* is the absolute name of the TXT record. The domain, token and key authorization are
    also passed as the environment variables ``ACMEFLOW_DOMAIN``, ``ACMEFLOW_TOKEN`` and
    ``ACMEFLOW_KEY_AUTH``.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01])

    class Config(ChallengeSolver.Config):
        type: typing.Literal["exec"] = "exec"
        program: str
        """Path of the program to run"""
        timeout: float = 60.0
        """Time in seconds the program may run"""

    def __init__(self, cfg: Config):
        super().__init__(cfg=cfg)
        self.config = cfg

    async def _run(self, action: str, domain: str, token: str, key_auth: str) -> str:
        fqdn, value = challenge_record(domain, key_auth)
        command = [self.config.program, action, fqdn, value]

        env = dict(os.environ)
        env.update(
            ACMEFLOW_DOMAIN=domain,
            ACMEFLOW_TOKEN=token,
            ACMEFLOW_KEY_AUTH=key_auth,
        )

        logger.debug("Running %s", " ".join(command))
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
        )
        try:
            out, _ = await asyncio.wait_for(proc.communicate(), self.config.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise

        output = out.decode(errors="replace").strip()
        if proc.returncode != 0:
            raise ExecError(command, proc.returncode, output)

        return output

    async def present(self, domain: str, token: str, key_auth: str) -> None:
        await self._run("present", domain, token, key_auth)

    async def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        await self._run("cleanup", domain, token, key_auth)
