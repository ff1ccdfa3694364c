import logging
import typing

from acmeflow.client.challenge_solver import ChallengeSolver
from acmeflow.client.dns01 import challenge_record
from acmeflow.clock import Clock
from acmeflow.models import ChallengeType
from acmeflow.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


@PluginRegistry.register_plugin("manual")
class ManualSolver(ChallengeSolver):
    """Asks the operator to create the DNS-01 records by hand.

    The record is logged at warning level, then the solver waits for the configured delay.
    The propagation check runs afterwards as usual.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01])

    class Config(ChallengeSolver.Config):
        type: typing.Literal["manual"] = "manual"
        delay: float = 60.0
        """Time in seconds to wait for the operator after showing the record"""

    def __init__(self, cfg: Config = None, clock: Clock = None):
        super().__init__(cfg=cfg)
        self.config = cfg or self.Config()
        self.clock = clock or Clock()

    async def present(self, domain: str, token: str, key_auth: str) -> None:
        name, value = challenge_record(domain, key_auth)
        logger.warning(
            "Please deploy the DNS TXT record %s with the value %s, waiting %.0fs",
            name,
            value,
            self.config.delay,
        )
        await self.clock.sleep(self.config.delay)

    async def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        name, value = challenge_record(domain, key_auth)
        logger.warning("The DNS TXT record %s = %s may be removed now", name, value)
