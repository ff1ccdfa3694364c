import abc
import logging
import typing

from pydantic_settings import BaseSettings

from acmeflow.models import ChallengeType
from acmeflow.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)


class ChallengeSolver(abc.ABC):
    """An abstract base class for challenge solvers, i.e. providers of challenge proofs.

    All challenge solver implementations must implement the methods :meth:`present` and
    :meth:`cleanup`.
    Implementations must also be registered with the plugin registry via
    :meth:`~acmeflow.plugin_base.PluginRegistry.register_plugin`, so that the CLI script knows which configuration
    option corresponds to which challenge solver class.
    """

    SUPPORTED_CHALLENGES: typing.Iterable[ChallengeType]
    """The types of challenges that the challenge solver implementation supports."""

    class Config(BaseSettings, extra="forbid"):
        type: typing.Literal["none"] = "none"

    def __init__(self, cfg: Config = None):
        pass

    @abc.abstractmethod
    async def present(self, domain: str, token: str, key_auth: str) -> None:
        """Provisions the proof for the given challenge.

        This method should provision the resource that the CA checks, e.g. a DNS TXT record,
        and then return. Calling it twice for the same challenge must not fail.

        :param domain: The identifier that is being validated, without any wildcard label.
        :param token: The challenge's token.
        :param key_auth: The key authorization for the token.
        :raises: Any exception if the proof could not be provisioned.
        """
        pass

    @abc.abstractmethod
    async def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        """Removes the proof for the given challenge.

        This method is called once for every challenge that :meth:`present` was called for,
        whether or not the challenge or :meth:`present` itself succeeded.
        It should silently return if there is nothing to clean up.

        :param domain: The identifier that was validated.
        :param token: The challenge's token.
        :param key_auth: The key authorization for the token.
        """
        pass


challenge_solver_registry = PluginRegistry.get_registry(ChallengeSolver)


@PluginRegistry.register_plugin("dummy")
class DummySolver(ChallengeSolver):
    """Dummy challenge solver that does not actually complete any challenges."""

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01, ChallengeType.HTTP_01])
    """The types of challenges that the solver supports."""

    class Config(ChallengeSolver.Config):
        type: typing.Literal["dummy"] = "dummy"

    async def present(self, domain: str, token: str, key_auth: str) -> None:
        logger.debug("(not) solving challenge for %s, token %s", domain, token)

    async def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        logger.debug("(not) cleaning up after challenge for %s, token %s", domain, token)
