import asyncio
import logging
import ssl
import typing
from dataclasses import dataclass
from pathlib import Path

import acme.messages
from pydantic import Field
from pydantic_settings import BaseSettings

import acmeflow.util
from acmeflow.clock import Clock
from acmeflow.client.challenge_solver import ChallengeSolver, challenge_solver_registry
from acmeflow.client.core import Core
from acmeflow.client.dns01 import PropagationVerifier
from acmeflow.client.exceptions import (
    CouldNotCompleteChallenge,
    OrderFailed,
    PollingException,
)
from acmeflow.client.transport import Transport
from acmeflow.models import ChallengeType
from acmeflow.models.messages import (
    TERMINAL_AUTHORIZATION_STATES,
    Account,
    Order,
    RevocationReason,
)

logger = logging.getLogger(__name__)


def is_valid(obj):
    return obj.status == acme.messages.STATUS_VALID


def is_invalid(obj):
    return obj.status in TERMINAL_AUTHORIZATION_STATES


def is_ready(obj):
    return obj.status in (
        acme.messages.STATUS_READY,
        acme.messages.STATUS_PROCESSING,
        acme.messages.STATUS_VALID,
    )


def challenge_type(challenge: acme.messages.ChallengeBody) -> typing.Optional[str]:
    chall = challenge.chall
    return getattr(chall, "typ", None) or getattr(chall, "jobj", {}).get("type")


async def run_all(coros: typing.Iterable[typing.Awaitable]) -> list:
    """Runs the coroutines concurrently and returns their results in order.

    The first exception cancels all tasks that are still running and is then raised.
    If the caller is cancelled, all tasks are cancelled as well.
    """
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    if not tasks:
        return []

    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    failed = [task for task in tasks if task in done and not task.cancelled() and task.exception()]
    if failed:
        raise failed[0].exception()

    return [task.result() for task in tasks]


@dataclass
class ExternalAccountBindingCredentials:
    """Stores external account binding credentials to sign a binding on registration."""

    kid: str
    """The external account binding's key identifier"""
    hmac_key: str
    """The external account binding's symmetric encryption key"""

    def __bool__(self):
        return bool(self.kid and self.hmac_key)


@dataclass
class PresentedChallenge:
    """A challenge whose proof was handed to a solver and must be cleaned up."""

    solver: ChallengeSolver
    domain: str
    token: str
    key_auth: str


class AcmeClient:
    """ACME compliant client that obtains certificates from a CA."""

    AUTHORIZATION_POLL_DELAY = 3.0
    """The delay in seconds between authorization polls if the server gives no *Retry-After* hint."""
    AUTHORIZATION_POLL_TRIES = 50
    """The number of times an authorization is polled before giving up."""
    ORDER_POLL_DELAY = 5.0
    """The delay in seconds between order polls if the server gives no *Retry-After* hint."""
    ORDER_POLL_TRIES = 15
    """The number of times an order is polled for each state change before giving up."""
    MAX_RETRY_AFTER = 60.0
    """Upper bound for *Retry-After* hints of the server."""

    class Config(BaseSettings, extra="forbid", env_prefix="ACMEFLOW_"):
        directory: str
        """The ACME server's directory URL."""
        private_key: Path
        """Path of the account key. Must be a PEM-encoded RSA or EC key file."""
        contact: typing.Dict[str, str] = Field(default_factory=dict)
        """Contact info to supply on registration. May contain the keys *phone* and *email*."""
        server_cert: typing.Optional[Path] = None
        """Path of a CA certificate to trust in addition to the system's."""
        kid: typing.Optional[str] = None
        """The external account binding's key identifier."""
        hmac_key: typing.Optional[str] = None
        """The external account binding's symmetric encryption key."""
        challenge_solvers: typing.List[typing.Dict[str, typing.Any]] = Field(default_factory=list)
        """Solver configurations, each with a *type* naming a registered solver. Order is preference."""
        dns: PropagationVerifier.Config = Field(default_factory=PropagationVerifier.Config)
        """Propagation check for DNS-01 challenges."""
        http_timeout: float = 30.0
        """Time in seconds a single HTTP request may take."""
        user_agent: typing.Optional[str] = None

    def __init__(
        self,
        cfg: Config,
        *,
        clock: Clock = None,
        verifier: PropagationVerifier = None,
    ):
        """Creates an :class:`AcmeClient` instance.

        The account key and all configured challenge solvers are loaded here,
        so that configuration errors surface before any request is made.

        :param cfg: The client's configuration.
        :param clock: Time source for all retry and polling loops.
        :param verifier: The DNS-01 propagation verifier. Built from :attr:`Config.dns` if not given.
        """
        self.config = cfg
        self._clock = clock or Clock()

        self._private_key, self._alg = acmeflow.util.load_private_key(cfg.private_key)
        # Filter empty strings
        self._contact = {k: v for k, v in cfg.contact.items() if len(v) > 0}
        self.eab_credentials = (cfg.kid, cfg.hmac_key)

        self._verifier = verifier or PropagationVerifier(cfg.dns, clock=self._clock)

        self._transport: typing.Optional[Transport] = None
        self._core: typing.Optional[Core] = None
        self._account: typing.Optional[Account] = None
        self._challenge_solvers: typing.Dict[ChallengeType, ChallengeSolver] = dict()

        for solver_cfg in cfg.challenge_solvers:
            solver_cls = challenge_solver_registry.get_plugin(solver_cfg.get("type"))
            self.register_challenge_solver(solver_cls(solver_cls.Config.model_validate(solver_cfg)))

    @property
    def eab_credentials(self) -> ExternalAccountBindingCredentials:
        """The client's currently stored external account binding credentials

        Getter:
            Returns the credentials to be used on registration.
        Setter:
            Sets the credentials from a tuple of kid and hmac_key.

            :raises: :class:`ValueError` If the tuple does not contain exactly the kid and hmac_key.
        """
        return self._eab_credentials

    @eab_credentials.setter
    def eab_credentials(self, credentials: typing.Tuple[str, str]):
        if isinstance(credentials, tuple) and len(credentials) == 2:
            self._eab_credentials = ExternalAccountBindingCredentials(*credentials)
        else:
            raise ValueError("A tuple containing the kid and hmac_key is required")

    @property
    def core(self) -> Core:
        if self._core is None:
            raise RuntimeError("The client has not been started")
        return self._core

    @property
    def account(self) -> typing.Optional[Account]:
        return self._account

    async def __aenter__(self) -> "AcmeClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def start(self):
        """Starts the client's session.

        This method must be called after initialization and before
        making requests to an ACME server, as it fetches the ACME directory
        and registers the account key with the server.

        :raises:

            * :class:`~acmeflow.client.exceptions.InvalidDirectory` If the directory is unusable.
            * :class:`ValueError` If the CA requires an external account binding but none is configured.
            * :class:`acme.messages.Error` If the server rejects the registration.
        """
        ssl_context = ssl.create_default_context()
        if self.config.server_cert:
            # Trust a self-signed CA, e.g. a test server.
            ssl_context.load_verify_locations(cafile=str(self.config.server_cert))

        self._transport = Transport(
            timeout=self.config.http_timeout,
            user_agent=self.config.user_agent,
            ssl_context=ssl_context,
        )
        self._core = await Core.create(
            self._transport,
            self.config.directory,
            self._private_key,
            self._alg,
            clock=self._clock,
        )

        if self._core.directory.external_account_required and not self.eab_credentials:
            raise ValueError(
                "The CA requires an external account binding, but no kid and hmac_key are configured"
            )

        if not self._challenge_solvers:
            logger.warning(
                "There is no challenge solver registered with the client. "
                "Certificate retrieval will likely fail."
            )

        await self.account_register()

    async def close(self):
        """Closes the client's session.

        The client may not be used for requests anymore after it has been closed.
        """
        if self._transport is not None:
            await self._transport.close()
            self._transport = None

    def register_challenge_solver(self, challenge_solver: ChallengeSolver):
        """Registers a challenge solver with the client.

        The challenge solver is used to complete authorizations' challenges whose types it supports.
        Solvers registered first are preferred if an authorization offers several supported types.

        :param challenge_solver: The challenge solver to register.
        :raises: :class:`ValueError` If a challenge solver is already registered that supports any of
            the challenge types that *challenge_solver* supports.
        """
        for challenge_type_ in challenge_solver.SUPPORTED_CHALLENGES:
            if self._challenge_solvers.get(challenge_type_):
                raise ValueError(
                    f"A challenge solver for type {challenge_type_} is already registered"
                )

        for challenge_type_ in challenge_solver.SUPPORTED_CHALLENGES:
            self._challenge_solvers[challenge_type_] = challenge_solver

    async def account_register(
        self,
        email: str = None,
        phone: str = None,
        kid: str = None,
        hmac_key: str = None,
    ) -> Account:
        """Registers an account with the CA, or fetches it if the key is already registered.

        :param email: The contact email
        :param phone: The contact phone number
        :param kid: The external account binding's key identifier
        :param hmac_key: The external account binding's symmetric encryption key
        :raises: :class:`acme.messages.Error` If the server rejects any of the contact information, the private
            key, or the external account binding.
        """
        eab_credentials = (
            ExternalAccountBindingCredentials(kid, hmac_key)
            if kid and hmac_key
            else self.eab_credentials
        )
        if not eab_credentials and (eab_credentials.kid or eab_credentials.hmac_key):
            logger.warning(
                "The external account binding credentials are invalid, "
                "i.e. the kid or the hmac_key was not supplied. Trying without EAB."
            )

        reg = acme.messages.Registration.from_data(
            email=email or self._contact.get("email"),
            phone=phone or self._contact.get("phone"),
            terms_of_service_agreed=True,
        )

        if eab_credentials:
            self._account = await self.core.accounts.new_with_eab(
                reg, eab_credentials.kid, eab_credentials.hmac_key
            )
        else:
            self._account = await self.core.accounts.new(reg)

        logger.info("Using account %s", self._account.kid)
        return self._account

    async def account_lookup(self) -> Account:
        """Looks up the account that belongs to the account key.

        :raises: :class:`acme.messages.Error` If no account associated with the private key exists.
        """
        self._account = await self.core.accounts.lookup()
        return self._account

    async def account_update(self, **kwargs) -> Account:
        """Updates the account's contact information.

        :param kwargs: Fields of :class:`~acmeflow.models.messages.AccountUpdate`.
        """
        self._account = await self.core.accounts.update(self._account.kid, **kwargs)
        return self._account

    async def account_deactivate(self) -> Account:
        self._account = await self.core.accounts.deactivate(self._account.kid)
        return self._account

    async def key_change(self, private_key: typing.Union[str, Path]) -> None:
        """Rolls the account over to the key stored at the given path."""
        key, alg = acmeflow.util.load_private_key(private_key)
        await self.core.accounts.key_change(self._account.kid, key, alg)
        self._private_key, self._alg = key, alg

    async def obtain_certificate(
        self,
        identifiers: typing.Union[typing.List[dict], typing.List[str]],
        csr: "cryptography.x509.CertificateSigningRequest",
    ) -> str:
        """Runs a complete issuance: order, authorizations, finalization and download.

        :param identifiers: The identifiers to request, see :meth:`order_create`.
        :param csr: The CSR to submit on finalization.
        :raises:

            * :class:`ValueError` If the identifiers are malformed.
            * :class:`~acmeflow.client.exceptions.CouldNotCompleteChallenge` If an authorization failed.
            * :class:`~acmeflow.client.exceptions.PropagationTimeout` If a DNS-01 record did not propagate.
            * :class:`~acmeflow.client.exceptions.OrderFailed` If the order became invalid.
            * :class:`acme.messages.Error` If the CA rejected a request.

        :return: The PEM encoded certificate chain.
        """
        order = await self.order_create(identifiers)
        await self.authorizations_complete(order)
        finalized = await self.order_finalize(order, csr)
        return await self.certificate_get(finalized)

    async def order_create(
        self, identifiers: typing.Union[typing.List[dict], typing.List[str]]
    ) -> Order:
        """Creates a new order with the given identifiers.

        :param identifiers: :class:`list` of identifiers that the order should contain. May either be a list of
            fully qualified domain names or a list of :class:`dict` containing the *type* and *value* (both
            :class:`str`) of each identifier.
        :raises:

            * :class:`ValueError` If the list is empty or malformed. No request is made in that case.
            * :class:`acme.messages.Error` If the server is unwilling to create an order with the requested
              identifiers.

        :returns: The new order.
        """
        order = await self.core.orders.new(identifiers)
        logger.info("Created order %s for %s", order.url, [i.value for i in order.identifiers])
        return order

    async def order_get(self, order_url: str) -> Order:
        return await self.core.orders.get(order_url)

    async def authorization_get(self, authorization_url: str) -> acme.messages.Authorization:
        return await self.core.authorizations.get(authorization_url)

    async def challenge_get(self, challenge_url: str) -> acme.messages.ChallengeBody:
        return await self.core.challenges.get(challenge_url)

    async def challenge_validate(self, challenge_url: str) -> acme.messages.ChallengeBody:
        """Initiates the given challenge's validation.

        :param challenge_url: The challenge's URL.
        """
        return await self.core.challenges.new(challenge_url)

    async def authorizations_complete(self, order: Order) -> None:
        """Completes all authorizations associated with the given order.

        Each pending authorization is processed in its own task: one challenge is selected and
        presented by the matching :class:`ChallengeSolver`, its propagation is checked for DNS-01,
        the CA is asked to validate it, and the authorization is polled until it is decided.
        The first failure cancels the other tasks. Every challenge that was presented is
        cleaned up afterwards, whether the authorizations succeeded or not.

        :param order: Order whose authorizations should be completed.
        :raises: :class:`~acmeflow.client.exceptions.CouldNotCompleteChallenge` If completion of one of the
            authorizations' challenges failed.
        """
        authorizations = await run_all(
            self.authorization_get(authorization_url)
            for authorization_url in order.authorizations
        )

        presented: typing.List[PresentedChallenge] = []
        try:
            await run_all(
                self._authorization_complete(authorization_url, authorization, presented)
                for authorization_url, authorization in zip(order.authorizations, authorizations)
                if not is_valid(authorization)
            )
        finally:
            await self.challenges_cleanup(presented)

    def _select_challenge(
        self, authorization: acme.messages.Authorization
    ) -> typing.Tuple[acme.messages.ChallengeBody, ChallengeType, ChallengeSolver]:
        offered = {}
        for challenge in authorization.challenges:
            typ = ChallengeType.parse(challenge_type(challenge))
            if typ is not None:
                offered.setdefault(typ, challenge)

        for typ, solver in self._challenge_solvers.items():
            if typ in offered:
                return offered[typ], typ, solver

        raise ValueError(
            f"The server offered the challenge types "
            f"{', '.join(challenge_type(c) or '?' for c in authorization.challenges)} "
            f"for {authorization.identifier.value} but there is no solver that is able to complete them"
        )

    async def _authorization_complete(
        self,
        authorization_url: str,
        authorization: acme.messages.Authorization,
        presented: typing.List[PresentedChallenge],
    ) -> acme.messages.Authorization:
        challenge, typ, solver = self._select_challenge(authorization)

        domain = authorization.identifier.value
        token = challenge.chall.encode("token")
        key_auth = self.core.key_authorization(token)

        logger.debug(
            "Solving %s for %s with %s", typ.value, domain, type(solver).__name__
        )

        presented.append(PresentedChallenge(solver, domain, token, key_auth))
        try:
            await solver.present(domain, token, key_auth)
        except Exception as e:
            logger.exception("Could not present challenge %s for %s", challenge.uri, domain)
            raise CouldNotCompleteChallenge(challenge, f"{type(solver).__name__}: {e}") from e

        if typ == ChallengeType.DNS_01 and self._verifier.config.check:
            await self._verifier.wait_for_propagation(domain, key_auth)

        await self.challenge_validate(challenge.uri)

        try:
            return await self._poll_until(
                self.core.authorizations.poll,
                authorization_url,
                predicate=is_valid,
                negative_predicate=is_invalid,
                delay=self.AUTHORIZATION_POLL_DELAY,
                max_tries=self.AUTHORIZATION_POLL_TRIES,
            )
        except PollingException as e:
            raise self._authorization_failure(challenge, e.obj) from e

    @staticmethod
    def _authorization_failure(
        challenge: acme.messages.ChallengeBody, authorization: acme.messages.Authorization
    ) -> CouldNotCompleteChallenge:
        validated = next(
            (c for c in authorization.challenges if c.uri == challenge.uri), challenge
        )
        reason = validated.error or f"authorization is {authorization.status}"
        logger.warning(
            "Authorization for %s failed: %s", authorization.identifier.value, reason
        )
        return CouldNotCompleteChallenge(validated, reason)

    async def challenges_cleanup(self, presented: typing.List[PresentedChallenge]) -> None:
        """Cleans up after the presented challenges.

        Cleanup is best effort: errors are logged, never raised.

        :param presented: The challenges whose proofs were handed to solvers.
        """
        results = await asyncio.gather(
            *[
                p.solver.cleanup(p.domain, p.token, p.key_auth)
                for p in presented
            ],
            return_exceptions=True,
        )

        for p, result in zip(presented, results):
            if isinstance(result, Exception):
                logger.warning(
                    "Could not clean up challenge for %s with %s: %s",
                    p.domain,
                    type(p.solver).__name__,
                    result,
                )

    async def order_finalize(
        self, order: Order, csr: "cryptography.x509.CertificateSigningRequest"
    ) -> Order:
        """Finalizes the order using the given CSR.

        Waits for the order to become *ready*, submits the CSR and waits for the order to become *valid*.

        :param order: Order that is to be finalized.
        :param csr: The CSR that is submitted to apply for certificate issuance.
        :raises:

            * :class:`~acmeflow.client.exceptions.OrderFailed` If the order became *invalid*.
            * :class:`~acmeflow.client.exceptions.PollingException` If the order did not change its
              state in time.
            * :class:`acme.messages.Error` If the server is unwilling to finalize the order.

        :returns: The finalized order.
        """
        try:
            order = await self._poll_until(
                self.core.orders.poll,
                order.url,
                predicate=is_ready,
                negative_predicate=is_invalid,
                delay=self.ORDER_POLL_DELAY,
                max_tries=self.ORDER_POLL_TRIES,
            )

            if order.status == acme.messages.STATUS_READY:
                order = await self.core.orders.finalize(order, csr)

            return await self._poll_until(
                self.core.orders.poll,
                order.url,
                predicate=is_valid,
                negative_predicate=is_invalid,
                delay=self.ORDER_POLL_DELAY,
                max_tries=self.ORDER_POLL_TRIES,
            )
        except PollingException as e:
            if is_invalid(e.obj):
                raise OrderFailed(e.obj) from e
            raise

    async def certificate_get(self, order: Order) -> str:
        """Downloads the given order's certificate.

        :param order: The order whose certificate to download.
        :raises: :class:`ValueError` If the order has not been finalized yet, i.e. the certificate
            property is *None*.
        :return: The order's certificate chain encoded as PEM.
        """
        if not order.certificate:
            raise ValueError("This order has not been finalized")

        return await self.core.certificates.get(order.certificate)

    async def certificate_revoke(
        self,
        certificate: "cryptography.x509.Certificate",
        reason: RevocationReason = None,
    ) -> bool:
        """Revokes the given certificate.

        :param certificate: The certificate to revoke.
        :param reason: Optional reason for revocation.
        :raises: :class:`acme.messages.Error` If the revocation did not succeed.
        :return: *True* if the revocation succeeded.
        """
        return await self.core.certificates.revoke(certificate, reason)

    async def _poll_until(
        self,
        fetch,
        url,
        *,
        predicate,
        negative_predicate,
        delay=3.0,
        max_tries=5,
    ):
        result, retry_after = await fetch(url)
        tries = max_tries

        while not predicate(result):
            if negative_predicate(result):
                raise PollingException(
                    result,
                    f"Polling unsuccessful: {url}, {negative_predicate.__name__} became True",
                )

            if tries <= 0:
                raise PollingException(result, f"Polling unsuccessful: {url}")

            wait = delay if retry_after is None else min(retry_after, self.MAX_RETRY_AFTER)
            logger.debug(
                "Polling %s (%s) in %.1fs, tries remaining: %d", url, result.status, wait, tries - 1
            )
            await self._clock.sleep(wait)

            result, retry_after = await fetch(url)
            tries -= 1

        return result
