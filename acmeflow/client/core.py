import json
import logging
import random
import typing

import acme.messages
import josepy

from acmeflow.clock import Clock
from acmeflow.client.exceptions import InvalidDirectory, NonceRetryTimeout
from acmeflow.client.jws import JWSSigner
from acmeflow.client.nonces import NonceManager, nonce_from_response
from acmeflow.client.services import (
    AccountService,
    AuthorizationService,
    CertificateService,
    ChallengeService,
    OrderService,
)
from acmeflow.client.transport import AcmeResponse, Transport
from acmeflow.models.messages import Directory

logger = logging.getLogger(__name__)

BAD_NONCE = "badNonce"


def is_bad_nonce(error: acme.messages.Error) -> bool:
    return error.code == BAD_NONCE or str(error.typ).endswith(f":{BAD_NONCE}")


async def get_directory(transport: Transport, directory_url: str) -> Directory:
    """Fetches and validates the CA's directory.

    :param transport: The transport to use.
    :param directory_url: The URL of the directory.
    :raises: :class:`~acmeflow.client.exceptions.InvalidDirectory` If the directory cannot be fetched
        or lacks the *newAccount* or *newOrder* URL.
    :return: The directory.
    """
    try:
        data = await transport.get_json(directory_url)
        directory = Directory.from_json(data)
    except (josepy.errors.DeserializationError, acme.messages.Error) as e:
        raise InvalidDirectory(f"get directory at {directory_url!r}: {e}") from e

    if not directory.new_account:
        raise InvalidDirectory("directory missing new registration URL")
    if not directory.new_order:
        raise InvalidDirectory("directory missing new order URL")

    return directory


class Core:
    """Signed request executor shared by the resource services.

    Every request is signed with a fresh nonce and sent through the :class:`~acmeflow.client.transport.Transport`.
    The nonce that comes back with the response, successful or not, is returned to the pool.
    Requests that the server rejects with *badNonce* are re-signed and retried with exponential
    backoff; every other error is raised to the caller immediately.
    """

    INITIAL_INTERVAL = 0.2
    """The delay in seconds before the first retry."""
    MULTIPLIER = 1.5
    """Factor by which the delay grows with every retry."""
    RANDOMIZATION_FACTOR = 0.5
    """Relative jitter applied to every delay."""
    MAX_INTERVAL = 5.0
    """Upper bound in seconds for a single delay."""
    MAX_ELAPSED_TIME = 20.0
    """Time in seconds after which no further retry is started."""

    def __init__(
        self,
        transport: Transport,
        directory: Directory,
        private_key: josepy.jwk.JWK,
        alg: josepy.jwa.JWASignature,
        kid: str = None,
        clock: Clock = None,
    ):
        self.transport = transport
        self.directory = directory
        self.nonce_manager = NonceManager(transport, directory.new_nonce)
        self.signer = JWSSigner(private_key, alg, self.nonce_manager, kid=kid)
        self.clock = clock or Clock()

        self.accounts = AccountService(self)
        self.authorizations = AuthorizationService(self)
        self.certificates = CertificateService(self)
        self.challenges = ChallengeService(self)
        self.orders = OrderService(self)

    @classmethod
    async def create(
        cls,
        transport: Transport,
        directory_url: str,
        private_key: josepy.jwk.JWK,
        alg: josepy.jwa.JWASignature,
        kid: str = None,
        clock: Clock = None,
    ) -> "Core":
        """Fetches the directory and creates a :class:`Core` bound to it.

        :raises: :class:`~acmeflow.client.exceptions.InvalidDirectory` If the directory is unusable.
        """
        if private_key is None:
            raise ValueError("An account key is required")

        directory = await get_directory(transport, directory_url)
        return cls(transport, directory, private_key, alg, kid=kid, clock=clock)

    def key_authorization(self, token: str) -> str:
        return self.signer.key_authorization(token)

    async def post(
        self,
        url: str,
        obj: typing.Union[josepy.JSONDeSerializable, dict, None],
        accept: str = None,
        use_jwk: bool = False,
    ) -> AcmeResponse:
        """Performs a signed POST request with the given object as payload.

        :param url: The request URL.
        :param obj: The payload. An empty JSON object is sent if it is *None*.
        :param accept: Optional *Accept* header.
        :param use_jwk: Whether to sign with the public JWK in place of the account's *kid*.
        :raises:

            * :class:`acme.messages.Error` If the server returned a problem document other than *badNonce*.
            * :class:`~acmeflow.client.exceptions.NonceRetryTimeout` If the nonce retry budget was spent.
        """
        if obj is None:
            content = b"{}"
        elif isinstance(obj, josepy.JSONDeSerializable):
            content = obj.json_dumps().encode()
        else:
            content = json.dumps(obj).encode()

        return await self._retrying_post(url, content, accept, use_jwk=use_jwk)

    async def post_as_get(self, url: str, accept: str = None) -> AcmeResponse:
        """Performs a POST-as-GET request, i.e. a signed POST with an empty payload.

        `6.3. GET and POST-as-GET Requests <https://tools.ietf.org/html/rfc8555#section-6.3>`_
        """
        return await self._retrying_post(url, b"", accept)

    def _next_delay(self, interval: float) -> float:
        delta = self.RANDOMIZATION_FACTOR * interval
        return random.uniform(interval - delta, interval + delta)

    async def _retrying_post(
        self, url: str, content: bytes, accept: str = None, use_jwk: bool = False
    ) -> AcmeResponse:
        start = self.clock.monotonic()
        interval = self.INITIAL_INTERVAL
        attempt = 1

        while True:
            try:
                return await self._signed_post(url, content, accept, use_jwk)
            except acme.messages.Error as e:
                if not is_bad_nonce(e):
                    raise

                delay = self._next_delay(interval)
                elapsed = self.clock.monotonic() - start
                if elapsed + delay > self.MAX_ELAPSED_TIME:
                    raise NonceRetryTimeout(url, e) from e

                logger.info("nonce error retry #%d for %s in %.2fs: %s", attempt, url, delay, e)
                await self.clock.sleep(delay)

                interval = min(interval * self.MULTIPLIER, self.MAX_INTERVAL)
                attempt += 1

    async def _signed_post(
        self, url: str, content: bytes, accept: str = None, use_jwk: bool = False
    ) -> AcmeResponse:
        signed = await self.signer.sign_content(url, content, use_jwk=use_jwk)

        response = await self.transport.post(url, signed, accept=accept)
        self.nonce_manager.push(nonce_from_response(response))

        response.raise_for_status()
        return response
