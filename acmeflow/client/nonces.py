import logging
import typing

from acmeflow.client.exceptions import AcmeClientException

logger = logging.getLogger(__name__)

REPLAY_NONCE_HEADER = "Replay-Nonce"


def nonce_from_response(response) -> typing.Optional[str]:
    """Returns the nonce that the server attached to the given response, if any."""
    if response is None:
        return None
    return response.headers.get(REPLAY_NONCE_HEADER) or None


class NonceManager:
    """Pool of unused anti-replay nonces.

    Nonces are fungible: any unused nonce is good for any request, so the pool is an unordered set.
    :meth:`pop` and :meth:`push` do not yield to the event loop between inspecting and changing the pool,
    which makes them safe to call from any number of concurrent tasks without handing out a nonce twice.
    """

    def __init__(self, transport, new_nonce_url: str):
        self._transport = transport
        self._new_nonce_url = new_nonce_url
        self._nonces: typing.Set[str] = set()

    def __len__(self):
        return len(self._nonces)

    def push(self, nonce: typing.Optional[str]) -> None:
        """Adds a nonce taken from any server response to the pool.

        :param nonce: The nonce. Empty values are ignored.
        """
        if nonce:
            logger.debug("Storing nonce %s", nonce)
            self._nonces.add(nonce)

    async def pop(self) -> str:
        """Takes a nonce out of the pool, fetching a fresh one from the server if the pool is empty.

        :raises:

            * :class:`acme.messages.Error` If the server answered the nonce request with an error.
            * :class:`~acmeflow.client.exceptions.AcmeClientException` If the server did not supply a nonce.
            * :class:`aiohttp.ClientError` If the request failed.

        :return: A nonce that has not been used before.
        """
        try:
            return self._nonces.pop()
        except KeyError:
            return await self._fetch()

    async def _fetch(self) -> str:
        if not self._new_nonce_url:
            raise AcmeClientException("The server's directory does not advertise a newNonce URL")

        logger.debug("Requesting fresh nonce")
        response = await self._transport.head(self._new_nonce_url)
        response.raise_for_status()

        nonce = nonce_from_response(response)
        if not nonce:
            raise AcmeClientException(
                f"The server did not return a {REPLAY_NONCE_HEADER} header"
            )

        # The fetched nonce goes straight to the caller, it never enters the pool.
        return nonce
