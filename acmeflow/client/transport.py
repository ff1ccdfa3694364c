import email.utils
import logging
import ssl
import typing
from dataclasses import dataclass, field
from datetime import datetime, timezone

import acme.messages
from aiohttp import ClientResponseError, ClientSession, ClientTimeout

from acmeflow.version import __version__

logger = logging.getLogger(__name__)

JOSE_CONTENT_TYPE = "application/jose+json"
PROBLEM_CONTENT_TYPE = "application/problem+json"
PEM_CHAIN_CONTENT_TYPE = "application/pem-certificate-chain"


def parse_retry_after(value: typing.Optional[str], now: datetime = None) -> typing.Optional[float]:
    """Parses a *Retry-After* header value into a number of seconds.

    :param value: The header's value, either delta-seconds or an HTTP date.
    :param now: The reference time for HTTP dates. Defaults to the current time.
    :return: The delay in seconds, or *None* if the header is absent or unparsable.
    """
    if not value:
        return None

    value = value.strip()
    if value.isdigit():
        return float(value)

    try:
        when = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("Ignoring unparsable Retry-After header %r", value)
        return None

    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)

    return max(0.0, (when - (now or datetime.now(timezone.utc))).total_seconds())


@dataclass
class AcmeResponse:
    """A fully read response of the ACME server."""

    status: int
    headers: typing.Mapping[str, str]
    data: typing.Any = None
    """Decoded JSON document, :class:`acme.messages.Error` for problem documents, or text."""
    links: typing.Mapping = field(default_factory=dict)
    request_info: typing.Any = None
    history: typing.Tuple = ()

    @property
    def location(self) -> typing.Optional[str]:
        return self.headers.get("Location")

    @property
    def retry_after(self) -> typing.Optional[float]:
        return parse_retry_after(self.headers.get("Retry-After"))

    def raise_for_status(self) -> None:
        """Raises the CA's problem document, or a generic error for other unsuccessful responses.

        :raises:

            * :class:`acme.messages.Error` If the server answered with a problem document.
            * :class:`aiohttp.ClientResponseError` If the status code is not *2xx*.
        """
        if isinstance(self.data, acme.messages.Error):
            raise self.data

        if not 200 <= self.status < 300:
            raise ClientResponseError(self.request_info, self.history, status=self.status)


class Transport:
    """Thin HTTP layer between the ACME engine and the CA.

    Requests are neither signed nor retried here; :class:`~acmeflow.client.core.Core` does both.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        user_agent: str = None,
        ssl_context: ssl.SSLContext = None,
        session: ClientSession = None,
    ):
        """Creates a :class:`Transport` instance.

        Must be called from within a running event loop, as it creates the :class:`aiohttp.ClientSession`.

        :param timeout: Total time in seconds that a single request may take.
        :param user_agent: The *User-Agent* header sent with every request.
        :param ssl_context: The SSL context used to verify the CA's certificate.
        :param session: An existing session to use instead of creating one.
        """
        self._ssl_context = ssl_context or ssl.create_default_context()
        self._session = session or ClientSession(
            headers={"User-Agent": user_agent or f"acmeflow Client {__version__}"},
            timeout=ClientTimeout(total=timeout),
        )

    async def close(self):
        await self._session.close()

    async def get_json(self, url: str) -> dict:
        async with self._session.get(url, ssl=self._ssl_context) as resp:
            response = await self._read(resp)

        response.raise_for_status()
        return response.data

    async def head(self, url: str) -> AcmeResponse:
        async with self._session.head(url, ssl=self._ssl_context) as resp:
            return await self._read(resp)

    async def post(self, url: str, body: str, accept: str = None) -> AcmeResponse:
        """Posts a JWS to the given URL.

        The response is returned even if it signals an error, so that its nonce can be used.

        :param url: The request URL.
        :param body: The serialized JWS.
        :param accept: Optional *Accept* header, e.g. for certificate downloads.
        """
        headers = {"Content-Type": JOSE_CONTENT_TYPE}
        if accept:
            headers["Accept"] = accept

        async with self._session.post(
            url, data=body, headers=headers, ssl=self._ssl_context
        ) as resp:
            return await self._read(resp)

    async def _read(self, resp) -> AcmeResponse:
        if resp.content_type == PROBLEM_CONTENT_TYPE:
            data = acme.messages.Error.from_json(await resp.json(content_type=None))
        elif resp.content_type == "application/json":
            data = await resp.json()
        else:
            data = await resp.text()

        logger.debug("%s %s -> %d", resp.method, resp.url, resp.status)

        return AcmeResponse(
            status=resp.status,
            headers=resp.headers,
            data=data,
            links=resp.links,
            request_info=resp.request_info,
            history=resp.history,
        )
