"""Resource services of the ACME engine.

Each service exposes the requests that one ACME resource kind supports. Services hold no state
besides their :class:`~acmeflow.client.core.Core`; every call is a live round trip to the CA.
Problem documents are raised unchanged as :class:`acme.messages.Error`.
"""
import logging
import typing

import acme.messages
import josepy

from acmeflow.client.exceptions import ProtocolViolation
from acmeflow.client.transport import PEM_CHAIN_CONTENT_TYPE
from acmeflow.models import AccountStatus
from acmeflow.models.messages import (
    Account,
    AccountUpdate,
    AuthorizationUpdate,
    CertificateRequest,
    NewOrder,
    Order,
    Revocation,
    RevocationReason,
)

if typing.TYPE_CHECKING:
    from acmeflow.client.core import Core

logger = logging.getLogger(__name__)


class _Service:
    def __init__(self, core: "Core"):
        self._core = core


class AccountService(_Service):
    def _account_from(self, response, kid: str) -> Account:
        account_obj = dict(response.data) if isinstance(response.data, dict) else {}
        account_obj["kid"] = kid
        return Account.from_json(account_obj)

    async def new(self, registration: acme.messages.Registration) -> Account:
        """Registers a new account, or fetches the existing one for the signing key.

        The account URL is taken from the *Location* header and used as *kid* for subsequent requests.

        :param registration: The registration message.
        :raises: :class:`~acmeflow.client.exceptions.ProtocolViolation` If the account URL is missing.
        :return: The account.
        """
        url = self._core.directory.new_account
        # newAccount requests carry the JWK instead of a kid.
        response = await self._core.post(url, registration, use_jwk=True)

        if not response.location:
            raise ProtocolViolation(url, "the response lacks the account URL in its Location header")

        account = self._account_from(response, response.location)
        self._core.signer.kid = account.kid
        return account

    async def new_with_eab(
        self, registration: acme.messages.Registration, kid: str, hmac_key: str
    ) -> Account:
        """Registers a new account bound to an external account.

        :param registration: The registration message, without *externalAccountBinding*.
        :param kid: The external account's key identifier.
        :param hmac_key: The external account's MAC key.
        """
        eab = self._core.signer.sign_eab_content(self._core.directory.new_account, kid, hmac_key)
        return await self.new(registration.update(external_account_binding=eab))

    async def lookup(self) -> Account:
        """Looks up the account that belongs to the signing key.

        :raises: :class:`acme.messages.Error` *accountDoesNotExist* if there is none.
        """
        reg = acme.messages.Registration.from_data(only_return_existing=True)
        return await self.new(reg)

    async def get(self, account_url: str) -> Account:
        response = await self._core.post_as_get(account_url)
        return self._account_from(response, account_url)

    async def update(self, account_url: str, **kwargs) -> Account:
        """Updates the account.

        :param account_url: The account URL.
        :param kwargs: Fields of :class:`~acmeflow.models.messages.AccountUpdate`, e.g. *contact*.
        """
        response = await self._core.post(account_url, AccountUpdate(**kwargs))
        return self._account_from(response, account_url)

    async def deactivate(self, account_url: str) -> Account:
        return await self.update(account_url, status=AccountStatus.DEACTIVATED)

    async def key_change(
        self,
        account_url: str,
        new_key: josepy.jwk.JWK,
        alg: josepy.jwa.JWASignature,
    ) -> None:
        """Rolls the account over to a new key.

        The signer uses the new key for all requests after the server accepted the change.
        """
        url = self._core.directory.key_change
        if not url:
            raise ValueError("The server does not support key rollover")

        inner = self._core.signer.sign_key_change(new_key, alg, url)
        await self._core.post(url, inner)
        self._core.signer.set_key(new_key, alg)


class OrderService(_Service):
    async def new(
        self,
        identifiers: typing.Union[typing.List[dict], typing.List[str]],
        not_before=None,
        not_after=None,
    ) -> Order:
        """Creates a new order.

        :raises: :class:`ValueError` If the identifiers are empty or malformed.
        """
        order = NewOrder.from_data(
            identifiers=identifiers, not_before=not_before, not_after=not_after
        )

        response = await self._core.post(self._core.directory.new_order, order)
        order_obj = dict(response.data)
        order_obj["url"] = response.location
        return Order.from_json(order_obj)

    async def poll(self, order_url: str) -> typing.Tuple[Order, typing.Optional[float]]:
        """Fetches an order along with the server's *Retry-After* hint."""
        response = await self._core.post_as_get(order_url)
        order_obj = dict(response.data)
        order_obj["url"] = order_url
        return Order.from_json(order_obj), response.retry_after

    async def get(self, order_url: str) -> Order:
        order, _ = await self.poll(order_url)
        return order

    async def finalize(
        self, order: Order, csr: "cryptography.x509.CertificateSigningRequest"
    ) -> Order:
        """Submits the CSR to the order's *finalize* URL.

        :return: The order as returned by the server, usually in state *processing* or *valid*.
        """
        response = await self._core.post(order.finalize, CertificateRequest(csr=csr))
        order_obj = dict(response.data)
        order_obj["url"] = response.location or order.url
        return Order.from_json(order_obj)


class AuthorizationService(_Service):
    async def poll(
        self, authorization_url: str
    ) -> typing.Tuple[acme.messages.Authorization, typing.Optional[float]]:
        """Fetches an authorization along with the server's *Retry-After* hint."""
        response = await self._core.post_as_get(authorization_url)
        return acme.messages.Authorization.from_json(response.data), response.retry_after

    async def get(self, authorization_url: str) -> acme.messages.Authorization:
        authorization, _ = await self.poll(authorization_url)
        return authorization

    async def deactivate(self, authorization_url: str) -> acme.messages.Authorization:
        response = await self._core.post(
            authorization_url,
            AuthorizationUpdate(status=acme.messages.STATUS_DEACTIVATED.name),
        )
        return acme.messages.Authorization.from_json(response.data)


class ChallengeService(_Service):
    async def get(self, challenge_url: str) -> acme.messages.ChallengeBody:
        response = await self._core.post_as_get(challenge_url)
        return acme.messages.ChallengeBody.from_json(response.data)

    async def new(self, challenge_url: str) -> acme.messages.ChallengeBody:
        """Tells the server that the challenge is ready to be validated.

        `7.5.1. Responding to Challenges <https://tools.ietf.org/html/rfc8555#section-7.5.1>`_
        """
        response = await self._core.post(challenge_url, None)
        return acme.messages.ChallengeBody.from_json(response.data)


class CertificateService(_Service):
    async def get(self, certificate_url: str) -> str:
        """Downloads a certificate chain.

        :return: The PEM encoded chain, leaf certificate first.
        """
        response = await self._core.post_as_get(certificate_url, accept=PEM_CHAIN_CONTENT_TYPE)
        return response.data

    async def revoke(
        self,
        certificate: "cryptography.x509.Certificate",
        reason: RevocationReason = None,
    ) -> bool:
        """Revokes a certificate.

        :return: *True* if the server confirmed the revocation.
        """
        url = self._core.directory.revoke_cert
        if not url:
            raise ValueError("The server does not support certificate revocation")

        response = await self._core.post(url, Revocation(certificate=certificate, reason=reason))
        return response.status == 200
