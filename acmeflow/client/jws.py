import binascii
import logging
import typing

import acme.jws
import josepy

from acmeflow.client.exceptions import SigningError
from acmeflow.client.nonces import NonceManager
from acmeflow.models.messages import KeyChange

logger = logging.getLogger(__name__)


class JWSSigner:
    """Signs request payloads with the account key.

    Every signed request consumes exactly one nonce from the :class:`~acmeflow.client.nonces.NonceManager`.
    Before the account is known to the server, the protected header carries the public JWK;
    afterwards it carries the account's *kid*.
    """

    def __init__(
        self,
        private_key: josepy.jwk.JWK,
        alg: josepy.jwa.JWASignature,
        nonce_manager: NonceManager,
        kid: str = None,
    ):
        if private_key is None:
            raise ValueError("An account key is required to sign requests")

        self._key = private_key
        self._alg = alg
        self._nonces = nonce_manager
        self.kid: typing.Optional[str] = kid
        """The account URL. *None* until the account has been registered or looked up."""

    @property
    def public_key(self) -> josepy.jwk.JWK:
        return self._key.public_key()

    def set_key(self, private_key: josepy.jwk.JWK, alg: josepy.jwa.JWASignature) -> None:
        """Replaces the signing key, e.g. after a successful key rollover."""
        self._key = private_key
        self._alg = alg

    async def sign_content(self, url: str, payload: bytes, use_jwk: bool = False) -> str:
        """Signs the payload for a request to the given URL.

        :param url: The request URL, bound into the protected header.
        :param payload: The serialized payload. :code:`b""` for POST-as-GET requests.
        :param use_jwk: Whether to embed the public JWK instead of the *kid*, as *newAccount* requires.
        :raises: :class:`~acmeflow.client.exceptions.SigningError` If the nonce or key is unusable.
        :return: The JWS in flattened JSON serialization.
        """
        nonce = await self._nonces.pop()

        try:
            decoded_nonce = josepy.b64decode(nonce)
        except (binascii.Error, ValueError) as e:
            raise SigningError(f"Server supplied an undecodable nonce {nonce!r}") from e

        try:
            return acme.jws.JWS.sign(
                payload,
                key=self._key,
                alg=self._alg,
                nonce=decoded_nonce,
                url=url,
                kid=None if use_jwk else self.kid,
            ).json_dumps(indent=2)
        except (TypeError, ValueError, AttributeError) as e:
            raise SigningError(f"Could not sign request to {url}: {e}") from e

    def sign_eab_content(self, new_account_url: str, kid: str, hmac_key: str) -> dict:
        """Creates an external account binding for the account key.

        `7.3.4. External Account Binding <https://tools.ietf.org/html/rfc8555#section-7.3.4>`_

        :param new_account_url: The CA's *newAccount* URL.
        :param kid: The key identifier that the CA issued for the external account.
        :param hmac_key: The base64url encoded MAC key that the CA issued for the external account.
        :raises: :class:`~acmeflow.client.exceptions.SigningError` If the MAC key cannot be decoded.
        :return: The JWS to embed as *externalAccountBinding* in the registration.
        """
        try:
            mac_key = josepy.jwk.JWKOct(key=josepy.b64decode(hmac_key))
        except (binascii.Error, ValueError) as e:
            raise SigningError("The external account binding's hmac_key is not valid base64url") from e

        payload = self.public_key.json_dumps().encode()
        return acme.jws.JWS.sign(
            payload,
            key=mac_key,
            alg=josepy.jwa.HS256,
            nonce=None,
            url=new_account_url,
            kid=kid,
        ).to_partial_json()

    def sign_key_change(
        self,
        new_key: josepy.jwk.JWK,
        new_alg: josepy.jwa.JWASignature,
        url: str,
    ) -> dict:
        """Creates the inner JWS of a key rollover request, signed by the new key.

        :param new_key: The account's new private key.
        :param new_alg: The signature algorithm matching the new key.
        :param url: The CA's *keyChange* URL.
        :return: The inner JWS, to be sent as payload of a request signed with the current key.
        """
        key_change = KeyChange(account=self.kid, oldKey=self.public_key)
        return acme.jws.JWS.sign(
            key_change.json_dumps().encode(),
            key=new_key,
            alg=new_alg,
            nonce=None,
            url=url,
        ).to_partial_json()

    def key_authorization(self, token: str) -> str:
        """Computes the key authorization for a challenge token.

        `8.1. Key Authorizations <https://tools.ietf.org/html/rfc8555#section-8.1>`_

        :param token: The challenge's token as sent by the server.
        :return: :code:`token || '.' || base64url(JWK thumbprint)`
        """
        thumbprint = josepy.b64encode(self.public_key.thumbprint()).decode()
        return f"{token}.{thumbprint}"
