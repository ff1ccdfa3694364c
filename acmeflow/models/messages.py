import enum
import typing

import acme.messages
import josepy
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from acmeflow.models.account import AccountStatus
from acmeflow.models.identifier import IdentifierType

# acme does not know 'expired' for authorizations out of the box. Instantiating the
# constant registers it, so that Status.from_json accepts it.
STATUS_EXPIRED = acme.messages.Status("expired")

TERMINAL_AUTHORIZATION_STATES = frozenset(
    [
        acme.messages.STATUS_INVALID,
        acme.messages.STATUS_DEACTIVATED,
        acme.messages.STATUS_REVOKED,
        STATUS_EXPIRED,
    ]
)
"""Authorization states from which no transition to *valid* is possible."""


def encode_cert(cert: "cryptography.x509.Certificate") -> str:
    return josepy.encode_b64jose(cert.public_bytes(encoding=serialization.Encoding.DER))


def decode_cert(b64der: str) -> "cryptography.x509.Certificate":
    return x509.load_der_x509_certificate(josepy.decode_b64jose(b64der))


def encode_csr(csr):
    # Encode CSR as JOSE Base-64 DER.
    return josepy.encode_b64jose(csr.public_bytes(encoding=serialization.Encoding.DER))


def decode_csr(b64der):
    return x509.load_der_x509_csr(josepy.decode_b64jose(b64der))


class DirectoryMeta(josepy.JSONObjectWithFields):
    """The *meta* object of an ACME directory.

    `7.1.1. Directory <https://tools.ietf.org/html/rfc8555#section-7.1.1>`_
    """

    terms_of_service: str = josepy.Field("termsOfService", omitempty=True)
    """URL of the CA's current terms of service."""
    website: str = josepy.Field("website", omitempty=True)
    caa_identities: typing.List[str] = josepy.Field("caaIdentities", omitempty=True)
    external_account_required: bool = josepy.Field(
        "externalAccountRequired", omitempty=True
    )
    """Whether the CA requires an external account binding on registration."""
    profiles: typing.Dict[str, str] = josepy.Field("profiles", omitempty=True)


class Directory(josepy.JSONObjectWithFields):
    """The ACME server's directory of resource URLs.

    The directory is fetched once by :class:`~acmeflow.client.core.Core` and not modified afterwards.
    """

    new_nonce: str = josepy.Field("newNonce", omitempty=True)
    new_account: str = josepy.Field("newAccount", omitempty=True)
    new_order: str = josepy.Field("newOrder", omitempty=True)
    new_authz: str = josepy.Field("newAuthz", omitempty=True)
    revoke_cert: str = josepy.Field("revokeCert", omitempty=True)
    key_change: str = josepy.Field("keyChange", omitempty=True)
    renewal_info: str = josepy.Field("renewalInfo", omitempty=True)
    meta: DirectoryMeta = josepy.Field(
        "meta", decoder=DirectoryMeta.from_json, omitempty=True
    )

    @property
    def external_account_required(self) -> bool:
        return bool(self.meta and self.meta.external_account_required)


class RevocationReason(enum.Enum):
    """Certificate revocation reasons.

    Defined in `5.3.1. Reason Code <https://tools.ietf.org/html/rfc5280#section-5.3.1>`_ of RFC 5280.
    """

    unspecified = 0
    keyCompromise = 1
    cACompromise = 2
    affiliationChanged = 3
    superseded = 4
    cessationOfOperation = 5
    certificateHold = 6
    # value 7 is unused
    removeFromCRL = 8
    privilegeWithdrawn = 9
    aACompromise = 10


class Revocation(josepy.JSONObjectWithFields):
    """Message type for certificate revocation requests."""

    certificate: "cryptography.x509.Certificate" = josepy.Field(
        "certificate", decoder=decode_cert, encoder=encode_cert
    )
    """The certificate to be revoked."""
    reason: RevocationReason = josepy.Field(
        "reason",
        decoder=RevocationReason,
        encoder=lambda reason: reason.value,
        omitempty=True,
    )
    """The reason for the revocation."""


class CertificateRequest(josepy.JSONObjectWithFields):
    """Message type for certificate requests, sent to an order's *finalize* URL."""

    csr: "cryptography.x509.CertificateSigningRequest" = josepy.Field(
        "csr", decoder=decode_csr, encoder=encode_csr
    )
    """The certificate signing request."""


class NewOrder(josepy.JSONObjectWithFields):
    """Message type for new order requests."""

    identifiers: typing.List[typing.Dict[str, str]] = josepy.Field(
        "identifiers", omitempty=True
    )
    """The requested identifiers."""
    not_before: "datetime.datetime" = acme.messages.fields.RFC3339Field(
        "notBefore", omitempty=True
    )
    """The requested *notBefore* field in the certificate."""
    not_after: "datetime.datetime" = acme.messages.fields.RFC3339Field(
        "notAfter", omitempty=True
    )
    """The requested *notAfter* field in the certificate."""

    @classmethod
    def from_data(
        cls,
        identifiers: typing.Union[
            typing.List[typing.Dict[str, str]], typing.List[str]
        ] = None,
        not_before: "datetime.datetime" = None,
        not_after: "datetime.datetime" = None,
    ) -> "NewOrder":
        """Class factory that takes care of parsing the list of *identifiers*.

        :param identifiers: Either a :class:`list` of :class:`dict` where each dict consists of the keys *type* \
            and *value*, or a :class:`list` of :class:`str` that represent the DNS names.
        :param not_before: The requested *notBefore* field in the certificate.
        :param not_after: The requested *notAfter* field in the certificate.
        :raises: :class:`ValueError` If the list of identifiers is empty or malformed.
        :return: The new order object.
        """
        if not identifiers:
            raise ValueError("At least one identifier is required to create an order")

        kwargs = {}

        if all(type(identifier) is dict for identifier in identifiers):
            if not all(
                identifier.get("type") and identifier.get("value")
                for identifier in identifiers
            ):
                raise ValueError("Each identifier requires a 'type' and a 'value'")
            kwargs["identifiers"] = identifiers
        elif all(type(identifier) is str for identifier in identifiers):
            if not all(identifier.strip() for identifier in identifiers):
                raise ValueError("Identifiers must not be empty strings")
            kwargs["identifiers"] = [
                dict(type=IdentifierType.DNS.value, value=identifier.strip().lower())
                for identifier in identifiers
            ]
        else:
            raise ValueError(
                "Could not decode identifiers list. Must be either List(str) or List(dict) where "
                "the dict has two keys 'type' and 'value'"
            )

        kwargs["not_before"] = not_before
        kwargs["not_after"] = not_after

        return cls(**kwargs)


class Account(josepy.JSONObjectWithFields):
    """Patched :class:`acme.messages.Registration` message type that adds a *kid* field.

    This is the representation of a user account that the :class:`~acmeflow.client.AcmeClient` uses internally.
    The :attr:`kid` field is sent to the remote server with every request and used for request verification.
    Fields that see no use inside the client have been removed.
    """

    status: AccountStatus = josepy.Field(
        "status", decoder=AccountStatus, omitempty=True
    )
    """The account's status."""
    contact: typing.Tuple[str] = josepy.Field("contact", omitempty=True)
    """The account's contact info."""
    orders: str = josepy.Field("orders", omitempty=True)
    """URL of the account's orders list."""
    kid: str = josepy.Field("kid")
    """The account's key ID."""


class AccountUpdate(josepy.JSONObjectWithFields):
    """Message type for account update and deactivation requests."""

    contact: typing.Tuple[str] = josepy.Field("contact", omitempty=True)
    status: AccountStatus = josepy.Field(
        "status", decoder=AccountStatus, omitempty=True
    )


class AuthorizationUpdate(josepy.JSONObjectWithFields):
    """Message type for authorization deactivation requests."""

    status: str = josepy.Field("status", omitempty=True)


class Order(acme.messages.Order):
    """Patched :class:`acme.messages.Order` message type that adds a *URL* field.

    The *URL* field is populated by copying the *Location* header from responses in the
    :class:`~acmeflow.client.AcmeClient`. Polling and finalization refer to the order by it.
    """

    url: str = josepy.Field("url", omitempty=True)
    """The order's URL at the remote CA."""


class KeyChange(josepy.JSONObjectWithFields):
    """Inner payload of a key rollover request.

    `7.3.5. Account Key Rollover <https://tools.ietf.org/html/rfc8555#section-7.3.5>`_
    """

    account = josepy.Field("account")
    oldKey = josepy.Field("oldKey", decoder=josepy.JWK.from_json)
