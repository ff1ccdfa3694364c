import enum


class ChallengeType(str, enum.Enum):
    """The challenge types that a :class:`~acmeflow.client.ChallengeSolver` can support.

    Subclassing :class:`str` simplifies json serialization using :func:`json.dumps`.
    """

    HTTP_01 = "http-01"
    """The ACME *http-01* challenge type.
    See `8.3. HTTP Challenge <https://tools.ietf.org/html/rfc8555#section-8.3>`_"""
    DNS_01 = "dns-01"
    """The ACME *dns-01* challenge type.
    See `8.4. DNS Challenge <https://tools.ietf.org/html/rfc8555#section-8.4>`_"""
    TLS_ALPN_01 = "tls-alpn-01"
    """The ACME *tls-alpn-01* challenge type.
    See `RFC 8737 <https://tools.ietf.org/html/rfc8737>`_"""

    @classmethod
    def parse(cls, typ: str) -> "ChallengeType | None":
        """Returns the member for the given type string, or *None* for types the client does not know."""
        try:
            return cls(typ)
        except ValueError:
            return None
