import enum


class IdentifierType(str, enum.Enum):
    """The types that an identifier in an order can have.

    `9.7.7. Identifier Types <https://tools.ietf.org/html/rfc8555#section-9.7.7>`_

    Subclassing :class:`str` simplifies json serialization using :func:`json.dumps`.
    """

    DNS = "dns"
    """
    RFC 8555 - Automatic Certificate Management Environment (ACME)

    https://www.rfc-editor.org/rfc/rfc8555.html#section-9.7.7
    """

    IP = "ip"
    """
    RFC 8738 - Automated Certificate Management Environment (ACME) IP Identifier Validation Extension

    https://www.rfc-editor.org/rfc/rfc8738.html
    """
