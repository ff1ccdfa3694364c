import acme.messages


class AcmeClientException(Exception):
    """General ACME client exception."""

    pass


class InvalidDirectory(AcmeClientException):
    """Exception that is raised if the CA's directory lacks a URL the client cannot work without."""

    pass


class ProtocolViolation(AcmeClientException):
    """Exception that is raised if a server response does not conform to RFC 8555."""

    def __init__(self, url, *args):
        super().__init__(*args)
        self.url: str = url
        """The URL of the offending response."""

    def __str__(self):
        reason = f": {self.args[0]}" if self.args else ""
        return f"Unexpected response from {self.url}{reason}"


class SigningError(AcmeClientException):
    """Exception that is raised if a request could not be signed.

    Signing errors are caused by the account key or the nonce encoding and are never retried.
    """

    pass


class NonceRetryTimeout(AcmeClientException):
    """Exception that is raised if the server kept rejecting nonces until the retry budget was spent."""

    def __init__(self, url, error, *args):
        super().__init__(*args)
        self.url: str = url
        """The URL the request was made to."""
        self.error: acme.messages.Error = error
        """The last *badNonce* error returned by the server."""

    def __str__(self):
        return f"Gave up retrying {self.url} after repeated nonce errors: {self.error}"


class CouldNotCompleteChallenge(AcmeClientException):
    """Exception that is raised if completion of a specific challenge failed."""

    def __init__(self, challenge, *args):
        super().__init__(*args)
        self.challenge: acme.messages.ChallengeBody = challenge
        """The challenge whose completion was unsuccessful."""

    def __str__(self):
        reason = f": {self.args[0]}" if self.args else ""
        return f"Could not complete challenge {self.challenge.uri}{reason}"


class OrderFailed(AcmeClientException):
    """Exception that is raised if an order became *invalid* during finalization."""

    def __init__(self, order, *args):
        super().__init__(*args)
        self.order = order

    def __str__(self):
        return f"Order {self.order.url} is {self.order.status}: {self.order.error}"


class PollingException(AcmeClientException):
    """Exception that is used internally to communicate polling timeouts or errors."""

    def __init__(self, obj, *args):
        super().__init__(*args)
        self.obj = obj


class PropagationTimeout(AcmeClientException):
    """Exception that is raised if a DNS-01 TXT record did not propagate in time.

    The CA has not been asked to validate the challenge when this is raised.
    """

    def __init__(self, fqdn, value, *args):
        super().__init__(*args)
        self.fqdn: str = fqdn
        self.value: str = value

    def __str__(self):
        reason = f" ({self.args[0]})" if self.args else ""
        return f"Time limit exceeded waiting for TXT {self.fqdn} = {self.value}{reason}"


class DNSLookupError(AcmeClientException):
    """Exception that is raised if a DNS lookup failed after all retries."""

    pass


class ZoneNotFound(DNSLookupError):
    """Exception that is raised if no start of authority could be found for a name."""

    pass
