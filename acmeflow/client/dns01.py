"""Propagation check for DNS-01 challenge records.

Before the CA is told to validate a DNS-01 challenge, the TXT record must be visible on the
authoritative name servers of the record's zone. The CA validates only once, so asking it too early
wastes the attempt. No single resolver is trusted: the zone apex is discovered with an SOA walk,
its name servers are resolved, and each of them is asked directly.
"""
import asyncio
import hashlib
import logging
import typing

import dns.asyncquery
import dns.exception
import dns.flags
import dns.message
import dns.name
import dns.rcode
import dns.rdatatype
import dns.resolver
import josepy
from pydantic import Field
from pydantic_settings import BaseSettings

from acmeflow.clock import Clock
from acmeflow.client.exceptions import DNSLookupError, PropagationTimeout, ZoneNotFound

logger = logging.getLogger(__name__)

CHALLENGE_LABEL = "_acme-challenge"
DEFAULT_NAMESERVERS = ["8.8.8.8", "8.8.4.4"]
"""Recursive resolvers used if none are configured and the system has none."""
MAX_CNAME_HOPS = 50


def challenge_record(domain: str, key_auth: str) -> typing.Tuple[str, str]:
    """Returns the name and value of the TXT record that proves control over the domain.

    `8.4. DNS Challenge <https://tools.ietf.org/html/rfc8555#section-8.4>`_

    :param domain: The identifier, optionally with a wildcard label.
    :param key_auth: The challenge's key authorization.
    :return: The absolute record name and :code:`base64url(SHA-256(key_auth))`.
    """
    if domain.startswith("*."):
        domain = domain[2:]

    fqdn = f"{CHALLENGE_LABEL}.{domain.rstrip('.')}."
    value = josepy.b64encode(hashlib.sha256(key_auth.encode()).digest()).decode()
    return fqdn, value


def system_nameservers() -> typing.List[str]:
    try:
        return list(dns.resolver.Resolver().nameservers) or DEFAULT_NAMESERVERS
    except dns.resolver.NoResolverConfiguration:
        logger.warning(
            "No system resolver configuration found, using %s", ", ".join(DEFAULT_NAMESERVERS)
        )
        return DEFAULT_NAMESERVERS


def txt_values(response: dns.message.Message, qname: dns.name.Name) -> typing.List[str]:
    """Returns the TXT record values in the answer section, the strings of each record joined."""
    values = []
    for rrset in response.answer:
        if rrset.rdtype == dns.rdatatype.TXT and rrset.name == qname:
            values.extend(b"".join(rdata.strings).decode() for rdata in rrset)
    return values


class PropagationVerifier:
    """Waits until a DNS-01 TXT record is served by the authoritative name servers of its zone."""

    class Config(BaseSettings, extra="forbid", env_prefix="ACMEFLOW_DNS_"):
        check: bool = True
        """Whether to wait for propagation at all before notifying the CA."""
        require_complete: bool = True
        """Whether all queried servers must serve the record. Otherwise one is enough."""
        nameservers: typing.List[str] = Field(default_factory=list)
        """Recursive resolvers for zone and name server lookups. They are also polled for the record.
        The system's resolvers are used for lookups (and not polled) if this is empty."""
        timeout: float = 120.0
        """Time in seconds after which the record is considered not propagated."""
        interval: float = 2.0
        """Time in seconds between two polls."""
        query_timeout: float = 10.0
        """Time in seconds a single DNS query may take."""
        lookup_retries: int = 3
        """How often a failed SOA/NS/address lookup is retried."""

    def __init__(self, cfg: Config = None, clock: Clock = None):
        self.config = cfg or self.Config()
        self.clock = clock or Clock()
        self.resolvers: typing.List[str] = list(self.config.nameservers) or system_nameservers()
        self._zones: typing.Dict[dns.name.Name, dns.name.Name] = {}

    async def wait_for_propagation(self, domain: str, key_auth: str) -> None:
        """Blocks until the challenge record for the domain has propagated.

        :param domain: The identifier whose challenge record to check.
        :param key_auth: The challenge's key authorization.
        :raises:

            * :class:`~acmeflow.client.exceptions.PropagationTimeout` If the record did not propagate in time.
            * :class:`~acmeflow.client.exceptions.DNSLookupError` If the zone or its name servers
              could not be determined.
        """
        fqdn, value = challenge_record(domain, key_auth)
        deadline = self.clock.monotonic() + self.config.timeout

        qname = await self.resolve_challenge_fqdn(dns.name.from_text(fqdn))
        zone = await self.find_zone(qname)
        nameservers = await self.authoritative_nameservers(zone)

        logger.info(
            "Waiting for TXT %s = %s on %s (zone %s)",
            qname,
            value,
            ", ".join(nameservers),
            zone,
        )

        polls = 0
        while True:
            polls += 1
            if await self.check(qname, value, nameservers):
                logger.info("TXT %s propagated after %d poll(s)", qname, polls)
                return

            if self.clock.monotonic() + self.config.interval > deadline:
                raise PropagationTimeout(
                    qname.to_text(), value, f"not seen after {polls} poll(s)"
                )

            logger.debug("TXT %s has not propagated yet, checking again in %.1fs", qname, self.config.interval)
            await self.clock.sleep(self.config.interval)

    async def check(
        self, qname: dns.name.Name, value: str, nameservers: typing.List[str]
    ) -> bool:
        """Queries all authoritative servers, and the configured recursive resolvers, for the record once.

        Servers that do not answer count as not having the record yet.

        :param qname: The record name.
        :param value: The expected TXT value.
        :param nameservers: Addresses of the zone's authoritative servers.
        :return: Whether all (or, with *require_complete* off, any) of the servers serve the value.
        """
        targets = [(server, False) for server in nameservers]
        targets.extend((server, True) for server in self.config.nameservers)

        results = await asyncio.gather(
            *[self._serves(qname, value, server, recursive) for server, recursive in targets]
        )

        if self.config.require_complete:
            return bool(results) and all(results)
        return any(results)

    async def _serves(self, qname, value, server, recursive) -> bool:
        try:
            response = await self._query(qname, dns.rdatatype.TXT, server, recursive)
        except (dns.exception.DNSException, OSError) as e:
            logger.debug("Querying %s for TXT %s failed: %s", server, qname, e)
            return False

        values = txt_values(response, qname)
        if value not in values:
            logger.debug("%s does not have TXT %s = %s yet (records: %s)", server, qname, value, values)
            return False
        return True

    async def resolve_challenge_fqdn(self, qname: dns.name.Name) -> dns.name.Name:
        """Follows CNAME records at the challenge name, which may delegate it to another zone."""
        response = await self._lookup(qname, dns.rdatatype.TXT)

        for _ in range(MAX_CNAME_HOPS):
            target = next(
                (
                    rrset[0].target
                    for rrset in response.answer
                    if rrset.rdtype == dns.rdatatype.CNAME and rrset.name == qname
                ),
                None,
            )
            if target is None:
                break
            logger.debug("Following CNAME %s -> %s", qname, target)
            qname = target

        return qname

    async def find_zone(self, qname: dns.name.Name) -> dns.name.Name:
        """Finds the apex of the zone that the name belongs to.

        Walks up from the name label by label and asks the recursive resolvers for an SOA record.
        The first name that has an SOA record of its own is the zone apex.

        :raises: :class:`~acmeflow.client.exceptions.ZoneNotFound` If no start of authority was found.
        """
        if qname in self._zones:
            return self._zones[qname]

        candidate = qname
        while candidate != dns.name.root:
            response = await self._lookup(candidate, dns.rdatatype.SOA)
            rcode = response.rcode()

            if rcode == dns.rcode.NOERROR:
                answer_types = {rrset.rdtype for rrset in response.answer}
                # CNAME records cannot exist at a zone apex.
                if dns.rdatatype.CNAME not in answer_types and any(
                    rrset.rdtype == dns.rdatatype.SOA and rrset.name == candidate
                    for rrset in response.answer
                ):
                    logger.debug("Zone of %s is %s", qname, candidate)
                    self._zones[qname] = candidate
                    return candidate
            elif rcode != dns.rcode.NXDOMAIN:
                raise ZoneNotFound(
                    f"Unexpected response code {dns.rcode.to_text(rcode)} for SOA {candidate}"
                )

            candidate = candidate.parent()

        raise ZoneNotFound(f"Could not find the start of authority for {qname}")

    async def authoritative_nameservers(self, zone: dns.name.Name) -> typing.List[str]:
        """Resolves the addresses of the zone's authoritative name servers.

        :raises: :class:`~acmeflow.client.exceptions.DNSLookupError` If no address could be found.
        """
        response = await self._lookup(zone, dns.rdatatype.NS)
        hosts = sorted(
            {
                rdata.target
                for rrset in response.answer
                if rrset.rdtype == dns.rdatatype.NS
                for rdata in rrset
            }
        )
        if not hosts:
            raise DNSLookupError(f"Could not determine the authoritative name servers for {zone}")

        addresses = []
        for host in hosts:
            try:
                host_addresses = await self._addresses(host)
            except DNSLookupError as e:
                logger.warning("Could not resolve name server %s of zone %s: %s", host, zone, e)
                continue
            if not host_addresses:
                logger.warning("Name server %s of zone %s has no address", host, zone)
            addresses.extend(a for a in host_addresses if a not in addresses)

        if not addresses:
            raise DNSLookupError(f"None of the name servers of {zone} could be resolved")

        return addresses

    async def _addresses(self, host: dns.name.Name) -> typing.List[str]:
        for rdtype in (dns.rdatatype.A, dns.rdatatype.AAAA):
            response = await self._lookup(host, rdtype)
            addresses = [
                rdata.address
                for rrset in response.answer
                if rrset.rdtype == rdtype
                for rdata in rrset
            ]
            if addresses:
                return addresses
        return []

    async def _lookup(self, qname: dns.name.Name, rdtype) -> dns.message.Message:
        """Asks the recursive resolvers, retrying with a doubling delay if none of them answers."""
        delay = self.config.interval
        last_error = None

        for attempt in range(self.config.lookup_retries + 1):
            if attempt:
                logger.debug(
                    "Retrying %s %s in %.1fs after: %s",
                    dns.rdatatype.to_text(rdtype),
                    qname,
                    delay,
                    last_error,
                )
                await self.clock.sleep(delay)
                delay *= 2

            for server in self.resolvers:
                try:
                    response = await self._query(qname, rdtype, server, recursive=True)
                except (dns.exception.DNSException, OSError) as e:
                    last_error = e
                    continue

                if response.rcode() == dns.rcode.SERVFAIL:
                    last_error = DNSLookupError(f"SERVFAIL from {server}")
                    continue

                return response

        raise DNSLookupError(
            f"{dns.rdatatype.to_text(rdtype)} lookup of {qname} failed: {last_error}"
        )

    async def _query(
        self, qname: dns.name.Name, rdtype, server: str, recursive: bool
    ) -> dns.message.Message:
        query = dns.message.make_query(qname, rdtype)
        if not recursive:
            query.flags &= ~dns.flags.RD

        response, _ = await dns.asyncquery.udp_with_fallback(
            query, server, timeout=self.config.query_timeout
        )
        return response
