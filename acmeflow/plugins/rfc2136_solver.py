import logging
import typing

import dns.asyncquery
import dns.asyncresolver
import dns.exception
import dns.name
import dns.rcode
import dns.tsigkeyring
import dns.update

from acmeflow.client.challenge_solver import ChallengeSolver
from acmeflow.client.dns01 import challenge_record
from acmeflow.models import ChallengeType
from acmeflow.plugin_base import PluginRegistry

logger = logging.getLogger(__name__)

"""
This module contains a DNS challenge solver using RFC2136 TSIG updates

It looks up the zone name using the TSIG credentials on the update server
"""


@PluginRegistry.register_plugin("rfc2136")
class RFC2136Client(ChallengeSolver):
    """Provisions DNS-01 TXT records using RFC 2136 dynamic updates.

    Updates are signed with a TSIG key and sent to a single server, usually the zone's primary.
    """

    SUPPORTED_CHALLENGES = frozenset([ChallengeType.DNS_01])

    class Config(ChallengeSolver.Config):
        type: typing.Literal["rfc2136"] = "rfc2136"
        """The type of challenge solver"""
        server: str
        """DNS server to use for TSIG updates"""
        keyid: str
        """TSIG key ID to use for TSIG updates"""
        alg: str
        """TSIG algorithm to use for TSIG updates"""
        secret: str
        """TSIG secret to use for TSIG updates"""
        ttl: int = 60
        """TTL of the TXT records"""

    def __init__(self, cfg: Config):
        super().__init__(cfg=cfg)
        self.config = cfg

        self.keyring = dns.tsigkeyring.from_text({cfg.keyid: (cfg.alg, cfg.secret)})
        self.resolver = dns.asyncresolver.Resolver(configure=False)
        self.resolver.nameservers = [cfg.server]
        self.resolver.keyring = self.keyring
        self.resolver.keyname = cfg.keyid
        self.resolver.keyalgorithm = cfg.alg

    async def _run_query(self, msg):
        response = await dns.asyncquery.tcp(q=msg, where=self.config.server)
        if response.rcode() != dns.rcode.NOERROR:
            raise dns.exception.DNSException(
                f"Update rejected by {self.config.server}: {dns.rcode.to_text(response.rcode())}"
            )

    async def _update(self, name: str):
        zone = await dns.asyncresolver.zone_for_name(name, resolver=self.resolver)
        name = dns.name.from_text(name).relativize(zone)

        update = dns.update.Update(zone, keyring=self.keyring)
        return name, update

    async def set_txt_record(self, name: str, text: str, ttl: int = 60):
        logger.debug("Setting TXT record %s = %s, TTL %d", name, text, ttl)

        name, update = await self._update(name)
        # Adding an existing rdata is a no-op, so presenting twice is harmless.
        update.add(name, ttl, "TXT", text)

        await self._run_query(update)

    async def delete_txt_record(self, name: str, text: str):
        logger.debug("Deleting TXT record %s = %s", name, text)

        name, update = await self._update(name)
        update.delete(name, "TXT", text)

        await self._run_query(update)

    async def present(self, domain: str, token: str, key_auth: str) -> None:
        name, text = challenge_record(domain, key_auth)
        await self.set_txt_record(name, text, self.config.ttl)

    async def cleanup(self, domain: str, token: str, key_auth: str) -> None:
        name, text = challenge_record(domain, key_auth)
        await self.delete_txt_record(name, text)
