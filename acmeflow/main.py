import asyncio
import logging
import logging.config
from pathlib import Path
from typing import Any

import click
import yaml
from cryptography import x509
from pydantic_settings import BaseSettings

from acmeflow.client import AcmeClient, ChallengeSolver
from acmeflow.models.messages import RevocationReason
from acmeflow.plugin_base import PluginRegistry
from acmeflow.util import generate_csr, generate_ec_key, generate_rsa_key, pem_split

logger = logging.getLogger(__name__)

PluginRegistry.load_plugins(r"plugins")
challenge_solver_registry = PluginRegistry.get_registry(ChallengeSolver)


class Config(BaseSettings, extra="forbid"):
    client: AcmeClient.Config
    logging: Any = None


def load_config(config_file: str) -> Config:
    with open(config_file) as stream:
        config = yaml.safe_load(stream)

    return Config.model_validate(config)


def configure_logging(config: Config) -> None:
    if config.logging:
        logging.config.dictConfig(config.logging)
    else:
        logging.basicConfig(level=logging.INFO)


def generate_key(path: Path, key_type: str):
    if key_type == "rsa":
        return generate_rsa_key(path)
    return generate_ec_key(path)


def load_key(path: Path, key_type: str):
    if not path.exists():
        click.echo(f"Generating key of type {key_type} at {path}.")
        return generate_key(path, key_type)

    with open(path) as pem:
        keys = pem_split(pem.read())
    if len(keys) != 1:
        raise click.BadParameter(f"{path} must contain exactly one private key")
    return keys[0]


KEY_TYPE_OPTION = click.option(
    "--key-type",
    "-k",
    type=click.Choice(["rsa", "ec"], case_sensitive=False),
    default="rsa",
    show_default=True,
)


@click.group()
@click.pass_context
def main(ctx):
    pass


@main.command()
def plugins():
    """Lists the available plugins and their respective config strings."""
    mapping = challenge_solver_registry.config_mapping()
    click.echo(
        f"Challenge solvers: {', '.join([f'{solver.__name__} ({config_name})' for config_name, solver in mapping.items()])}"
    )


@main.command()
@click.argument("account-key-file", type=click.Path())
@KEY_TYPE_OPTION
def generate_account_key(account_key_file, key_type):
    """Generates an account key for the ACME client."""
    click.echo(f"Generating client key of type {key_type} at {account_key_file}.")
    generate_key(Path(account_key_file), key_type)


@main.command("generate-csr")
@click.argument("key-file", type=click.Path())
@click.argument("csr-file", type=click.Path())
@click.argument("domains", nargs=-1, required=True)
@KEY_TYPE_OPTION
def generate_csr_(key_file, csr_file, domains, key_type):
    """Generates a CSR for the given domains, creating the certificate key if it does not exist."""
    private_key = load_key(Path(key_file), key_type)
    generate_csr(domains[0], private_key, Path(csr_file), list(domains))
    click.echo(f"Wrote CSR for {', '.join(domains)} to {csr_file}.")


async def _issue(config: Config, domains, csr) -> str:
    async with AcmeClient(config.client) as client:
        return await client.obtain_certificate(list(domains), csr)


@main.command()
@click.option("--config-file", envvar="ACMEFLOW_CONFIG_FILE", type=click.Path(), required=True)
@click.option("--key-file", type=click.Path(), required=True, help="Certificate key, created if missing.")
@click.option("--out", "out_file", type=click.Path(), required=True, help="Where to write the PEM chain.")
@click.argument("domains", nargs=-1, required=True)
@KEY_TYPE_OPTION
def issue(config_file, key_file, out_file, domains, key_type):
    """Obtains a certificate for the given domains as defined in the config file."""
    config = load_config(config_file)
    configure_logging(config)

    private_key = load_key(Path(key_file), key_type)
    csr = generate_csr(domains[0], private_key, None, list(domains))

    pem = asyncio.run(_issue(config, domains, csr))

    with open(out_file, "w") as f:
        f.write(pem)
    click.echo(f"Wrote certificate chain for {', '.join(domains)} to {out_file}.")


async def _revoke(config: Config, certificate, reason) -> bool:
    async with AcmeClient(config.client) as client:
        return await client.certificate_revoke(certificate, reason)


@main.command()
@click.option("--config-file", envvar="ACMEFLOW_CONFIG_FILE", type=click.Path(), required=True)
@click.option(
    "--reason",
    type=click.Choice([r.name for r in RevocationReason]),
    default=None,
)
@click.argument("certificate-file", type=click.Path(exists=True))
def revoke(config_file, reason, certificate_file):
    """Revokes the (first) certificate in the given PEM file."""
    config = load_config(config_file)
    configure_logging(config)

    with open(certificate_file) as pem:
        certificates = [
            obj for obj in pem_split(pem.read()) if isinstance(obj, x509.Certificate)
        ]
    if not certificates:
        raise click.BadParameter(f"{certificate_file} contains no certificate")

    certificate = certificates[0]
    revoked = asyncio.run(
        _revoke(config, certificate, RevocationReason[reason] if reason else None)
    )
    click.echo(
        f"Certificate {certificate.serial_number:x} "
        f"{'revoked' if revoked else 'could not be revoked'}."
    )


if __name__ == "__main__":
    main()
