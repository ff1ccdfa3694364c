import pydantic
import pytest
import yaml

import acmeflow.plugins.rfc2136_solver
from acmeflow.client import AcmeClient, ChallengeSolver
from acmeflow.main import Config
from acmeflow.plugin_base import PluginRegistry
from acmeflow.plugins.exec_solver import ExecSolver

PluginRegistry.load_plugins(r"plugins")


@pytest.fixture
def config_yaml(account_key_path):
    data = f"""
client:
  directory: 'https://acme-staging-v02.api.letsencrypt.org/directory'
  private_key: '{account_key_path}'
  contact:
    email: 'acmeflow@example.org'
  challenge_solvers:
    - type: rfc2136
      alg: hmac-sha512
      keyid: tsig-update-key
      secret: dGVzdA==
      server: 127.0.0.1
  dns:
    require_complete: false
    nameservers: ["127.1.2.3", "127.2.3.4"]
    timeout: 300
logging:
  version: 1
  formatters:
    simple:
      format: '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
  handlers:
    console:
      class: logging.StreamHandler
      level: DEBUG
      formatter: simple
      stream: ext://sys.stdout
  root:
    level: DEBUG
    handlers: [console]
  disable_existing_loggers: no
"""
    return data


@pytest.fixture
def config_json(config_yaml):
    data = yaml.load(config_yaml, Loader=yaml.SafeLoader)
    return data


@pytest.fixture
def config_obj(config_json):
    data = Config.model_validate(config_json)
    return data


def test_config(config_obj):
    client = config_obj.client
    assert client.contact == {"email": "acmeflow@example.org"}
    assert client.http_timeout == 30.0
    assert client.dns.require_complete is False
    assert client.dns.check is True
    assert client.dns.nameservers == ["127.1.2.3", "127.2.3.4"]
    assert client.dns.timeout == 300
    assert client.dns.interval == 2
    assert [s["type"] for s in client.challenge_solvers] == ["rfc2136"]
    assert config_obj.logging["version"] == 1


def test_client_from_config(config_obj):
    client = AcmeClient(config_obj.client)

    solvers = list(client._challenge_solvers.values())
    assert isinstance(solvers[0], acmeflow.plugins.rfc2136_solver.RFC2136Client)
    assert solvers[0].config.server == "127.0.0.1"
    assert solvers[0].config.ttl == 60


def test_conflicting_solvers(config_json):
    config_json["client"]["challenge_solvers"].append({"type": "exec", "program": "/usr/local/bin/dns-hook"})
    config = Config.model_validate(config_json)

    with pytest.raises(ValueError, match="already registered"):
        AcmeClient(config.client)


def test_unknown_solver(config_json):
    config_json["client"]["challenge_solvers"] = [{"type": "route53"}]
    config = Config.model_validate(config_json)

    with pytest.raises(ValueError, match="Valid options"):
        AcmeClient(config.client)


def test_invalid_solver_options(config_json):
    config_json["client"]["challenge_solvers"] = [{"type": "exec"}]
    config = Config.model_validate(config_json)

    with pytest.raises(pydantic.ValidationError):
        AcmeClient(config.client)


def test_extra_fields_are_rejected(config_json):
    config_json["client"]["dirctory"] = "typo"

    with pytest.raises(pydantic.ValidationError):
        Config.model_validate(config_json)


def test_bad_private_key(config_json, tmp_path):
    (tmp_path / "bad.key").write_text("not a key")
    config_json["client"]["private_key"] = str(tmp_path / "bad.key")
    config = Config.model_validate(config_json)

    with pytest.raises(ValueError, match="Bad Private Key"):
        AcmeClient(config.client)


def test_registry():
    mapping = PluginRegistry.get_registry(ChallengeSolver).config_mapping()

    assert {"dummy", "rfc2136", "exec", "manual"} <= set(mapping)
    assert mapping["exec"] is ExecSolver
