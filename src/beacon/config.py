"""Configuration loading and merging for Beacon."""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from .errors import ConfigurationError


DEFAULT_FILENAME = "beacon-client"
DEFAULT_ENV = "development"


@dataclass(frozen=True)
class DataCenterInfo:
    """Where the instance runs. ``metadata`` carries cloud metadata (EC2 ids, zones)."""
    name: str = "MyOwn"
    metadata: dict = field(default_factory=dict)

    @property
    def is_amazon(self) -> bool:
        return self.name.lower() == "amazon"


@dataclass(frozen=True)
class InstanceConfig:
    app: str = ""
    vip_address: str = ""
    port: Optional[int] = None
    host_name: str = ""
    ip_addr: str = ""
    status: str = "STARTING"
    instance_id: Optional[str] = None
    # May contain a __HOST__ placeholder, substituted after metadata enrichment
    status_page_url: Optional[str] = None
    health_check_url: Optional[str] = None
    data_center_info: Optional[DataCenterInfo] = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class EurekaOptions:
    service_urls: tuple = ()

    # Alternative to service_urls: folded into a single URL by build_config
    host: Optional[str] = None
    port: Optional[int] = None
    service_path: str = "/eureka/apps/"
    ssl: bool = False

    # Intervals and timeouts, in seconds
    heartbeat_interval: float = 30.0
    registry_fetch_interval: float = 30.0
    request_timeout: float = 30.0

    fetch_registry: bool = True
    wait_for_registry: bool = False
    filter_up_instances: bool = True

    # DNS TXT record discovery of the registry host
    use_dns: bool = False
    ec2_region: Optional[str] = None
    dns_resolver: Optional[str] = None

    # EC2 metadata enrichment
    fetch_metadata: bool = True
    use_local_metadata: bool = False


@dataclass(frozen=True)
class OAuth2Credentials:
    client_id: str
    client_secret: str
    access_token_uri: str
    scope: Optional[str] = None


@dataclass(frozen=True)
class ClientConfig:
    instance: InstanceConfig = field(default_factory=InstanceConfig)
    eureka: EurekaOptions = field(default_factory=EurekaOptions)
    oauth2: Optional[OAuth2Credentials] = None


def _read_yaml(path: Path) -> dict:
    """Load a YAML mapping; a missing file is an empty mapping."""
    if not path.exists():
        return {}
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Error loading YAML configuration file: {path} {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"YAML configuration file {path} must contain a mapping")
    return data


def _deep_merge(base: dict, override: dict) -> dict:
    """Return a new dict with *override* merged into *base*. Lists are replaced, not merged."""
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _known_fields(cls, data: dict) -> dict:
    valid = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in valid}


def _build_instance(data: dict) -> InstanceConfig:
    values = _known_fields(InstanceConfig, data)

    dci = values.get("data_center_info")
    if isinstance(dci, dict):
        dci_values = _known_fields(DataCenterInfo, dci)
        dci_values["metadata"] = dict(dci_values.get("metadata") or {})
        values["data_center_info"] = DataCenterInfo(**dci_values)
    elif dci is not None and not isinstance(dci, DataCenterInfo):
        raise ConfigurationError('"instance.data_center_info" must be a mapping')

    if values.get("port") is not None:
        try:
            values["port"] = int(values["port"])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f'Invalid "instance.port" value: {values["port"]!r}') from exc
    if "metadata" in values:
        values["metadata"] = dict(values["metadata"] or {})
    return InstanceConfig(**values)


def _build_eureka(data: dict) -> EurekaOptions:
    values = _known_fields(EurekaOptions, data)

    urls = values.get("service_urls") or ()
    if isinstance(urls, str):
        urls = (urls,)
    urls = list(urls)

    # Fold host/port/service_path into the URL list
    host, port, path = values.pop("host", None), values.pop("port", None), values.get("service_path", "/eureka/apps/")
    if host and port and path:
        protocol = "https" if values.get("ssl") else "http"
        urls.append(f"{protocol}://{host}:{port}{path}")

    values["service_urls"] = tuple(urls)
    return EurekaOptions(**values)


def _build_oauth2(data: Optional[dict]) -> Optional[OAuth2Credentials]:
    if not data:
        return None
    # Accept the nested client_credentials block used by Spring style configs
    creds = data.get("client_credentials", data)
    try:
        return OAuth2Credentials(**_known_fields(OAuth2Credentials, creds))
    except TypeError as exc:
        raise ConfigurationError(f"Incomplete oauth2 client credentials: {exc}") from exc


def validate_config(config: ClientConfig) -> None:
    """Raise ConfigurationError if a value the client cannot run without is missing."""
    for key in ("app", "vip_address", "port", "data_center_info"):
        if not getattr(config.instance, key):
            raise ConfigurationError(f'Missing "instance.{key}" config value.')

    if not config.eureka.service_urls:
        raise ConfigurationError(
            "At least one eureka service url must be specified "
            "with either 'host' and 'port' or 'service_urls'"
        )


def build_config(data: dict) -> ClientConfig:
    """Build and validate a ClientConfig from a plain mapping."""
    config = ClientConfig(
        instance=_build_instance(data.get("instance") or {}),
        eureka=_build_eureka(data.get("eureka") or {}),
        oauth2=_build_oauth2(data.get("oauth2")),
    )
    validate_config(config)
    return config


def load_config(
    cwd: str | Path | None = None,
    filename: str = DEFAULT_FILENAME,
    env: Optional[str] = None,
    overrides: Optional[dict] = None,
) -> ClientConfig:
    """Load ``<filename>.yml`` then ``<filename>-<env>.yml`` from *cwd*, then apply *overrides*.

    *env* defaults to the ``BEACON_ENV`` environment variable, then "development".
    """
    cwd = Path(cwd) if cwd is not None else Path.cwd()
    env = env or os.environ.get("BEACON_ENV", DEFAULT_ENV)

    data = _read_yaml(cwd / f"{filename}.yml")
    data = _deep_merge(data, _read_yaml(cwd / f"{filename}-{env}.yml"))
    if overrides:
        data = _deep_merge(data, overrides)
    return build_config(data)


def load_config_file(
    path: str | Path,
    env: Optional[str] = None,
    overrides: Optional[dict] = None,
) -> ClientConfig:
    """Load an explicit YAML file plus its ``-<env>`` sibling, if any."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    env = env or os.environ.get("BEACON_ENV", DEFAULT_ENV)

    data = _read_yaml(path)
    data = _deep_merge(data, _read_yaml(path.with_name(f"{path.stem}-{env}{path.suffix}")))
    if overrides:
        data = _deep_merge(data, overrides)
    return build_config(data)


# CLI flags that map onto the eureka section
_EUREKA_CLI_FIELDS = {
    "service_urls", "heartbeat_interval", "registry_fetch_interval",
    "ec2_region", "wait_for_registry",
}


def merge_cli_args(args) -> dict:
    """Collect CLI arguments into an override mapping. CLI values take precedence."""
    eureka = {}
    for name in _EUREKA_CLI_FIELDS:
        cli_val = getattr(args, name, None)
        if cli_val is not None:
            eureka[name] = cli_val
    return {"eureka": eureka} if eureka else {}


def config_to_yaml(config: ClientConfig) -> str:
    """Serialize a resolved ClientConfig to YAML."""
    data: dict[str, Any] = asdict(config)
    data["eureka"]["service_urls"] = list(config.eureka.service_urls)
    for key in ("host", "port"):
        data["eureka"].pop(key, None)
    if config.oauth2 is None:
        data.pop("oauth2")
    else:
        data["oauth2"]["client_secret"] = "***"
    return yaml.safe_dump(data, default_flow_style=False, sort_keys=False)
