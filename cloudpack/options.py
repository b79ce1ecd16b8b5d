"""Option model and boundary validation.

Options are immutable dataclasses. The build_* functions validate raw
values (from the command line or config files) once, at the boundary, so
the rest of the system can trust them.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal
from urllib.parse import urlsplit

from loguru import logger

from cloudpack.constants import (
    DEFAULT_CA_PORT,
    DEFAULT_ENC_PORT,
    DEFAULT_ENVIRONMENT,
    DEFAULT_INSTALL_SCRIPT,
    DEFAULT_REGION,
    ENC_AUTH_PASSWD_ENV,
    ENC_AUTH_USER_ENV,
    INSTALL_TIMEOUT,
)
from cloudpack.core.exceptions import ConfigurationError, TemplateNotFound
from cloudpack.providers.base import InstanceSpec, Provider
from cloudpack.templates import find_template

type PayloadType = Literal["file_path", "http", "https", "ftp", "invalid"]

_PUPPET_VERSION = re.compile(
    r"^(\d+)\.(\d+)(\.(\d+|x))?$|^(\d)+\.(\d)+\.(\d+)([a-zA-Z][a-zA-Z0-9-]*)|master$"
)
_FACTER_VERSION = re.compile(r"\d+\.\d+\.\d+")
_URI_FORBIDDEN = re.compile(r"[\s<>\"{}|\\^`]")


# =============================================================================
# Option Types
# =============================================================================


@dataclass(frozen=True, slots=True)
class CreateOptions:
    """Where and what to launch."""

    image: str
    key_name: str
    flavor: str
    region: str = DEFAULT_REGION
    security_groups: tuple[str, ...] = ()
    subnet: str | None = None
    availability_zone: str | None = None
    tags: Mapping[str, str] = field(default_factory=dict)
    tags_not_supported: bool = False
    endpoint: str | None = None
    profile: str | None = None

    def instance_spec(self) -> InstanceSpec:
        return InstanceSpec(
            image=self.image,
            key_name=self.key_name,
            flavor=self.flavor,
            security_groups=self.security_groups,
            subnet=self.subnet,
            availability_zone=self.availability_zone,
        )


@dataclass(frozen=True, slots=True)
class InstallOptions:
    """How to log in and what to install.

    keyfile is a private key path, or "agent" to use ssh-agent.
    """

    login: str
    keyfile: str
    install_script: str = DEFAULT_INSTALL_SCRIPT
    installer_payload: str | None = None
    installer_answers: str | None = None
    certname: str | None = None
    puppet_version: str | None = None
    facter_version: str | None = None
    facts: Mapping[str, str] = field(default_factory=dict)
    server: str = "puppet"
    environment: str = DEFAULT_ENVIRONMENT
    install_timeout: float = INSTALL_TIMEOUT

    @property
    def uses_agent(self) -> bool:
        return self.keyfile == "agent"

    @property
    def key_path(self) -> str | None:
        return None if self.uses_agent else self.keyfile


@dataclass(frozen=True, slots=True)
class ClassifyOptions:
    """Where the node classifier lives and which group to join."""

    node_group: str | None = None
    enc_server: str = "puppet"
    enc_port: int = DEFAULT_ENC_PORT
    enc_auth_user: str | None = None
    enc_auth_passwd: str | None = None
    insecure: bool = False

    @property
    def auth(self) -> tuple[str, str] | None:
        if self.enc_auth_user is None:
            return None
        return (self.enc_auth_user, self.enc_auth_passwd or "")


@dataclass(frozen=True, slots=True)
class CertificateOptions:
    """Where the certificate authority lives and how to authenticate to it."""

    ca_server: str = "puppet"
    ca_port: int = DEFAULT_CA_PORT
    environment: str = DEFAULT_ENVIRONMENT
    insecure: bool = False
    ca_bundle: str | None = None
    client_cert: str | None = None
    client_key: str | None = None


# =============================================================================
# Parsers
# =============================================================================


def parse_key_values(text: str, what: str = "tags") -> dict[str, str]:
    """Parse 'a=1,b=2,c=x=y' into {'a': '1', 'b': '2', 'c': 'x=y'}.

    There is no escape for ',' so values cannot contain it.
    """
    result: dict[str, str] = {}
    for item in text.split(","):
        key, sep, value = item.partition("=")
        if not sep or not key or not value:
            raise ConfigurationError(f"Could not parse {what} given. Please check your format")
        result[key] = value
    return result


def payload_type(payload: str) -> PayloadType:
    """Classify an installer payload as a URL scheme or a local path."""
    if _URI_FORBIDDEN.search(payload):
        return "invalid"
    try:
        scheme = urlsplit(payload).scheme.lower()
    except ValueError:
        return "invalid"
    match scheme:
        case "http" | "https" | "ftp":
            return scheme
        case _:
            return "file_path"


def _readable_file(path: str) -> str:
    expanded = os.path.abspath(os.path.expanduser(path))
    if not os.path.isfile(expanded):
        raise ConfigurationError(f"Could not find file '{expanded}'")
    if not os.access(expanded, os.R_OK):
        raise ConfigurationError(f"Could not read from file '{expanded}'")
    return expanded


# =============================================================================
# Validators
# =============================================================================


def validate_keyfile(keyfile: str, environ: Mapping[str, str] = os.environ) -> str:
    if keyfile.lower() == "agent":
        if not environ.get("SSH_AUTH_SOCK"):
            raise ConfigurationError(
                "SSH_AUTH_SOCK environment variable is not set and you specified "
                "--keyfile agent. Please check that ssh-agent is running correctly, "
                "and that SSH agent forwarding is not disabled."
            )
        return "agent"
    return _readable_file(keyfile)


def validate_payload(payload: str) -> str:
    kind = payload_type(payload)
    if kind == "invalid":
        raise ConfigurationError(
            f"Invalid input '{payload}' for option installer-payload, "
            "should be a URL or a file path"
        )
    if kind == "file_path":
        payload = _readable_file(payload)
    if not payload.endswith(("tgz", "gz")):
        logger.warning("Option: installer-payload expects a .tgz or .gz file")
    return payload


def validate_install_script(
    name: str,
    payload: str | None,
    answers: str | None,
) -> str:
    try:
        find_template(name)
    except TemplateNotFound as e:
        raise ConfigurationError(str(e)) from e

    if name == "puppet-enterprise":
        if not (payload and answers):
            raise ConfigurationError(
                "Must specify installer payload and answers file "
                "if install script is puppet-enterprise"
            )
    elif name.startswith("puppet-enterprise-") and not answers:
        raise ConfigurationError(f"Must specify an answers file for install script {name}")
    return name


def validate_puppet_version(version: str) -> str:
    if not _PUPPET_VERSION.search(version):
        raise ConfigurationError(f"Invalid Puppet version '{version}'")
    return version


def validate_facter_version(version: str) -> str:
    if not _FACTER_VERSION.search(version):
        raise ConfigurationError(f"Invalid Facter version '{version}'")
    return version


def resolve_security_groups(
    requested: str | Sequence[str],
    provider: Provider,
) -> tuple[str, ...]:
    """Resolve names or ids to ids, de-duplicated, in the order given.

    A string is split on ':' (the path separator).
    """
    names = requested.split(os.pathsep) if isinstance(requested, str) else list(requested)

    known = provider.list_security_groups()
    by_id = {g.group_id: g for g in known}
    by_name = {g.name: g for g in known}

    resolved: dict[str, None] = {}
    unknown: list[str] = []
    for name in names:
        group = by_id.get(name) or by_name.get(name)
        if group is None:
            unknown.append(name)
        else:
            resolved.setdefault(group.group_id, None)

    if unknown:
        raise ConfigurationError(f"Unrecognized security groups: {', '.join(unknown)}")
    return tuple(resolved)


def validate_region(region: str, provider: Provider) -> str:
    regions = provider.list_regions()
    if region not in regions:
        raise ConfigurationError(f"Region must be one of the following: {', '.join(regions)}")
    return region


def validate_image(image: str, provider: Provider) -> str:
    if not provider.image_exists(image):
        raise ConfigurationError(f"Unrecognized image name: {image}")
    return image


def validate_key_name(key_name: str, provider: Provider) -> str:
    if key_name not in {k.name for k in provider.list_key_pairs()}:
        raise ConfigurationError(
            f"Unrecognized key name: {key_name} (Suggestion: use the list-keynames "
            "action to find a list of valid key names for your account.)"
        )
    return key_name


# =============================================================================
# Builders
# =============================================================================


def build_create_options(
    provider: Provider,
    *,
    image: str,
    key_name: str,
    flavor: str,
    region: str = DEFAULT_REGION,
    security_groups: str | Sequence[str] = (),
    subnet: str | None = None,
    availability_zone: str | None = None,
    tags: str | Mapping[str, str] | None = None,
    tags_not_supported: bool = False,
    endpoint: str | None = None,
    profile: str | None = None,
) -> CreateOptions:
    """Validate create options against the provider's account."""
    validate_region(region, provider)
    validate_image(image, provider)
    validate_key_name(key_name, provider)
    groups = resolve_security_groups(security_groups, provider) if security_groups else ()
    parsed_tags = parse_key_values(tags, "tags") if isinstance(tags, str) else dict(tags or {})

    return CreateOptions(
        image=image,
        key_name=key_name,
        flavor=flavor,
        region=region,
        security_groups=groups,
        subnet=subnet,
        availability_zone=availability_zone,
        tags=parsed_tags,
        tags_not_supported=tags_not_supported,
        endpoint=endpoint,
        profile=profile,
    )


def build_install_options(
    *,
    login: str,
    keyfile: str,
    install_script: str = DEFAULT_INSTALL_SCRIPT,
    installer_payload: str | None = None,
    installer_answers: str | None = None,
    certname: str | None = None,
    puppet_version: str | None = None,
    facter_version: str | None = None,
    facts: str | Mapping[str, str] | None = None,
    server: str = "puppet",
    environment: str = DEFAULT_ENVIRONMENT,
    install_timeout: float = INSTALL_TIMEOUT,
    environ: Mapping[str, str] = os.environ,
) -> InstallOptions:
    """Validate install options, normalising paths and the keyfile."""
    keyfile = validate_keyfile(keyfile, environ)
    payload = validate_payload(installer_payload) if installer_payload else None
    answers = _readable_file(installer_answers) if installer_answers else None
    install_script = validate_install_script(install_script, payload, answers)
    if puppet_version:
        validate_puppet_version(puppet_version)
    if facter_version:
        validate_facter_version(facter_version)
    parsed_facts = parse_key_values(facts, "facts") if isinstance(facts, str) else dict(facts or {})

    return InstallOptions(
        login=login,
        keyfile=keyfile,
        install_script=install_script,
        installer_payload=payload,
        installer_answers=answers,
        certname=certname,
        puppet_version=puppet_version,
        facter_version=facter_version,
        facts=parsed_facts,
        server=server,
        environment=environment,
        install_timeout=install_timeout,
    )


def build_classify_options(
    *,
    node_group: str | None = None,
    enc_server: str = "puppet",
    enc_port: int = DEFAULT_ENC_PORT,
    enc_auth_user: str | None = None,
    enc_auth_passwd: str | None = None,
    insecure: bool = False,
    environ: Mapping[str, str] = os.environ,
) -> ClassifyOptions:
    """Fill classifier credentials from the environment when not given."""
    return ClassifyOptions(
        node_group=node_group,
        enc_server=enc_server,
        enc_port=enc_port,
        enc_auth_user=enc_auth_user or environ.get(ENC_AUTH_USER_ENV),
        enc_auth_passwd=enc_auth_passwd or environ.get(ENC_AUTH_PASSWD_ENV),
        insecure=insecure,
    )


def build_certificate_options(
    *,
    ca_server: str = "puppet",
    ca_port: int = DEFAULT_CA_PORT,
    environment: str = DEFAULT_ENVIRONMENT,
    insecure: bool = False,
    ca_bundle: str | None = None,
    client_cert: str | None = None,
    client_key: str | None = None,
) -> CertificateOptions:
    """Check TLS material paths up front, before anything is launched."""
    if client_key and not client_cert:
        raise ConfigurationError("--client-key needs --client-cert")
    return CertificateOptions(
        ca_server=ca_server,
        ca_port=ca_port,
        environment=environment,
        insecure=insecure,
        ca_bundle=_readable_file(ca_bundle) if ca_bundle else None,
        client_cert=_readable_file(client_cert) if client_cert else None,
        client_key=_readable_file(client_key) if client_key else None,
    )
