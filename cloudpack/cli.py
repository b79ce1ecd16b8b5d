"""Command line entry point.

Every option can also be set in the matching table of cloudpack.toml
(``[aws]``, ``[install]``, ``[classifier]``, ``[certificate]``,
``[logging]``) using the option name with dashes turned into underscores.

Example:
    cloudpack bootstrap --image ami-0abc --key-name ops --type t3.small \\
        --keyfile ~/.ssh/ops.pem --install-script puppet-community \\
        --node-group webservers
"""

from __future__ import annotations

import argparse
import signal
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import asdict
from typing import Any

from loguru import logger
from rich.console import Console

from cloudpack.config import RawConfig, load_config, log_config, overlay, section
from cloudpack.constants import DEFAULT_LOGIN
from cloudpack.core.exceptions import CloudpackError, ConfigurationError
from cloudpack.logging import setup_logging
from cloudpack.options import (
    CertificateOptions,
    ClassifyOptions,
    CreateOptions,
    InstallOptions,
    build_certificate_options,
    build_classify_options,
    build_create_options,
    build_install_options,
)
from cloudpack.providers.aws import EC2Provider
from cloudpack.workflow import ProvisionWorkflow

type Handler = Callable[[argparse.Namespace, RawConfig], Any]

_CREATE_KEYS = (
    "image", "key_name", "flavor", "region", "security_groups", "subnet",
    "availability_zone", "tags", "tags_not_supported", "endpoint", "profile",
)
_INSTALL_KEYS = (
    "login", "keyfile", "install_script", "installer_payload", "installer_answers",
    "certname", "puppet_version", "facter_version", "facts", "server", "environment",
    "install_timeout",
)
_CLASSIFY_KEYS = (
    "node_group", "enc_server", "enc_port", "enc_auth_user", "enc_auth_passwd", "insecure",
)
_CERTIFICATE_KEYS = {
    "ca_server": "ca_server",
    "ca_port": "ca_port",
    "environment": "ca_environment",
    "insecure": "ca_insecure",
    "ca_bundle": "ca_bundle",
    "client_cert": "client_cert",
    "client_key": "client_key",
}


# =============================================================================
# Option resolution
# =============================================================================


def _values(
    args: argparse.Namespace,
    config: RawConfig,
    name: str,
    keys: Sequence[str] | Mapping[str, str],
) -> dict[str, Any]:
    """File values for keys, overridden by flags that were given."""
    dests = keys if isinstance(keys, Mapping) else {k: k for k in keys}
    defaults = {k: v for k, v in section(config, name).items() if k in dests}
    given = {k: getattr(args, dest, None) for k, dest in dests.items()}
    return overlay(defaults, given)


def _require(values: Mapping[str, Any], *keys: str) -> None:
    missing = [f"--{k.replace('_', '-')}" for k in keys if values.get(k) in (None, "")]
    if missing:
        raise ConfigurationError(f"Missing required option(s): {', '.join(missing)}")


def _provider(args: argparse.Namespace, config: RawConfig) -> EC2Provider:
    aws = _values(args, config, "aws", ("region", "endpoint", "profile"))
    return EC2Provider(**aws)


def _create_options(provider: EC2Provider, args: argparse.Namespace, config: RawConfig) -> CreateOptions:
    values = _values(args, config, "aws", _CREATE_KEYS)
    _require(values, "image", "key_name", "flavor")
    values["region"] = provider.region
    return build_create_options(provider, **values)


def _install_options(args: argparse.Namespace, config: RawConfig) -> InstallOptions:
    values = _values(args, config, "install", _INSTALL_KEYS)
    values.setdefault("login", DEFAULT_LOGIN)
    _require(values, "keyfile")
    return build_install_options(**values)


def _classify_options(args: argparse.Namespace, config: RawConfig) -> ClassifyOptions:
    return build_classify_options(**_values(args, config, "classifier", _CLASSIFY_KEYS))


def _certificate_options(args: argparse.Namespace, config: RawConfig) -> CertificateOptions:
    return build_certificate_options(**_values(args, config, "certificate", _CERTIFICATE_KEYS))


# =============================================================================
# Commands
# =============================================================================


def _create(args: argparse.Namespace, config: RawConfig) -> str:
    provider = _provider(args, config)
    return ProvisionWorkflow(provider).create(_create_options(provider, args, config))


def _install(args: argparse.Namespace, config: RawConfig) -> dict[str, Any]:
    workflow = ProvisionWorkflow(_provider(args, config))
    result = workflow.install(args.address, _install_options(args, config))
    return {"status": result.status, "certname": result.certname, "scratch_dir": result.scratch_dir}


def _init(args: argparse.Namespace, config: RawConfig) -> dict[str, Any]:
    workflow = ProvisionWorkflow(_provider(args, config))
    return workflow.init(
        args.address,
        _install_options(args, config),
        _classify_options(args, config),
        _certificate_options(args, config),
    )


def _bootstrap(args: argparse.Namespace, config: RawConfig) -> dict[str, Any]:
    # validate everything before anything is launched
    provider = _provider(args, config)
    create_options = _create_options(provider, args, config)
    install_options = _install_options(args, config)
    classify_options = _classify_options(args, config)
    cert_options = _certificate_options(args, config)
    return ProvisionWorkflow(provider).bootstrap(
        create_options, install_options, classify_options, cert_options
    )


def _classify(args: argparse.Namespace, config: RawConfig) -> Any:
    workflow = ProvisionWorkflow(_provider(args, config))
    result = workflow.classify(args.certname, _classify_options(args, config))
    if result is None:
        return None
    return {**result, "record": asdict(result["record"])}


def _terminate(args: argparse.Namespace, config: RawConfig) -> None:
    ProvisionWorkflow(_provider(args, config)).terminate(
        args.server, id_filter=args.terminate_id, force=args.force
    )


def _list(args: argparse.Namespace, config: RawConfig) -> dict[str, Any]:
    return ProvisionWorkflow(_provider(args, config)).list_instances()


def _list_keynames(args: argparse.Namespace, config: RawConfig) -> list[dict[str, str]]:
    return ProvisionWorkflow(_provider(args, config)).list_keynames()


def _fingerprint(args: argparse.Namespace, config: RawConfig) -> dict[str, list[str]]:
    return ProvisionWorkflow(_provider(args, config)).fingerprint(args.server)


# =============================================================================
# Parser
# =============================================================================


def _add_aws(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("aws")
    group.add_argument("--region", help="EC2 region (default us-east-1)")
    group.add_argument("--profile", help="Named AWS credentials profile")
    group.add_argument("--endpoint", help="EC2 endpoint URL override")


def _add_create(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("instance")
    group.add_argument("--image", "-i", help="Image (AMI) id to launch")
    group.add_argument("--key-name", dest="key_name", help="Key pair name to launch with")
    group.add_argument("--type", dest="flavor", help="Instance type, e.g. t3.small")
    group.add_argument(
        "--security-group", "-g", dest="security_groups",
        help="Security group names or ids, separated by ':'",
    )
    group.add_argument("--subnet", help="VPC subnet id")
    group.add_argument("--availability-zone", dest="availability_zone")
    group.add_argument("--instance-tags", dest="tags", help="Tags as key1=value1,key2=value2")
    group.add_argument(
        "--tags-not-supported", dest="tags_not_supported", action="store_true", default=None,
        help="Do not tag the instance",
    )


def _add_install(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("install")
    group.add_argument("--login", "-l", "--username", dest="login", help="SSH login (default root)")
    group.add_argument("--keyfile", help="Private key path, or 'agent' to use ssh-agent")
    group.add_argument("--install-script", dest="install_script")
    group.add_argument("--installer-payload", dest="installer_payload", help="Tarball path or URL")
    group.add_argument("--installer-answers", dest="installer_answers", help="Answers file path")
    group.add_argument("--puppetagent-certname", dest="certname")
    group.add_argument("--puppet-version", dest="puppet_version")
    group.add_argument("--facter-version", dest="facter_version")
    group.add_argument("--facts", help="Custom facts as key1=value1,key2=value2")
    group.add_argument("--server", help="Puppet master the agent talks to")
    group.add_argument("--environment", help="Puppet environment of the agent")
    group.add_argument("--install-timeout", dest="install_timeout", type=float)


def _add_classify(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("classifier")
    group.add_argument("--node-group", "--as", dest="node_group")
    group.add_argument("--enc-server", dest="enc_server")
    group.add_argument("--enc-port", dest="enc_port", type=int)
    group.add_argument("--enc-auth-user", dest="enc_auth_user")
    group.add_argument("--enc-auth-passwd", dest="enc_auth_passwd")
    group.add_argument("--insecure", action="store_true", default=None, help="Skip ENC TLS verification")


def _add_certificate(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("certificate")
    group.add_argument("--ca-server", dest="ca_server")
    group.add_argument("--ca-port", dest="ca_port", type=int)
    group.add_argument("--ca-environment", dest="ca_environment")
    group.add_argument("--ca-insecure", dest="ca_insecure", action="store_true", default=None)
    group.add_argument("--ca-bundle", dest="ca_bundle")
    group.add_argument("--client-cert", dest="client_cert")
    group.add_argument("--client-key", dest="client_key")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cloudpack", description="Provision and bootstrap Puppet nodes")
    parser.add_argument("--debug", action="store_true", help="Log remote output and debug detail")
    parser.add_argument("--log-file", dest="log_file")
    commands = parser.add_subparsers(dest="command", required=True)

    def command(name: str, handler: Handler, summary: str, *extras: Callable[..., None]) -> argparse.ArgumentParser:
        sub = commands.add_parser(name, help=summary)
        _add_aws(sub)
        for extra in extras:
            extra(sub)
        sub.set_defaults(handler=handler)
        return sub

    command("create", _create, "Launch an instance", _add_create)
    command("install", _install, "Install Puppet on a running host", _add_install).add_argument("address")
    command(
        "init", _init, "Install, classify and sign a running host",
        _add_install, _add_classify, _add_certificate,
    ).add_argument("address")
    command(
        "bootstrap", _bootstrap, "Create, install, classify and sign",
        _add_create, _add_install, _add_classify, _add_certificate,
    )
    command("classify", _classify, "Add a node to a classifier group", _add_classify).add_argument("certname")

    terminate = command("terminate", _terminate, "Destroy an instance")
    terminate.add_argument("server")
    terminate.add_argument("--terminate-id", dest="terminate_id", default="dns-name")
    terminate.add_argument("--force", action="store_true")

    command("list", _list, "List instances")
    command("list-keynames", _list_keynames, "List key pairs")
    command("fingerprint", _fingerprint, "Read host key fingerprints from the console").add_argument("server")
    return parser


# =============================================================================
# Entry point
# =============================================================================


def _exit_on_signal(signum: int, _frame: object) -> None:
    # SystemExit runs atexit hooks, so an armed ExitGuard still fires
    raise SystemExit(128 + signum)


def _render(console: Console, result: Any) -> None:
    match result:
        case None:
            return
        case str():
            console.print(result)
        case _:
            console.print_json(data=result, default=str)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config()
        logging_config = log_config(config, level="DEBUG" if args.debug else None, file=args.log_file)
    except CloudpackError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    # handlers stay installed until exit so the ExitGuard can still log
    logger.remove()
    setup_logging(logging_config)
    signal.signal(signal.SIGTERM, _exit_on_signal)

    try:
        result = args.handler(args, config)
    except CloudpackError as e:
        logger.error("{error}", error=e)
        return 1

    _render(Console(), result)
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
