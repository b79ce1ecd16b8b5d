"""Install script templates.

Each template is a function from a TemplateContext to an Op tree; render()
resolves it into a bash script. Operations are small functions returning
strings, composed as lists.

Example:
    >>> script = render("puppet-community", ctx)
    >>> script.splitlines()[0]
    '#!/bin/bash'
"""

from __future__ import annotations

import shlex
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Final

from cloudpack.constants import ANSWERS_REMOTE_NAME, PAYLOAD_REMOTE_NAME
from cloudpack.core.exceptions import ConfigurationError, TemplateNotFound

type Op = str | Callable[[], str] | list[Op]
"""Operation type: a literal string, a function returning a string, or a list of ops."""

HEADER: Final = """#!/bin/bash
set -e
set -u

export PATH="/opt/puppet/bin:/opt/puppetlabs/bin:/usr/local/bin:$PATH"
"""


@dataclass(frozen=True, slots=True)
class TemplateContext:
    """Values a template may interpolate."""

    scratch_dir: str
    public_dns_name: str
    certname: str
    server: str = "puppet"
    environment: str = "production"
    installer_payload: str | None = None
    has_answers: bool = False
    puppet_version: str | None = None
    facter_version: str | None = None
    facts: Mapping[str, str] = field(default_factory=dict)

    @property
    def payload_path(self) -> str:
        return f"{self.scratch_dir}/{PAYLOAD_REMOTE_NAME}"

    @property
    def answers_path(self) -> str:
        return f"{self.scratch_dir}/{ANSWERS_REMOTE_NAME}"


def resolve(op: Op) -> str:
    """Resolve an operation to its string representation."""
    match op:
        case str(op):
            return op
        case list(op):
            return "\n".join(resolve(o) for o in op)
        case None:
            return ""
        case _:
            return op()


# =============================================================================
# Operations
# =============================================================================


def cd(path: str) -> Op:
    return f"cd {shlex.quote(path)}"


def download(url: str, dest: str) -> Op:
    return f"curl -fsSL -o {shlex.quote(dest)} {shlex.quote(url)}"


def set_answer(answers: str, key: str, value: str) -> Op:
    """Replace (or add) one key in a PE answers file."""
    path = shlex.quote(answers)
    return [
        f"sed -i '/^{key}=/d' {path}",
        f"echo {shlex.quote(f'{key}={value}')} >> {path}",
    ]


def external_facts(directory: str, facts: Mapping[str, str]) -> Op:
    if not facts:
        return "# No custom facts"
    body = "\n".join(f"{k}={v}" for k, v in facts.items())
    target = f"{directory}/cloudpack.txt"
    return [
        f"mkdir -p {shlex.quote(directory)}",
        f"cat > {shlex.quote(target)} <<'CLOUDPACK_FACTS'\n{body}\nCLOUDPACK_FACTS",
    ]


def pe_installer(ctx: TemplateContext) -> Op:
    return [
        cd(ctx.scratch_dir),
        f"tar -xzf {PAYLOAD_REMOTE_NAME}",
        "cd puppet-enterprise-*",
        f"./puppet-enterprise-installer -a {shlex.quote(ctx.answers_path)} "
        f"-l {shlex.quote(ctx.scratch_dir + '/install.log')}",
    ]


def package_install(package: str, version: str | None) -> Op:
    """Install a package with whichever package manager the host has."""
    pkg = shlex.quote(package)
    apt_pkg = shlex.quote(f"{package}={version}*") if version else pkg
    yum_pkg = shlex.quote(f"{package}-{version}") if version else pkg
    return (
        "if command -v apt-get >/dev/null 2>&1; then\n"
        "  export DEBIAN_FRONTEND=noninteractive\n"
        "  apt-get -qq update\n"
        f"  apt-get -y -qq install {apt_pkg}\n"
        "elif command -v yum >/dev/null 2>&1; then\n"
        f"  yum -y -q install {yum_pkg}\n"
        "else\n"
        f"  echo 'No supported package manager found to install {package}' >&2\n"
        "  exit 1\n"
        "fi"
    )


def agent_config(ctx: TemplateContext, conf: str) -> Op:
    return [
        f"mkdir -p {shlex.quote(conf.rsplit('/', 1)[0])}",
        f"cat > {shlex.quote(conf)} <<'CLOUDPACK_CONF'\n"
        "[agent]\n"
        f"server = {ctx.server}\n"
        f"certname = {ctx.certname}\n"
        f"environment = {ctx.environment}\n"
        "CLOUDPACK_CONF",
    ]


# =============================================================================
# Templates
# =============================================================================


def puppet_enterprise(ctx: TemplateContext) -> Op:
    """Install PE from an uploaded tarball and answers file."""
    return [
        set_answer(ctx.answers_path, "q_puppetagent_certname", ctx.certname),
        set_answer(ctx.answers_path, "q_puppetagent_server", ctx.server),
        pe_installer(ctx),
        external_facts("/etc/puppetlabs/facter/facts.d", ctx.facts),
    ]


def puppet_enterprise_http(ctx: TemplateContext) -> Op:
    """Install PE from a tarball the host downloads itself."""
    if not ctx.installer_payload:
        raise ConfigurationError("puppet-enterprise-http needs an installer payload URL")
    return [
        download(ctx.installer_payload, ctx.payload_path),
        puppet_enterprise(ctx),
    ]


def puppet_community(ctx: TemplateContext) -> Op:
    """Install open source Puppet from the distribution's packages."""
    return [
        package_install("facter", ctx.facter_version),
        package_install("puppet", ctx.puppet_version),
        agent_config(ctx, "/etc/puppet/puppet.conf"),
        external_facts("/etc/facter/facts.d", ctx.facts),
        "puppet resource service puppet ensure=running enable=true",
    ]


TEMPLATES: Final[dict[str, Callable[[TemplateContext], Op]]] = {
    "puppet-enterprise": puppet_enterprise,
    "puppet-enterprise-http": puppet_enterprise_http,
    "puppet-community": puppet_community,
}


def available_templates() -> tuple[str, ...]:
    return tuple(sorted(TEMPLATES))


def find_template(name: str) -> Callable[[TemplateContext], Op]:
    try:
        return TEMPLATES[name]
    except KeyError:
        raise TemplateNotFound(name, available_templates()) from None


def render(name: str, ctx: TemplateContext) -> str:
    """Render the named template to a bash script."""
    template = find_template(name)
    return f"{HEADER}\n{resolve(template(ctx))}\n"
