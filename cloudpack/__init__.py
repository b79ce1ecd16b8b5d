"""cloudpack - Provision cloud instances as Puppet agents.

Example:

    from cloudpack import EC2Provider, ProvisionWorkflow
    from cloudpack.options import build_create_options, build_install_options

    provider = EC2Provider(region="us-east-1")
    workflow = ProvisionWorkflow(provider)

    create = build_create_options(provider, image="ami-0abc", key_name="ops", flavor="t3.small")
    install = build_install_options(login="ubuntu", keyfile="agent", install_script="puppet-community")
    address = workflow.create(create)
    workflow.install(address, install)
"""

# Logging (disables the "cloudpack" logger on import)
from cloudpack.logging import LogConfig, setup_logging, teardown_logging

# Errors
from cloudpack.core.exceptions import (
    AuthenticationFailed,
    CertificateSigningFailed,
    ClassificationRequestFailed,
    ClassificationResponseInvalid,
    ClassificationUnreachable,
    CloudpackError,
    ConfigurationError,
    ConnectionFailed,
    FailureKind,
    GroupNotFound,
    InstanceErrorState,
    InstanceUnreachable,
    NonZeroExit,
    ProviderError,
    ReadinessUnconfirmed,
    TemplateNotFound,
    TimeoutExceeded,
)

# Building blocks
from cloudpack.retry import RetryPolicy, retry
from cloudpack.progress import ProgressReporter, bounded
from cloudpack.remote import ExecutionResult, RemoteSession, SSHExecutor, ensure_reachable
from cloudpack.providers import EC2Provider, Instance, InstanceSpec, Provider

# Provisioning
from cloudpack.launcher import ExitGuard, InstanceLauncher
from cloudpack.install import InstallOrchestrator, InstallResult
from cloudpack.classify import ClassificationClient
from cloudpack.certificate import CertificateAuthority
from cloudpack.workflow import ProvisionWorkflow

__version__ = "0.1.0"

__all__ = [
    "AuthenticationFailed",
    "CertificateAuthority",
    "CertificateSigningFailed",
    "ClassificationClient",
    "ClassificationRequestFailed",
    "ClassificationResponseInvalid",
    "ClassificationUnreachable",
    "CloudpackError",
    "ConfigurationError",
    "ConnectionFailed",
    "EC2Provider",
    "ExecutionResult",
    "ExitGuard",
    "FailureKind",
    "GroupNotFound",
    "Instance",
    "InstanceErrorState",
    "InstanceLauncher",
    "InstanceSpec",
    "InstanceUnreachable",
    "InstallOrchestrator",
    "InstallResult",
    "LogConfig",
    "NonZeroExit",
    "ProgressReporter",
    "Provider",
    "ProviderError",
    "ProvisionWorkflow",
    "ReadinessUnconfirmed",
    "RemoteSession",
    "RetryPolicy",
    "SSHExecutor",
    "TemplateNotFound",
    "TimeoutExceeded",
    "bounded",
    "ensure_reachable",
    "retry",
    "setup_logging",
    "teardown_logging",
]
