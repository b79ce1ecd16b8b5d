"""End-to-end provisioning: create, install, classify, sign.

ProvisionWorkflow owns the ExitGuard of the instance it creates. A plain
create() disarms it once the instance is ready; bootstrap() keeps it armed
until installation begins, so an abandoned launch is cleaned up but a host
is never destroyed mid-install.

Example:
    from cloudpack.providers import EC2Provider
    from cloudpack.workflow import ProvisionWorkflow

    workflow = ProvisionWorkflow(EC2Provider(region="eu-west-1"))
    workflow.bootstrap(create_options, install_options, classify_options, cert_options)
"""

from __future__ import annotations

import time
from collections.abc import Callable
from contextlib import closing
from typing import Any

from loguru import logger

from cloudpack.certificate import CertificateAuthority, CertificateSigner
from cloudpack.classify import ClassificationClient
from cloudpack.constants import CONSOLE_OUTPUT_TIMEOUT, INSTANCE_POLL_INTERVAL
from cloudpack.core.exceptions import CertificateSigningFailed, CloudpackError
from cloudpack.install import InstallOrchestrator, InstallResult
from cloudpack.launcher import ExitGuard, InstanceLauncher
from cloudpack.options import CertificateOptions, ClassifyOptions, CreateOptions, InstallOptions
from cloudpack.progress import ProgressReporter, bounded
from cloudpack.providers.base import Provider

type ClassifierFactory = Callable[[ClassifyOptions], ClassificationClient]
type SignerFactory = Callable[[CertificateOptions], CertificateSigner]


def _classifier(options: ClassifyOptions) -> ClassificationClient:
    return ClassificationClient(
        options.enc_server,
        options.enc_port,
        auth=options.auth,
        insecure=options.insecure,
    )


def _signer(options: CertificateOptions) -> CertificateAuthority:
    return CertificateAuthority(
        options.ca_server,
        options.ca_port,
        environment=options.environment,
        insecure=options.insecure,
        ca_bundle=options.ca_bundle,
        client_cert=options.client_cert,
        client_key=options.client_key,
    )


class ProvisionWorkflow:
    """Sequences the provisioning steps for one instance per run."""

    def __init__(
        self,
        provider: Provider,
        *,
        launcher: InstanceLauncher | None = None,
        installer: InstallOrchestrator | None = None,
        classifier: ClassifierFactory = _classifier,
        signer: SignerFactory = _signer,
        reporter: ProgressReporter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._provider = provider
        self._reporter = reporter
        self._launcher = launcher or InstanceLauncher(provider, reporter=reporter)
        self._installer = installer or InstallOrchestrator(reporter=reporter)
        self._classifier = classifier
        self._signer = signer
        self._sleep = sleep
        self.guard: ExitGuard | None = None

    # =========================================================================
    # Provisioning
    # =========================================================================

    def create(self, options: CreateOptions, *, keep_guard: bool = False) -> str:
        """Launch an instance and return its address.

        With keep_guard the instance stays scheduled for destruction at exit
        until init() starts installing.
        """
        result = self._launcher.launch(
            options.instance_spec(),
            options.tags,
            tag_instance=not options.tags_not_supported,
        )
        self.guard = result.guard
        if not keep_guard:
            result.guard.disarm()
        return result.address

    def install(self, address: str, options: InstallOptions) -> InstallResult:
        return self._installer.install(address, options)

    def init(
        self,
        address: str,
        install_options: InstallOptions,
        classify_options: ClassifyOptions,
        cert_options: CertificateOptions,
    ) -> dict[str, Any]:
        """Install, classify and sign an already running host.

        An unreadable certname degrades rather than fails: classification
        runs with an empty name and signing is skipped.

        Raises:
            CertificateSigningFailed: The CA refused or could not be reached.
        """
        if self.guard is not None:
            self.guard.disarm()

        result = self.install(address, install_options)
        logger.info("Puppet is now installed on: {address}", address=address)

        certname = result.certname or ""
        self.classify(certname, classify_options)

        if not certname:
            logger.warning(
                "Signing certificate skipped: certname could not be read from {address}",
                address=address,
            )
            return {"status": "complete", "certname": result.certname}

        logger.info("Signing certificate ...")
        try:
            with closing(self._signer(cert_options)) as signer:
                signer.sign(certname)
        except CertificateSigningFailed as e:
            logger.error("Signing certificate ... Failed")
            logger.error("Signing certificate error: {error}", error=e)
            raise
        logger.info("Signing certificate ... Done")

        return {"status": "complete", "certname": result.certname}

    def bootstrap(
        self,
        create_options: CreateOptions,
        install_options: InstallOptions,
        classify_options: ClassifyOptions,
        cert_options: CertificateOptions,
    ) -> dict[str, Any]:
        address = self.create(create_options, keep_guard=True)
        return self.init(address, install_options, classify_options, cert_options)

    def classify(self, certname: str, options: ClassifyOptions) -> dict[str, Any] | None:
        if not options.node_group:
            logger.info("No classification method selected")
            return None
        with self._classifier(options) as client:
            return client.classify(certname, options.node_group)

    # =========================================================================
    # Inventory
    # =========================================================================

    def list_instances(self) -> dict[str, dict[str, Any]]:
        return {
            instance.id: {
                "id": instance.id,
                "state": str(instance.state),
                "keyname": instance.key_name,
                "dns_name": instance.address,
                "created_at": instance.launched_at,
                "tags": dict(instance.tags),
            }
            for instance in self._provider.list_instances()
        }

    def list_keynames(self) -> list[dict[str, str]]:
        keys = {k.name: k.fingerprint for k in self._provider.list_key_pairs()}
        return [{"name": name, "fingerprint": keys[name]} for name in sorted(keys)]

    def terminate(self, server: str, id_filter: str = "dns-name", force: bool = False) -> None:
        """Destroy the instance matching server.

        More than one match is refused unless force is set.
        """
        matches = self._provider.find_instances(id_filter, server)
        if not matches:
            logger.warning("Could not find server with {filter} '{server}'", filter=id_filter, server=server)
            return
        if len(matches) > 1 and not force:
            logger.error(
                "More than one server with {filter} '{server}'; aborting",
                filter=id_filter,
                server=server,
            )
            return

        for instance in matches:
            logger.info("Destroying {id} ({address}) ...", id=instance.id, address=instance.address)
            self._provider.destroy_instance(instance.id)
            logger.info("Destroying {id} ({address}) ... Done", id=instance.id, address=instance.address)

    def fingerprint(
        self,
        server: str,
        timeout: float = CONSOLE_OUTPUT_TIMEOUT,
        poll_interval: float = INSTANCE_POLL_INTERVAL,
    ) -> dict[str, list[str]]:
        """Host key fingerprints printed to the console of instances at server.

        Best effort: scraping the console for ``ec2:`` lines only works with
        images that print their host keys there.
        """
        found: dict[str, list[str]] = {}
        for instance in self._provider.find_instances("dns-name", server):
            try:
                output = self._await_console(instance.id, timeout, poll_interval)
            except CloudpackError as e:
                logger.warning("Waiting for SSH host key fingerprint from AWS ... Failed: {error}", error=e)
                logger.warning("Could not read the host's fingerprints")
                logger.warning("Please verify the host's fingerprints through the AWS console output")
                continue
            found[instance.id] = [line for line in output.splitlines() if line.startswith("ec2:")]

        if not any(found.values()):
            logger.warning(
                "We could not securely find a fingerprint because the image did not "
                "print the fingerprint to the console."
            )
            logger.warning(
                "Please use an AMI that prints the fingerprint to the console in order "
                "to connect to the instance more securely."
            )
            logger.info("The system is ready. Please add the host key to your known hosts file.")
            logger.info("For example: ssh root@{server} and respond yes.", server=server)
        return found

    def _await_console(self, instance_id: str, timeout: float, poll_interval: float) -> str:
        output = self._provider.console_output(instance_id)
        if output is not None:
            return output

        logger.info("Waiting for instance console output to become available ...")
        with bounded("Waiting for console output", timeout, reporter=self._reporter) as deadline:
            while True:
                deadline.check()
                self._sleep(min(poll_interval, deadline.remaining))
                output = self._provider.console_output(instance_id)
                if output is not None:
                    return output

