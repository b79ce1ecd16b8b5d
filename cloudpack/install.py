"""Install and configure the Puppet agent on a reachable host over SSH.

Every step is fatal on failure except the final certname read-back, which
only degrades to a missing certname: by then the installer has already
succeeded.
"""

from __future__ import annotations

import os
import tempfile
import uuid
from dataclasses import dataclass

from loguru import logger

from cloudpack.constants import (
    ANSWERS_REMOTE_NAME,
    CERTNAME_COMMAND,
    PAYLOAD_REMOTE_NAME,
    REMOTE_TMP_ROOT,
    SSH_ATTEMPT_TIMEOUT,
    SSH_CONNECT_TIMEOUT,
)
from cloudpack.core.exceptions import CloudpackError, NonZeroExit
from cloudpack.options import InstallOptions, payload_type
from cloudpack.progress import Deadline, ProgressReporter, bounded
from cloudpack.remote.gate import ensure_reachable
from cloudpack.remote.ssh import Executor, ExecutionResult, RemoteSession, SSHExecutor
from cloudpack.templates import TemplateContext, render


@dataclass(frozen=True, slots=True)
class InstallResult:
    """certname is None when it could not be read back from the host."""

    certname: str | None
    stdout: str
    scratch_dir: str
    status: str = "success"


class InstallOrchestrator:
    """Runs the install sequence against one host."""

    def __init__(
        self,
        executor: Executor | None = None,
        *,
        reporter: ProgressReporter | None = None,
        connect_timeout: float = SSH_CONNECT_TIMEOUT,
        attempt_timeout: float = SSH_ATTEMPT_TIMEOUT,
    ) -> None:
        self._executor = executor or SSHExecutor()
        self._reporter = reporter
        self._connect_timeout = connect_timeout
        self._attempt_timeout = attempt_timeout

    def install(self, address: str, options: InstallOptions) -> InstallResult:
        """Install Puppet on address.

        Raises:
            InstanceUnreachable: SSH never came up.
            NonZeroExit: Creating the scratch directory or the installer failed.
            TimeoutExceeded: The install budget ran out between steps.
        """
        # keyfile "agent" means no key material: ssh-agent does the signing
        session = RemoteSession(host=address, login=options.login, key_path=options.key_path)
        certname = options.certname or f"{address}-{uuid.uuid4()}"
        prefix = "" if options.login == "root" else "sudo "

        with bounded("Installing Puppet", options.install_timeout, reporter=self._reporter) as deadline:
            ensure_reachable(
                session,
                self._executor,
                timeout=min(self._connect_timeout, deadline.remaining),
                attempt_timeout=self._attempt_timeout,
            )
            deadline.check()

            scratch_dir = f"{REMOTE_TMP_ROOT}/{uuid.uuid4()}"
            self._run_checked(session, f"bash -c 'umask 077; mkdir {scratch_dir}'")
            deadline.check()

            self._upload_payloads(session, options, scratch_dir)
            deadline.check()

            script = self._upload_script(session, options, scratch_dir, address, certname)
            deadline.check()

            install_command = f"{prefix}bash -c 'chmod u+x {script}; {script}'"
            installed = self._run_checked(
                session,
                install_command,
                hint=(
                    "The installer script exited with a non-zero exit status, indicating "
                    "a failure. It may help to run with --debug to see the script execution "
                    f"or to check the installation log file on the remote system in {scratch_dir}"
                ),
            )

            reported = self._read_certname(session, f"{prefix}{CERTNAME_COMMAND}", deadline)

        output = installed.stdout + (reported.stdout if reported else "")
        name = reported.stdout.strip() if reported and reported.ok else None
        return InstallResult(certname=name, stdout=output, scratch_dir=scratch_dir)

    def _run_checked(self, session: RemoteSession, command: str, hint: str = "") -> ExecutionResult:
        result = self._executor.execute(session, command)
        if not result.ok:
            raise NonZeroExit(command, result.exit_code, hint)
        return result

    def _upload_payloads(self, session: RemoteSession, options: InstallOptions, scratch_dir: str) -> None:
        payload = options.installer_payload
        if payload and payload_type(payload) == "file_path":
            logger.info("Uploading Puppet Enterprise tarball ...")
            self._executor.upload(session, payload, f"{scratch_dir}/{PAYLOAD_REMOTE_NAME}")
            logger.info("Uploading Puppet Enterprise tarball ... Done")

        if options.installer_answers:
            logger.info("Uploading Puppet Answer File ...")
            self._executor.upload(session, options.installer_answers, f"{scratch_dir}/{ANSWERS_REMOTE_NAME}")
            logger.info("Uploading Puppet Answer File ... Done")

    def _upload_script(
        self,
        session: RemoteSession,
        options: InstallOptions,
        scratch_dir: str,
        address: str,
        certname: str,
    ) -> str:
        logger.info("Installing Puppet ...")
        ctx = TemplateContext(
            scratch_dir=scratch_dir,
            public_dns_name=address,
            certname=certname,
            server=options.server,
            environment=options.environment,
            installer_payload=options.installer_payload,
            has_answers=options.installer_answers is not None,
            puppet_version=options.puppet_version,
            facter_version=options.facter_version,
            facts=options.facts,
        )
        script = render(options.install_script, ctx)
        logger.debug("Compiled installer script:\n{script}", script=script)

        remote_path = f"{scratch_dir}/{options.install_script}.sh"
        fd, local_path = tempfile.mkstemp(prefix="install_script")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(script)
            self._executor.upload(session, local_path, remote_path)
        finally:
            # don't let the rendered script linger around
            os.unlink(local_path)
        return remote_path

    def _read_certname(
        self,
        session: RemoteSession,
        command: str,
        deadline: Deadline,
    ) -> ExecutionResult | None:
        try:
            deadline.check()
            result = self._executor.execute(session, command)
        except CloudpackError as e:
            logger.warning("Could not determine the remote puppet agent certificate name: {error}", error=e)
            return None
        if not result.ok:
            logger.warning(
                "Could not determine the remote puppet agent certificate name using {command}",
                command=command,
            )
        return result
