"""Tests for InstallOrchestrator against a recording executor."""

from __future__ import annotations

import os
import re

import pytest

from cloudpack.core.exceptions import (
    ConnectionFailed,
    FailureKind,
    InstanceUnreachable,
    NonZeroExit,
    TimeoutExceeded,
)
from cloudpack.install import InstallOrchestrator
from cloudpack.options import InstallOptions
from cloudpack.remote.ssh import ExecutionResult
from conftest import FakeExecutor, messages

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit"), pytest.mark.timeout(30)]

ADDRESS = "ec2-1-2-3-4.compute.amazonaws.com"


def _orchestrator(executor, reporter) -> InstallOrchestrator:
    return InstallOrchestrator(executor, reporter=reporter, connect_timeout=1, attempt_timeout=1)


def _community(**changes) -> InstallOptions:
    values = {"login": "root", "keyfile": "/keys/ops.pem", "install_script": "puppet-community"}
    return InstallOptions(**{**values, **changes})


@pytest.fixture
def answers(tmp_path):
    path = tmp_path / "pe.answers"
    path.write_text("q_install=y\n")
    return str(path)


@pytest.fixture
def tarball(tmp_path):
    path = tmp_path / "puppet-enterprise.tar.gz"
    path.write_bytes(b"\x1f\x8b")
    return str(path)


class TestInstallSequence:
    def test_commands_in_order(self, executor, reporter):
        executor.on("--configprint certname", ExecutionResult(0, "web1.example.com\r\n"))

        result = _orchestrator(executor, reporter).install(ADDRESS, _community())

        date, mkdir, install, certname = executor.commands
        assert date == "date"
        assert re.fullmatch(r"bash -c 'umask 077; mkdir /tmp/[0-9a-f-]{36}'", mkdir)
        script = f"{result.scratch_dir}/puppet-community.sh"
        assert install == f"bash -c 'chmod u+x {script}; {script}'"
        assert certname == "puppet agent --configprint certname"

        assert result.certname == "web1.example.com"
        assert result.status == "success"

    def test_non_root_login_uses_sudo(self, executor, reporter):
        _orchestrator(executor, reporter).install(ADDRESS, _community(login="ubuntu"))

        assert executor.commands[1].startswith("bash -c 'umask 077")
        assert executor.commands[2].startswith("sudo bash -c 'chmod u+x")
        assert executor.commands[3] == "sudo puppet agent --configprint certname"
        assert {s.login for s in executor.sessions} == {"ubuntu"}

    def test_agent_keyfile_sends_no_key(self, executor, reporter):
        _orchestrator(executor, reporter).install(ADDRESS, _community(keyfile="agent"))
        assert {s.key_path for s in executor.sessions} == {None}

    def test_script_uploaded_and_local_copy_removed(self, executor, reporter):
        result = _orchestrator(executor, reporter).install(ADDRESS, _community(certname="db1"))

        ((local, remote, content),) = executor.uploads
        assert remote == f"{result.scratch_dir}/puppet-community.sh"
        assert content.startswith("#!/bin/bash")
        assert "certname = db1" in content
        assert not os.path.exists(local)

    def test_generated_certname_is_address_and_uuid(self, executor, reporter):
        _orchestrator(executor, reporter).install(ADDRESS, _community())
        (_, _, content) = executor.uploads[0]
        assert re.search(rf"certname = {re.escape(ADDRESS)}-[0-9a-f-]{{36}}", content)

    def test_enterprise_uploads_payload_and_answers(self, executor, reporter, tarball, answers):
        options = _community(
            install_script="puppet-enterprise",
            installer_payload=tarball,
            installer_answers=answers,
        )
        result = _orchestrator(executor, reporter).install(ADDRESS, options)

        remotes = [remote for _, remote, _ in executor.uploads]
        assert remotes == [
            f"{result.scratch_dir}/puppet.tar.gz",
            f"{result.scratch_dir}/puppet.answers",
            f"{result.scratch_dir}/puppet-enterprise.sh",
        ]

    def test_url_payload_is_not_uploaded(self, executor, reporter, answers):
        options = _community(
            install_script="puppet-enterprise-http",
            installer_payload="https://example.com/pe.tar.gz",
            installer_answers=answers,
        )
        result = _orchestrator(executor, reporter).install(ADDRESS, options)

        remotes = [remote for _, remote, _ in executor.uploads]
        assert f"{result.scratch_dir}/puppet.tar.gz" not in remotes
        script = executor.uploads[-1][2]
        assert "https://example.com/pe.tar.gz" in script


class TestInstallFailures:
    def test_unreachable_host_runs_nothing_else(self, executor, reporter):
        executor.on("date", ConnectionFailed(ADDRESS, FailureKind.CONNECTION_REFUSED))
        with pytest.raises(InstanceUnreachable):
            InstallOrchestrator(
                executor, reporter=reporter, connect_timeout=0.1, attempt_timeout=1
            ).install(ADDRESS, _community())
        assert set(executor.commands) == {"date"}
        assert executor.uploads == []

    def test_scratch_dir_failure(self, executor, reporter):
        executor.on("umask 077", ExecutionResult(1, "mkdir: cannot create directory"))
        with pytest.raises(NonZeroExit) as info:
            _orchestrator(executor, reporter).install(ADDRESS, _community())
        assert info.value.exit_code == 1
        assert executor.uploads == []

    def test_installer_failure_names_scratch_dir(self, executor, reporter):
        executor.on("chmod u+x", ExecutionResult(2, "E: Unable to locate package puppet\n"))
        with pytest.raises(NonZeroExit) as info:
            _orchestrator(executor, reporter).install(ADDRESS, _community())

        mkdir = executor.commands[1]
        scratch = mkdir.split("mkdir ")[1].rstrip("'")
        assert info.value.exit_code == 2
        assert scratch in str(info.value)
        assert not any("configprint" in c for c in executor.commands)

    def test_missing_exit_status_is_a_failure(self, executor, reporter):
        executor.on("chmod u+x", ExecutionResult(None, ""))
        with pytest.raises(NonZeroExit):
            _orchestrator(executor, reporter).install(ADDRESS, _community())

    def test_certname_read_back_failure_degrades(self, executor, reporter, log_records):
        executor.on("--configprint certname", ExecutionResult(1, "Error: puppet not on PATH\n"))

        result = _orchestrator(executor, reporter).install(ADDRESS, _community())

        assert result.certname is None
        assert result.status == "success"
        assert any(
            "Could not determine the remote puppet agent certificate name" in m
            for m in messages(log_records, "WARNING")
        )

    def test_certname_connection_failure_degrades(self, executor, reporter):
        executor.on("--configprint", ConnectionFailed(ADDRESS, FailureKind.CONNECTION_RESET))
        result = _orchestrator(executor, reporter).install(ADDRESS, _community())
        assert result.certname is None

    def test_install_budget(self, executor, reporter):
        options = _community(install_timeout=0)
        with pytest.raises(TimeoutExceeded):
            _orchestrator(executor, reporter).install(ADDRESS, options)
