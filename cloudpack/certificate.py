"""Signing agent certificates through the Puppet CA HTTP API."""

from __future__ import annotations

import ssl
from typing import Any, Protocol

import httpx
from loguru import logger

from cloudpack.constants import DEFAULT_CA_PORT, DEFAULT_ENVIRONMENT, HTTP_TIMEOUT
from cloudpack.core.exceptions import CertificateSigningFailed, ConfigurationError


class CertificateSigner(Protocol):
    def sign(self, certname: str) -> None: ...

    def close(self) -> None: ...


def _tls_context(
    insecure: bool,
    ca_bundle: str | None,
    client_cert: str | None,
    client_key: str | None,
) -> ssl.SSLContext | bool:
    if insecure:
        return False
    try:
        ctx = ssl.create_default_context(cafile=ca_bundle)
        if client_cert:
            ctx.load_cert_chain(client_cert, client_key)
    except OSError as e:
        # ssl.SSLError included: unreadable or mismatched PEM material
        raise ConfigurationError(f"Could not load TLS material for the CA: {e}") from e
    return ctx


class CertificateAuthority:
    """Signs pending certificate requests on a Puppet CA.

    Args:
        server: CA host name.
        port: CA port.
        environment: Puppet environment passed with every request.
        insecure: Skip TLS verification of the CA.
        ca_bundle: CA certificate to verify the server with.
        client_cert: Client certificate authorised to sign.
        client_key: Key for client_cert.
    """

    def __init__(
        self,
        server: str = "puppet",
        port: int = DEFAULT_CA_PORT,
        *,
        environment: str = DEFAULT_ENVIRONMENT,
        insecure: bool = False,
        ca_bundle: str | None = None,
        client_cert: str | None = None,
        client_key: str | None = None,
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server = server
        self.port = port
        self.environment = environment
        self._client = httpx.Client(
            base_url=f"https://{server}:{port}",
            verify=_tls_context(insecure, ca_bundle, client_cert, client_key),
            timeout=timeout,
            transport=transport,
        )

    def __enter__(self) -> CertificateAuthority:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def sign(self, certname: str) -> None:
        """Sign the pending request for certname.

        Raises:
            CertificateSigningFailed: Empty certname, transport failure, or a non-2xx answer.
        """
        if not certname:
            raise CertificateSigningFailed("<unknown>", "no certificate name to sign")

        logger.info("Signing certificate {certname} ...", certname=certname)
        try:
            resp = self._client.put(
                f"/puppet-ca/v1/certificate_status/{certname}",
                params={"environment": self.environment},
                json={"desired_state": "signed"},
            )
        except httpx.HTTPError as e:
            raise CertificateSigningFailed(certname, str(e)) from e

        if not resp.is_success:
            raise CertificateSigningFailed(
                certname, f"CA responded with {resp.status_code}: {resp.text}"
            )
        logger.info("Signing certificate {certname} ... Done", certname=certname)
