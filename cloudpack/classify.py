"""Client for the node classifier (Puppet console / Dashboard ENC).

classify() is idempotent: a node or membership that already exists is
reused, never duplicated. Groups must already exist; they are never
created here.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from cloudpack.constants import DEFAULT_ENC_PORT, HTTP_TIMEOUT
from cloudpack.core.exceptions import (
    ClassificationRequestFailed,
    ClassificationResponseInvalid,
    ClassificationUnreachable,
    GroupNotFound,
)


@dataclass(frozen=True, slots=True)
class ClassificationRecord:
    """What classify() found or created on the classifier."""

    node: str
    group: str
    node_id: Any
    group_id: Any
    created_node: bool = False
    created_membership: bool = False


class ClassificationClient:
    """Synchronous JSON client for the classifier's REST endpoints.

    Example:
        with ClassificationClient("console.example.com", 443, auth=("admin", "secret")) as enc:
            enc.classify("web1.example.com", "webservers")
    """

    def __init__(
        self,
        server: str,
        port: int = DEFAULT_ENC_PORT,
        *,
        auth: tuple[str, str] | None = None,
        insecure: bool = False,
        scheme: str = "https",
        timeout: float = HTTP_TIMEOUT,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.server = server
        self.port = port
        self._client = httpx.Client(
            base_url=f"{scheme}://{server}:{port}",
            auth=auth,
            verify=not insecure,
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    def __enter__(self) -> ClassificationClient:
        return self

    def __exit__(self, *_: Any) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        action: str,
        expected: int = 200,
        payload: dict[str, Any] | None = None,
    ) -> Any:
        logger.info("{action} ...", action=action)
        try:
            resp = self._client.request(method, path, json=payload)
        except httpx.ConnectError as e:
            raise ClassificationUnreachable(
                self.server,
                self.port,
                f"{e}. Check that the --enc-server and --enc-port options are correct",
            ) from e
        except httpx.HTTPError as e:
            raise ClassificationUnreachable(self.server, self.port, str(e)) from e

        if resp.status_code != expected:
            logger.warning("{action} ... Failed", action=action)
            logger.info("Body: {body}", body=resp.text)
            logger.warning("Server responded with a {code} status", code=resp.status_code)
            if resp.status_code == 401:
                logger.info("A 401 response is the HTTP code for an Unauthorized request")
                logger.info(
                    "This error likely means you need to supply the "
                    "--enc-auth-user and --enc-auth-passwd options"
                )
                logger.info("Alternatively, use the PUPPET_ENC_AUTH_PASSWD environment variable")
            raise ClassificationRequestFailed(action, expected, resp.status_code)

        if not resp.content:
            logger.info("{action} ... Done", action=action)
            return None
        try:
            body = resp.json()
        except ValueError as e:
            logger.warning("{action} ... Failed", action=action)
            logger.info("Body: {body}", body=resp.text)
            logger.info("Check that --enc-server points at the classifier and not at a proxy")
            raise ClassificationResponseInvalid(action, str(e)) from e
        logger.info("{action} ... Done", action=action)
        return body

    def classify(self, certname: str, group: str) -> dict[str, Any]:
        """Ensure certname exists as a node and belongs to group.

        Raises:
            GroupNotFound: group does not exist. No membership call is made.
            ClassificationRequestFailed: An endpoint answered unexpectedly.
            ClassificationUnreachable: The classifier could not be contacted.
        """
        logger.info(
            "Contacting https://{server}:{port}/ to classify {certname}",
            server=self.server,
            port=self.port,
            certname=certname,
        )

        nodes = self._request("GET", "/nodes.json", "List nodes") or []
        node = next((n for n in nodes if n.get("name") == certname), None)
        created_node = node is None
        if node is None:
            node = self._request(
                "POST", "/nodes.json", "Register Node", 201, {"node": {"name": certname}}
            ) or {}
        node_id = node.get("id")

        groups = self._request("GET", "/node_groups.json", "List Groups") or []
        found = next((g for g in groups if g.get("name") == group), None)
        if found is None:
            raise GroupNotFound(group)
        group_id = found.get("id")

        memberships = self._request("GET", "/memberships.json", "List group members") or []
        member = any(
            m.get("node_group_id") == group_id and m.get("node_id") == node_id
            for m in memberships
        )
        if not member:
            self._request(
                "POST",
                "/memberships.json",
                "Classify node",
                201,
                {"node_name": certname, "group_name": group},
            )

        record = ClassificationRecord(
            node=certname,
            group=group,
            node_id=node_id,
            group_id=group_id,
            created_node=created_node,
            created_membership=not member,
        )
        return {"status": "complete", "record": record}
