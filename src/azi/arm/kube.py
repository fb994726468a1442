from __future__ import annotations

import base64
import binascii
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
import yaml

from ..logging import get_logger
from ..util.errors import UnsupportedCredential
from .http import DEFAULT_TIMEOUT, HttpExecutor, Request, RetryPolicy
from .models import Deployment

LOG = get_logger(__name__)


@dataclass(frozen=True)
class KubeCredentials:
    server: str
    ca_data: Optional[bytes] = None
    token: Optional[str] = None
    client_cert: Optional[bytes] = None
    client_key: Optional[bytes] = None


class StaticTokenSource:
    """
    Bearer token taken from a kubeconfig. It cannot be refreshed, so a second
    401 surfaces as an authentication failure.
    """

    def __init__(self, token: str) -> None:
        self._token = token

    def access_token(self) -> str:
        return self._token

    def refresh(self, stale_token: str) -> str:
        return self._token


def _b64(value: Any, what: str) -> Optional[bytes]:
    if not value:
        return None
    try:
        return base64.b64decode(str(value))
    except (binascii.Error, ValueError) as e:
        raise UnsupportedCredential(f"Invalid base64 in kubeconfig {what}") from e


def _named(entries: Any, name: Optional[str], key: str) -> Dict[str, Any]:
    items = [e for e in entries or [] if isinstance(e, dict)]
    for entry in items:
        if name is None or entry.get("name") == name:
            value = entry.get(key)
            return value if isinstance(value, dict) else {}
    return {}


def parse_kubeconfig(text: str) -> KubeCredentials:
    """
    Extract server, CA and user credentials for the current context of a
    kubeconfig document. Only static tokens and client certificates are
    supported; exec/auth-provider users raise UnsupportedCredential.
    """
    try:
        doc = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise UnsupportedCredential(f"Unparseable kubeconfig: {e}") from e
    if not isinstance(doc, dict):
        raise UnsupportedCredential("Kubeconfig is not a mapping")

    current = doc.get("current-context")
    context = _named(doc.get("contexts"), current, "context")
    cluster = _named(doc.get("clusters"), context.get("cluster"), "cluster")
    user = _named(doc.get("users"), context.get("user"), "user")

    server = str(cluster.get("server") or "")
    if not server:
        raise UnsupportedCredential("Kubeconfig has no cluster server")
    if "exec" in user or "auth-provider" in user:
        raise UnsupportedCredential("Cluster requires an exec credential plugin (Entra ID integrated cluster)")
    creds = KubeCredentials(
        server=server,
        ca_data=_b64(cluster.get("certificate-authority-data"), "certificate-authority-data"),
        token=str(user["token"]) if user.get("token") else None,
        client_cert=_b64(user.get("client-certificate-data"), "client-certificate-data"),
        client_key=_b64(user.get("client-key-data"), "client-key-data"),
    )
    if not creds.token and not (creds.client_cert and creds.client_key):
        raise UnsupportedCredential("Kubeconfig user has neither token nor client certificate")
    return creds


def parse_kubeconfig_b64(value: str) -> KubeCredentials:
    raw = _b64(value, "payload")
    if raw is None:
        raise UnsupportedCredential("Empty kubeconfig")
    return parse_kubeconfig(raw.decode("utf-8", "replace"))


def parse_deployment(item: Dict[str, Any]) -> Deployment:
    meta = item.get("metadata") or {}
    spec = item.get("spec") or {}
    containers = ((spec.get("template") or {}).get("spec") or {}).get("containers") or []
    images = [str(c.get("image")) for c in containers if isinstance(c, dict) and c.get("image")]
    replicas = spec.get("replicas")
    return Deployment(
        name=str(meta.get("name") or ""),
        namespace=str(meta.get("namespace") or ""),
        replica_count=int(replicas) if replicas is not None else 1,
        image=",".join(images),
    )


def list_deployments(
    creds: KubeCredentials,
    *,
    timeout: float = DEFAULT_TIMEOUT,
    retry: RetryPolicy = RetryPolicy(),
    session: Optional[requests.Session] = None,
) -> List[Deployment]:
    """
    List deployments across all namespaces from the cluster's Kubernetes API.
    CA and client certificate material only live in a temporary directory for
    the duration of the call.
    """
    with tempfile.TemporaryDirectory(prefix="azi-kube-") as tmp:
        sess = session if session is not None else requests.Session()
        if creds.ca_data:
            ca_path = Path(tmp) / "ca.crt"
            ca_path.write_bytes(creds.ca_data)
            sess.verify = str(ca_path)
        if creds.client_cert and creds.client_key:
            cert_path = Path(tmp) / "client.crt"
            key_path = Path(tmp) / "client.key"
            cert_path.write_bytes(creds.client_cert)
            key_path.write_bytes(creds.client_key)
            sess.cert = (str(cert_path), str(key_path))

        http = HttpExecutor(
            sess,
            token_source=StaticTokenSource(creds.token) if creds.token else None,
            base_url=creds.server,
            timeout=timeout,
            retry=retry,
        )
        try:
            resp = http.execute(Request("GET", "/apis/apps/v1/deployments", authenticated=bool(creds.token)))
        finally:
            sess.close()

    items = (resp.payload or {}).get("items") if resp is not None and isinstance(resp.payload, dict) else None
    deployments = [parse_deployment(i) for i in items or [] if isinstance(i, dict)]
    deployments.sort(key=lambda d: (d.namespace, d.name))
    LOG.debug("Listed deployments", extra={"server": creds.server, "count": len(deployments)})
    return deployments
