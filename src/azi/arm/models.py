from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Tuple

_SUBSCRIPTION_RE = re.compile(r"^/subscriptions/([^/]+)", re.IGNORECASE)
_RESOURCE_GROUP_RE = re.compile(r"/resourceGroups/([^/]+)", re.IGNORECASE)


def subscription_of(resource_id: str) -> Optional[str]:
    m = _SUBSCRIPTION_RE.match(resource_id or "")
    return m.group(1) if m else None


def resource_group_of(resource_id: str) -> Optional[str]:
    m = _RESOURCE_GROUP_RE.search(resource_id or "")
    return m.group(1) if m else None


def group_ref(subscription_id: str, resource_group: str) -> str:
    """
    Canonical resource group reference used as lookup key. ARM ids are case
    insensitive, so the key is lower-cased.
    """
    return f"/subscriptions/{subscription_id}/resourcegroups/{resource_group}".lower()


def group_ref_of(resource_id: str) -> Optional[str]:
    sub = subscription_of(resource_id)
    rg = resource_group_of(resource_id)
    if not sub or not rg:
        return None
    return group_ref(sub, rg)


@dataclass(frozen=True)
class Subscription:
    id: str
    display_name: str
    state: str = ""


@dataclass(frozen=True)
class ResourceGroup:
    subscription_id: str
    name: str
    location: str = ""
    id: str = ""

    @property
    def ref(self) -> str:
        return group_ref(self.subscription_id, self.name)


@dataclass(frozen=True)
class Resource:
    resource_group_ref: Optional[str]
    id: str
    type: str
    name: str
    location: str = ""
    tags: Tuple[Tuple[str, str], ...] = ()

    @property
    def tag_map(self) -> Dict[str, str]:
        return dict(self.tags)


@dataclass(frozen=True)
class CostRecord:
    subscription_id: str
    resource_group: Optional[str]
    period: str
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class DnsZone:
    id: str
    name: str
    subscription_id: str
    resource_group_ref: Optional[str]


@dataclass(frozen=True)
class DnsRecord:
    zone_name: str
    resource_group_ref: Optional[str]
    name: str
    fqdn: str
    record_type: str
    value: str


@dataclass(frozen=True)
class NodePool:
    name: str
    count: int
    vm_size: str = ""


@dataclass(frozen=True)
class Deployment:
    name: str
    namespace: str
    replica_count: int
    image: str


@dataclass(frozen=True)
class ManagedCluster:
    id: str
    name: str
    subscription_id: str
    resource_group_ref: Optional[str]
    location: str = ""
    kubernetes_version: str = ""
    node_pools: Tuple[NodePool, ...] = ()


@dataclass(frozen=True)
class Failure:
    """
    Error annotation attached to one entity slot of a report.
    """

    scope: str  # subscription | zone | cluster
    key: str
    message: str


@dataclass(frozen=True)
class SubscriptionGroups:
    subscription: Subscription
    groups: Tuple[ResourceGroup, ...] = ()
    resources: Tuple[Resource, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class ListReport:
    entries: Tuple[SubscriptionGroups, ...]
    failures: Tuple[Failure, ...] = ()


@dataclass(frozen=True)
class SubscriptionCosts:
    subscription: Subscription
    records: Tuple[CostRecord, ...] = ()
    total: Decimal = Decimal("0")
    currency: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CostsReport:
    period: str
    entries: Tuple[SubscriptionCosts, ...]
    totals: Tuple[Tuple[str, Decimal], ...] = ()
    failures: Tuple[Failure, ...] = ()


@dataclass(frozen=True)
class DomainEntry:
    zone: DnsZone
    resource_group: Optional[ResourceGroup]
    records: Tuple[DnsRecord, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class DomainsReport:
    entries: Tuple[DomainEntry, ...]
    failures: Tuple[Failure, ...] = ()


@dataclass(frozen=True)
class ClusterSummary:
    cluster_name: str
    id: str
    subscription_id: str
    resource_group_ref: Optional[str]
    resource_group: Optional[ResourceGroup] = None
    location: str = ""
    kubernetes_version: str = ""
    node_pools: Tuple[NodePool, ...] = ()
    deployments: Optional[Tuple[Deployment, ...]] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ClustersReport:
    entries: Tuple[ClusterSummary, ...]
    failures: Tuple[Failure, ...] = ()
    with_deployments: bool = False


@dataclass(frozen=True)
class ReportRequest:
    """
    Typed report selector handed over by the CLI layer.
    """

    kind: str  # list | costs | domains | clusters
    subscription: Optional[str] = None
    period: Optional[str] = None
    include_resources: bool = False
    with_deployments: bool = False
