from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..logging import get_logger
from ..util.errors import ProviderError
from ..util.time import month_range, parse_period
from .http import HttpExecutor, Request, get_path
from .kube import KubeCredentials, list_deployments, parse_kubeconfig_b64
from .models import (
    CostRecord,
    Deployment,
    DnsRecord,
    DnsZone,
    ManagedCluster,
    NodePool,
    Resource,
    ResourceGroup,
    Subscription,
    group_ref_of,
    subscription_of,
)

LOG = get_logger(__name__)

TYPE_DNS_ZONE = "Microsoft.Network/dnsZones"

API_SUBSCRIPTIONS = "2022-12-01"
API_RESOURCES = "2021-04-01"
API_DNS = "2018-05-01"
API_CONTAINER_SERVICE = "2023-08-01"
API_COST_MANAGEMENT = "2023-03-01"

COST_COLUMN = "PreTaxCost"
GROUP_COLUMN = "ResourceGroup"
CURRENCY_COLUMN = "Currency"


def _str(value: Any) -> str:
    return "" if value is None else str(value)


def _tags(value: Any) -> Tuple[Tuple[str, str], ...]:
    if not isinstance(value, dict):
        return ()
    return tuple(sorted((str(k), _str(v)) for k, v in value.items()))


def _decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def cost_query_body(period: Optional[str]) -> Dict[str, Any]:
    """
    Cost Management query: pre-tax cost summed per resource group for one
    billing month (month to date when period is None).
    """
    body: Dict[str, Any] = {
        "type": "Usage",
        "timeframe": "MonthToDate",
        "dataset": {
            "granularity": "Monthly",
            "aggregation": {"totalCost": {"name": COST_COLUMN, "function": "Sum"}},
            "grouping": [{"type": "Dimension", "name": GROUP_COLUMN}],
        },
    }
    if period:
        year, month = parse_period(period)
        first, last = month_range(year, month)
        body["timeframe"] = "Custom"
        body["timePeriod"] = {"from": f"{first.isoformat()}T00:00:00Z", "to": f"{last.isoformat()}T23:59:59Z"}
    return body


def _column_index(columns: Sequence[Any], name: str) -> Optional[int]:
    for i, col in enumerate(columns):
        if isinstance(col, dict) and str(col.get("name") or "").lower() == name.lower():
            return i
    return None


def parse_cost_rows(
    subscription_id: str,
    period: str,
    columns: Sequence[Any],
    rows: Sequence[Any],
) -> List[CostRecord]:
    """
    Turn cost query rows into one CostRecord per (resource group, currency),
    summing rows that repeat a group. Columns are located by name.
    """
    if not rows:
        return []
    cost_i = _column_index(columns, COST_COLUMN)
    group_i = _column_index(columns, GROUP_COLUMN)
    currency_i = _column_index(columns, CURRENCY_COLUMN)
    if cost_i is None or group_i is None or currency_i is None:
        raise ProviderError(200, "UnexpectedResponse", "Cost query response is missing expected columns")

    sums: Dict[Tuple[str, str], Decimal] = {}
    for row in rows:
        if not isinstance(row, list) or len(row) <= max(cost_i, group_i, currency_i):
            LOG.warning("Skipping malformed cost row", extra={"subscription": subscription_id})
            continue
        key = (_str(row[group_i]).lower(), _str(row[currency_i]))
        sums[key] = sums.get(key, Decimal("0")) + _decimal(row[cost_i])
    return [
        CostRecord(
            subscription_id=subscription_id,
            resource_group=group or None,
            period=period,
            amount=amount,
            currency=currency,
        )
        for (group, currency), amount in sorted(sums.items())
    ]


def parse_record_set(zone: DnsZone, row: Dict[str, Any]) -> List[DnsRecord]:
    name = _str(row.get("name"))
    props = row.get("properties") or {}
    record_type = _str(row.get("type")).rsplit("/", 1)[-1].upper()
    fqdn = _str(props.get("fqdn")).rstrip(".")
    if not fqdn:
        fqdn = zone.name if name == "@" else f"{name}.{zone.name}"

    values: List[str] = []
    if record_type == "A":
        values = [_str(r.get("ipv4Address")) for r in props.get("ARecords") or [] if isinstance(r, dict)]
    elif record_type == "AAAA":
        values = [_str(r.get("ipv6Address")) for r in props.get("AAAARecords") or [] if isinstance(r, dict)]
    elif record_type == "CNAME":
        cname = get_path(props, ("CNAMERecord", "cname"))
        values = [_str(cname)] if cname else []
    elif record_type == "TXT":
        values = ["".join(r.get("value") or []) for r in props.get("TXTRecords") or [] if isinstance(r, dict)]
    else:
        LOG.debug("Skipping unsupported record type", extra={"zone": zone.name, "record_type": record_type})
        return []

    return [
        DnsRecord(
            zone_name=zone.name,
            resource_group_ref=zone.resource_group_ref,
            name=name,
            fqdn=fqdn,
            record_type=record_type,
            value=value,
        )
        for value in values
        if value
    ]


def parse_cluster(row: Dict[str, Any], subscription_id: str) -> ManagedCluster:
    cluster_id = _str(row.get("id"))
    props = row.get("properties") or {}
    pools = tuple(
        NodePool(name=_str(p.get("name")), count=int(p.get("count") or 0), vm_size=_str(p.get("vmSize")))
        for p in props.get("agentPoolProfiles") or []
        if isinstance(p, dict)
    )
    return ManagedCluster(
        id=cluster_id,
        name=_str(row.get("name")),
        subscription_id=subscription_of(cluster_id) or subscription_id,
        resource_group_ref=group_ref_of(cluster_id),
        location=_str(row.get("location")),
        kubernetes_version=_str(props.get("kubernetesVersion") or props.get("currentKubernetesVersion")),
        node_pools=pools,
    )


class ManagementService:
    """
    Typed access to the management endpoints used by the reports. Every call
    goes through the shared HttpExecutor.
    """

    def __init__(self, http: HttpExecutor) -> None:
        self.http = http

    def _list(self, url: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        resp = self.http.execute(Request("GET", url, params=params, paginate=True))
        if resp is None:
            return []
        return [item for item in resp.items if isinstance(item, dict)]

    def get_subscriptions(self) -> List[Subscription]:
        rows = self._list("/subscriptions", {"api-version": API_SUBSCRIPTIONS})
        subs = [
            Subscription(
                id=_str(r.get("subscriptionId")),
                display_name=_str(r.get("displayName")),
                state=_str(r.get("state")),
            )
            for r in rows
        ]
        return sorted(subs, key=lambda s: s.id)

    def get_resource_groups(self, subscription_id: str) -> List[ResourceGroup]:
        rows = self._list(f"/subscriptions/{subscription_id}/resourcegroups", {"api-version": API_RESOURCES})
        return [
            ResourceGroup(
                subscription_id=subscription_id,
                name=_str(r.get("name")),
                location=_str(r.get("location")),
                id=_str(r.get("id")),
            )
            for r in rows
        ]

    def get_resources(self, subscription_id: str, resource_type: Optional[str] = None) -> List[Resource]:
        params = {"api-version": API_RESOURCES}
        if resource_type:
            params["$filter"] = f"resourceType eq '{resource_type}'"
        rows = self._list(f"/subscriptions/{subscription_id}/resources", params)
        return [
            Resource(
                resource_group_ref=group_ref_of(_str(r.get("id"))),
                id=_str(r.get("id")),
                type=_str(r.get("type")),
                name=_str(r.get("name")),
                location=_str(r.get("location")),
                tags=_tags(r.get("tags")),
            )
            for r in rows
        ]

    def get_costs(self, subscription_id: str, period: str, *, month_to_date: bool = False) -> List[CostRecord]:
        """
        Cost records for one subscription and billing period (YYYY-MM). A
        subscription without usage (404 or empty result) yields no records.
        """
        body = cost_query_body(None if month_to_date else period)
        resp = self.http.execute(
            Request(
                "POST",
                f"/subscriptions/{subscription_id}/providers/Microsoft.CostManagement/query",
                params={"api-version": API_COST_MANAGEMENT},
                json=body,
                paginate=True,
                items_path=("properties", "rows"),
                next_link_path=("properties", "nextLink"),
                not_found_ok=True,
            )
        )
        if resp is None:
            return []
        columns = get_path(resp.payload, ("properties", "columns")) or []
        return parse_cost_rows(subscription_id, period, columns, resp.items)

    def get_dns_zones(self, subscription_id: str) -> List[DnsZone]:
        return [
            DnsZone(
                id=r.id,
                name=r.name,
                subscription_id=subscription_of(r.id) or subscription_id,
                resource_group_ref=r.resource_group_ref,
            )
            for r in self.get_resources(subscription_id, TYPE_DNS_ZONE)
        ]

    def get_dns_records(self, zone: DnsZone) -> List[DnsRecord]:
        rows = self._list(f"{zone.id}/recordsets", {"api-version": API_DNS})
        records: List[DnsRecord] = []
        for row in rows:
            records.extend(parse_record_set(zone, row))
        return records

    def get_clusters(self, subscription_id: str) -> List[ManagedCluster]:
        rows = self._list(
            f"/subscriptions/{subscription_id}/providers/Microsoft.ContainerService/managedClusters",
            {"api-version": API_CONTAINER_SERVICE},
        )
        return [parse_cluster(r, subscription_id) for r in rows]

    def get_cluster_credentials(self, cluster: ManagedCluster) -> KubeCredentials:
        resp = self.http.execute(
            Request(
                "POST",
                f"{cluster.id}/listClusterUserCredential",
                params={"api-version": API_CONTAINER_SERVICE},
            )
        )
        kubeconfigs = get_path(resp.payload if resp else None, ("kubeconfigs",)) or []
        if not kubeconfigs or not isinstance(kubeconfigs[0], dict):
            raise ProviderError(200, "UnexpectedResponse", f"No kubeconfig returned for {cluster.name}")
        return parse_kubeconfig_b64(_str(kubeconfigs[0].get("value")))

    def get_deployments(self, cluster: ManagedCluster) -> List[Deployment]:
        creds = self.get_cluster_credentials(cluster)
        return list_deployments(creds, timeout=self.http.timeout, retry=self.http.retry)
