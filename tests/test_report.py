from __future__ import annotations

import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest

from azi.arm.models import (
    CostRecord,
    Deployment,
    DnsRecord,
    DnsZone,
    Failure,
    ManagedCluster,
    NodePool,
    ReportRequest,
    ResourceGroup,
    Subscription,
    group_ref,
)
from azi.report import ReportEngine
from azi.util.errors import ConfigError, ProviderError, ResourceNotFound, UnsupportedCredential

SUBS = [
    Subscription(id="sub-c", display_name="Gamma"),
    Subscription(id="sub-a", display_name="Alpha"),
    Subscription(id="sub-b", display_name="Beta"),
]


def _groups(sub: str, *names: str) -> List[ResourceGroup]:
    return [ResourceGroup(subscription_id=sub, name=n, location="westeurope") for n in names]


def _value(table: Dict[str, Any], key: str, default: Any) -> Any:
    value = table.get(key, default)
    if isinstance(value, Exception):
        raise value
    return value


class FakeService:
    def __init__(self, **tables: Any) -> None:
        self.subs = tables.pop("subs", SUBS)
        self.tables = tables
        self.delays: Dict[str, float] = tables.pop("delays", {})
        self.cost_calls: List[Any] = []
        self.deployment_calls: List[str] = []
        self._lock = threading.Lock()

    def _table(self, name: str) -> Dict[str, Any]:
        return self.tables.get(name, {})

    def get_subscriptions(self) -> List[Subscription]:
        if isinstance(self.subs, Exception):
            raise self.subs
        return list(self.subs)

    def get_resource_groups(self, subscription_id: str) -> List[ResourceGroup]:
        time.sleep(self.delays.get(subscription_id, 0))
        return list(_value(self._table("groups"), subscription_id, []))

    def get_resources(self, subscription_id: str, resource_type: Optional[str] = None) -> List[Any]:
        return list(_value(self._table("resources"), subscription_id, []))

    def get_costs(self, subscription_id: str, period: str, *, month_to_date: bool = False) -> List[CostRecord]:
        with self._lock:
            self.cost_calls.append((subscription_id, period, month_to_date))
        return list(_value(self._table("costs"), subscription_id, []))

    def get_dns_zones(self, subscription_id: str) -> List[DnsZone]:
        return list(_value(self._table("zones"), subscription_id, []))

    def get_dns_records(self, zone: DnsZone) -> List[DnsRecord]:
        return list(_value(self._table("records"), zone.name, []))

    def get_clusters(self, subscription_id: str) -> List[ManagedCluster]:
        return list(_value(self._table("clusters"), subscription_id, []))

    def get_deployments(self, cluster: ManagedCluster) -> List[Deployment]:
        with self._lock:
            self.deployment_calls.append(cluster.name)
        return list(_value(self._table("deployments"), cluster.name, []))


def test_list_report_is_sorted_regardless_of_completion_order() -> None:
    service = FakeService(
        groups={
            "sub-a": _groups("sub-a", "zeta", "Alpha", "beta"),
            "sub-b": _groups("sub-b", "one"),
            "sub-c": _groups("sub-c", "two"),
        },
        delays={"sub-a": 0.05, "sub-b": 0.0, "sub-c": 0.02},
    )
    engine = ReportEngine(service, max_workers=3)  # type: ignore[arg-type]

    first = engine.list_report()
    second = engine.list_report()

    assert [e.subscription.id for e in first.entries] == ["sub-a", "sub-b", "sub-c"]
    assert [g.name for g in first.entries[0].groups] == ["Alpha", "beta", "zeta"]
    assert first == second
    assert first.failures == ()


def test_list_report_records_partial_failure() -> None:
    service = FakeService(
        groups={
            "sub-a": _groups("sub-a", "rg1"),
            "sub-b": ProviderError(403, "AuthorizationFailed", "no access"),
            "sub-c": _groups("sub-c", "rg2"),
        }
    )

    report = ReportEngine(service, max_workers=2).list_report()  # type: ignore[arg-type]

    assert len(report.entries) == 3
    failed = report.entries[1]
    assert failed.subscription.id == "sub-b"
    assert failed.groups == ()
    assert "AuthorizationFailed" in (failed.error or "")
    assert report.failures == (Failure(scope="subscription", key="sub-b", message=failed.error or ""),)


def test_subscription_discovery_failure_is_fatal() -> None:
    service = FakeService(subs=ProviderError(401, None, "unauthorized"))

    with pytest.raises(ProviderError):
        ReportEngine(service).list_report()  # type: ignore[arg-type]


def test_subscription_filter_by_name_and_unknown() -> None:
    service = FakeService(groups={"sub-b": _groups("sub-b", "rg")})
    engine = ReportEngine(service)  # type: ignore[arg-type]

    report = engine.list_report(subscription="beta")

    assert [e.subscription.id for e in report.entries] == ["sub-b"]
    with pytest.raises(ResourceNotFound):
        engine.list_report(subscription="nope")


def _cost(sub: str, rg: Optional[str], amount: str, currency: str = "EUR") -> CostRecord:
    return CostRecord(subscription_id=sub, resource_group=rg, period="2024-02", amount=Decimal(amount), currency=currency)


def test_costs_report_with_missing_data_and_failure() -> None:
    service = FakeService(
        costs={
            "sub-a": [_cost("sub-a", "web", "10.50"), _cost("sub-a", "db", "4.25")],
            "sub-b": ProviderError(500, "InternalServerError", "boom"),
            "sub-c": [],
        }
    )

    report = ReportEngine(service, max_workers=2).costs_report("202402")  # type: ignore[arg-type]

    assert report.period == "2024-02"
    assert [e.subscription.id for e in report.entries] == ["sub-a", "sub-b", "sub-c"]
    alpha, beta, gamma = report.entries
    assert [r.resource_group for r in alpha.records] == ["db", "web"]
    assert alpha.total == Decimal("14.75")
    assert alpha.currency == "EUR"
    assert beta.error is not None and "boom" in beta.error
    assert gamma.records == ()
    assert gamma.total == Decimal("0")
    assert gamma.error is None
    assert report.totals == (("EUR", Decimal("14.75")),)
    assert [f.key for f in report.failures] == ["sub-b"]
    assert sorted(service.cost_calls) == [
        ("sub-a", "2024-02", False),
        ("sub-b", "2024-02", False),
        ("sub-c", "2024-02", False),
    ]


def test_costs_default_to_current_month_to_date() -> None:
    service = FakeService(subs=[SUBS[1]])
    engine = ReportEngine(service, now=lambda: datetime(2024, 5, 3, tzinfo=timezone.utc))  # type: ignore[arg-type]

    report = engine.costs_report()

    assert report.period == "2024-05"
    assert service.cost_calls == [("sub-a", "2024-05", True)]


def test_costs_totals_per_currency() -> None:
    service = FakeService(
        subs=SUBS[:2],
        costs={
            "sub-a": [_cost("sub-a", "web", "1.00", "USD")],
            "sub-c": [_cost("sub-c", "web", "2.00", "EUR"), _cost("sub-c", "api", "3.00", "USD")],
        },
    )

    report = ReportEngine(service).costs_report("2024-02")  # type: ignore[arg-type]

    assert report.totals == (("EUR", Decimal("2.00")), ("USD", Decimal("4.00")))
    mixed = report.entries[1]
    assert mixed.currency is None


def _zone(sub: str, rg: str, name: str) -> DnsZone:
    return DnsZone(
        id=f"/subscriptions/{sub}/resourceGroups/{rg}/providers/Microsoft.Network/dnszones/{name}",
        name=name,
        subscription_id=sub,
        resource_group_ref=group_ref(sub, rg),
    )


def _a(zone: DnsZone, name: str, value: str) -> DnsRecord:
    return DnsRecord(
        zone_name=zone.name,
        resource_group_ref=zone.resource_group_ref,
        name=name,
        fqdn=f"{name}.{zone.name}",
        record_type="A",
        value=value,
    )


def test_domains_resolve_resource_group_and_isolate_zone_failure() -> None:
    example = _zone("sub-a", "DNS-RG", "example.com")
    broken = _zone("sub-a", "dns-rg", "broken.net")
    orphan = _zone("sub-b", "gone", "orphan.org")
    service = FakeService(
        subs=SUBS[1:],
        zones={"sub-a": [example, broken], "sub-b": [orphan]},
        groups={"sub-a": _groups("sub-a", "dns-rg"), "sub-b": _groups("sub-b", "other")},
        records={
            "example.com": [_a(example, "www", "10.0.0.2"), _a(example, "api", "10.0.0.1")],
            "broken.net": ProviderError(403, "AuthorizationFailed", "denied"),
        },
    )

    report = ReportEngine(service, max_workers=4).domains_report()  # type: ignore[arg-type]

    assert [e.zone.name for e in report.entries] == ["broken.net", "example.com", "orphan.org"]
    failed, ok, lonely = report.entries
    assert ok.resource_group is not None and ok.resource_group.name == "dns-rg"
    assert [r.name for r in ok.records] == ["api", "www"]
    assert failed.error is not None and failed.records == ()
    assert failed.resource_group is not None
    assert lonely.resource_group is None
    assert [(f.scope, f.key) for f in report.failures] == [("zone", "broken.net")]


def test_domains_subscription_failure_skips_its_zones() -> None:
    zone = _zone("sub-b", "rg", "b.example")
    service = FakeService(
        subs=SUBS[1:],
        zones={"sub-a": ProviderError(500, None, "down"), "sub-b": [zone]},
        groups={"sub-b": _groups("sub-b", "rg")},
    )

    report = ReportEngine(service).domains_report()  # type: ignore[arg-type]

    assert [e.zone.name for e in report.entries] == ["b.example"]
    assert [(f.scope, f.key) for f in report.failures] == [("subscription", "sub-a")]


def _cluster(sub: str, rg: str, name: str) -> ManagedCluster:
    return ManagedCluster(
        id=f"/subscriptions/{sub}/resourcegroups/{rg}/providers/Microsoft.ContainerService/managedClusters/{name}",
        name=name,
        subscription_id=sub,
        resource_group_ref=group_ref(sub, rg),
        location="westeurope",
        kubernetes_version="1.29.2",
        node_pools=(NodePool(name="system", count=3, vm_size="Standard_D4s_v5"),),
    )


def test_clusters_degrade_to_summary_when_details_fail() -> None:
    service = FakeService(
        subs=[SUBS[1]],
        clusters={"sub-a": [_cluster("sub-a", "aks", "prod"), _cluster("sub-a", "aks", "dev")]},
        groups={"sub-a": _groups("sub-a", "aks")},
        deployments={
            "dev": [Deployment(name="web", namespace="default", replica_count=2, image="nginx:1.25")],
            "prod": UnsupportedCredential("Cluster requires an exec credential plugin"),
        },
    )

    report = ReportEngine(service, max_workers=2).clusters_report(with_deployments=True)  # type: ignore[arg-type]

    assert [e.cluster_name for e in report.entries] == ["dev", "prod"]
    dev, prod = report.entries
    assert dev.deployments == (Deployment(name="web", namespace="default", replica_count=2, image="nginx:1.25"),)
    assert dev.resource_group is not None and dev.resource_group.name == "aks"
    assert prod.deployments is None
    assert prod.error is not None and "exec credential" in prod.error
    assert prod.node_pools[0].count == 3
    assert [(f.scope, f.key) for f in report.failures] == [("cluster", "prod")]
    assert report.with_deployments is True


def test_clusters_without_deployments_skip_kubernetes_calls() -> None:
    service = FakeService(subs=[SUBS[1]], clusters={"sub-a": [_cluster("sub-a", "aks", "prod")]})

    report = ReportEngine(service).clusters_report()  # type: ignore[arg-type]

    assert service.deployment_calls == []
    assert report.entries[0].deployments is None
    assert report.entries[0].error is None


def test_run_dispatches_typed_requests() -> None:
    service = FakeService(subs=[SUBS[1]], groups={"sub-a": _groups("sub-a", "rg")})
    engine = ReportEngine(service)  # type: ignore[arg-type]

    report = engine.run(ReportRequest(kind="list"))

    assert report.entries[0].groups[0].name == "rg"
    with pytest.raises(ConfigError):
        engine.run(ReportRequest(kind="ips"))
