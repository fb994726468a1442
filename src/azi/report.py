from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from time import perf_counter
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .arm.models import (
    ClusterSummary,
    ClustersReport,
    CostsReport,
    DomainEntry,
    DomainsReport,
    Failure,
    ListReport,
    ManagedCluster,
    ReportRequest,
    ResourceGroup,
    Subscription,
    SubscriptionCosts,
    SubscriptionGroups,
)
from .arm.service import ManagementService
from .logging import get_logger
from .util.concurrency import Outcome, fan_out
from .util.errors import ConfigError, ResourceNotFound, describe_error
from .util.time import current_period, format_period, parse_period, utc_now

LOG = get_logger(__name__)

DEFAULT_WORKERS = 8
REPORT_KINDS = ("list", "costs", "domains", "clusters")

T = TypeVar("T")
R = TypeVar("R")

Report = Any


def _name_key(name: str) -> Tuple[str, str]:
    return (name.lower(), name)


def _log_event(message: str, *, step: str, started: float, **fields: Any) -> None:
    fields["duration_ms"] = int((perf_counter() - started) * 1000)
    LOG.log(logging.INFO, message, extra={"step": step, "phase": "complete", **fields})


class ReportEngine:
    """
    Turns one report request into bounded concurrent management calls and
    merges the results into an immutable, deterministically ordered report.

    Subscription discovery failures are fatal; failures of any per-subscription,
    per-zone or per-cluster task are attached to that entity and collected in
    the report's failures.
    """

    def __init__(
        self,
        service: ManagementService,
        *,
        max_workers: int = DEFAULT_WORKERS,
        on_interrupt: Optional[Callable[[], None]] = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self.service = service
        self.max_workers = max(1, int(max_workers))
        http = getattr(service, "http", None)
        self._on_interrupt = on_interrupt or getattr(http, "cancel", None)
        self._now = now

    def _fan_out(self, func: Callable[[T], R], items: Iterable[T]) -> List[Outcome[T, R]]:
        return fan_out(func, items, self.max_workers, on_interrupt=self._on_interrupt)

    def _failed(self, scope: str, key: str, error: Optional[Exception]) -> Failure:
        message = describe_error(error) if error is not None else "unknown error"
        LOG.warning("Partial failure", extra={"scope": scope, "key": key, "error": message})
        return Failure(scope=scope, key=key, message=message)

    def discover_subscriptions(self, subscription: Optional[str] = None) -> List[Subscription]:
        subs = self.service.get_subscriptions()
        if subscription:
            wanted = subscription.lower()
            subs = [s for s in subs if s.id.lower() == wanted or s.display_name.lower() == wanted]
            if not subs:
                raise ResourceNotFound(404, "SubscriptionNotFound", f"No accessible subscription matches {subscription!r}")
        LOG.debug("Discovered subscriptions", extra={"count": len(subs)})
        return sorted(subs, key=lambda s: s.id)

    def _groups_lookup(self, groups: Sequence[ResourceGroup]) -> Dict[str, ResourceGroup]:
        return {g.ref: g for g in groups}

    def list_report(self, subscription: Optional[str] = None, include_resources: bool = False) -> ListReport:
        started = perf_counter()
        subs = self.discover_subscriptions(subscription)

        def fetch(sub: Subscription) -> SubscriptionGroups:
            groups = sorted(self.service.get_resource_groups(sub.id), key=lambda g: _name_key(g.name))
            resources: List[Any] = []
            if include_resources:
                resources = sorted(
                    self.service.get_resources(sub.id),
                    key=lambda r: (r.resource_group_ref or "", _name_key(r.name), r.id),
                )
            return SubscriptionGroups(subscription=sub, groups=tuple(groups), resources=tuple(resources))

        entries: List[SubscriptionGroups] = []
        failures: List[Failure] = []
        for outcome in self._fan_out(fetch, subs):
            if outcome.ok:
                entries.append(outcome.value)  # type: ignore[arg-type]
                continue
            failure = self._failed("subscription", outcome.item.id, outcome.error)
            failures.append(failure)
            entries.append(SubscriptionGroups(subscription=outcome.item, error=failure.message))

        entries.sort(key=lambda e: e.subscription.id)
        _log_event("List report complete", step="list", started=started, subscriptions=len(entries), failures=len(failures))
        return ListReport(entries=tuple(entries), failures=tuple(failures))

    def costs_report(self, period: Optional[str] = None, subscription: Optional[str] = None) -> CostsReport:
        started = perf_counter()
        month_to_date = period is None
        label = current_period(self._now()) if period is None else format_period(*parse_period(period))
        subs = self.discover_subscriptions(subscription)

        def fetch(sub: Subscription) -> SubscriptionCosts:
            records = sorted(
                self.service.get_costs(sub.id, label, month_to_date=month_to_date),
                key=lambda r: (r.resource_group or "", r.currency),
            )
            currencies = {r.currency for r in records}
            return SubscriptionCosts(
                subscription=sub,
                records=tuple(records),
                total=sum((r.amount for r in records), Decimal("0")),
                currency=currencies.pop() if len(currencies) == 1 else None,
            )

        entries: List[SubscriptionCosts] = []
        failures: List[Failure] = []
        for outcome in self._fan_out(fetch, subs):
            if outcome.ok:
                entries.append(outcome.value)  # type: ignore[arg-type]
                continue
            failure = self._failed("subscription", outcome.item.id, outcome.error)
            failures.append(failure)
            entries.append(SubscriptionCosts(subscription=outcome.item, error=failure.message))

        entries.sort(key=lambda e: e.subscription.id)
        totals: Dict[str, Decimal] = {}
        for entry in entries:
            for record in entry.records:
                totals[record.currency] = totals.get(record.currency, Decimal("0")) + record.amount
        _log_event("Costs report complete", step="costs", started=started, period=label, failures=len(failures))
        return CostsReport(
            period=label,
            entries=tuple(entries),
            totals=tuple(sorted(totals.items())),
            failures=tuple(failures),
        )

    def domains_report(self, subscription: Optional[str] = None) -> DomainsReport:
        started = perf_counter()
        subs = self.discover_subscriptions(subscription)

        def fetch_zones(sub: Subscription) -> Tuple[List[Any], List[ResourceGroup]]:
            return self.service.get_dns_zones(sub.id), self.service.get_resource_groups(sub.id)

        zones: List[Any] = []
        groups: List[ResourceGroup] = []
        failures: List[Failure] = []
        for outcome in self._fan_out(fetch_zones, subs):
            if not outcome.ok:
                failures.append(self._failed("subscription", outcome.item.id, outcome.error))
                continue
            sub_zones, sub_groups = outcome.value  # type: ignore[misc]
            zones.extend(sub_zones)
            groups.extend(sub_groups)

        # Back-references are recomputed per run, never stored on the zone.
        lookup = self._groups_lookup(groups)
        entries: List[DomainEntry] = []
        for outcome in self._fan_out(self.service.get_dns_records, zones):
            zone = outcome.item
            owner = lookup.get(zone.resource_group_ref or "")
            if outcome.ok:
                records = sorted(outcome.value or [], key=lambda r: (_name_key(r.name), r.record_type, r.value))
                entries.append(DomainEntry(zone=zone, resource_group=owner, records=tuple(records)))
                continue
            failure = self._failed("zone", zone.name, outcome.error)
            failures.append(failure)
            entries.append(DomainEntry(zone=zone, resource_group=owner, error=failure.message))

        entries.sort(key=lambda e: (e.zone.subscription_id, _name_key(e.zone.name)))
        _log_event("Domains report complete", step="domains", started=started, zones=len(entries), failures=len(failures))
        return DomainsReport(entries=tuple(entries), failures=tuple(failures))

    def clusters_report(self, with_deployments: bool = False, subscription: Optional[str] = None) -> ClustersReport:
        started = perf_counter()
        subs = self.discover_subscriptions(subscription)

        def fetch_clusters(sub: Subscription) -> Tuple[List[ManagedCluster], List[ResourceGroup]]:
            return self.service.get_clusters(sub.id), self.service.get_resource_groups(sub.id)

        clusters: List[ManagedCluster] = []
        groups: List[ResourceGroup] = []
        failures: List[Failure] = []
        for outcome in self._fan_out(fetch_clusters, subs):
            if not outcome.ok:
                failures.append(self._failed("subscription", outcome.item.id, outcome.error))
                continue
            sub_clusters, sub_groups = outcome.value  # type: ignore[misc]
            clusters.extend(sub_clusters)
            groups.extend(sub_groups)

        lookup = self._groups_lookup(groups)

        def summary(cluster: ManagedCluster, **kwargs: Any) -> ClusterSummary:
            return ClusterSummary(
                cluster_name=cluster.name,
                id=cluster.id,
                subscription_id=cluster.subscription_id,
                resource_group_ref=cluster.resource_group_ref,
                resource_group=lookup.get(cluster.resource_group_ref or ""),
                location=cluster.location,
                kubernetes_version=cluster.kubernetes_version,
                node_pools=cluster.node_pools,
                **kwargs,
            )

        entries: List[ClusterSummary] = []
        if with_deployments:
            for outcome in self._fan_out(self.service.get_deployments, clusters):
                if outcome.ok:
                    entries.append(summary(outcome.item, deployments=tuple(outcome.value or ())))
                    continue
                # Degrade to a summary-only entry.
                failure = self._failed("cluster", outcome.item.name, outcome.error)
                failures.append(failure)
                entries.append(summary(outcome.item, error=failure.message))
        else:
            entries = [summary(c) for c in clusters]

        entries.sort(key=lambda e: (e.subscription_id, _name_key(e.cluster_name), e.id))
        _log_event("Clusters report complete", step="clusters", started=started, clusters=len(entries), failures=len(failures))
        return ClustersReport(entries=tuple(entries), failures=tuple(failures), with_deployments=with_deployments)

    def run(self, request: ReportRequest) -> Report:
        if request.kind == "list":
            return self.list_report(request.subscription, include_resources=request.include_resources)
        if request.kind == "costs":
            return self.costs_report(request.period, subscription=request.subscription)
        if request.kind == "domains":
            return self.domains_report(request.subscription)
        if request.kind == "clusters":
            return self.clusters_report(request.with_deployments, subscription=request.subscription)
        raise ConfigError(f"Unknown report: {request.kind} (expected one of {', '.join(REPORT_KINDS)})")
