from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, List, Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .arm.models import (
    ClustersReport,
    CostsReport,
    DomainsReport,
    Failure,
    ListReport,
    ResourceGroup,
)
from .util.serialization import sanitize_for_json

ERROR_STYLE = "red"


def _money(amount: Decimal) -> str:
    return f"{amount.quantize(Decimal('0.01')):,}"


def _cell(value: Any) -> str:
    # provider values are data, never markup
    return escape(str(value)) if value is not None else ""


def _group_name(group: Optional[ResourceGroup], ref: Optional[str]) -> str:
    if group is not None:
        return _cell(group.name)
    if ref:
        return _cell(ref.rsplit("/", 1)[-1])
    return "-"


def render_json(report: Any) -> str:
    return json.dumps(sanitize_for_json(report), indent=2, sort_keys=True)


def _list_tables(report: ListReport) -> List[Table]:
    groups = Table(title="Resource Groups", show_header=True, header_style="bold")
    groups.add_column("Subscription", style="cyan")
    groups.add_column("Resource group", style="white")
    groups.add_column("Location")
    resources = Table(title="Resources", show_header=True, header_style="bold")
    resources.add_column("Resource group", style="cyan")
    resources.add_column("Name", style="white")
    resources.add_column("Type")
    resources.add_column("Location")

    for entry in report.entries:
        label = _cell(entry.subscription.display_name or entry.subscription.id)
        if entry.error:
            groups.add_row(label, f"[{ERROR_STYLE}]error: {escape(entry.error)}[/]", "")
            continue
        if not entry.groups:
            groups.add_row(label, "-", "")
        for group in entry.groups:
            groups.add_row(label, _cell(group.name), _cell(group.location))
        for res in entry.resources:
            resources.add_row(_group_name(None, res.resource_group_ref), _cell(res.name), _cell(res.type), _cell(res.location))

    tables = [groups]
    if resources.row_count:
        tables.append(resources)
    return tables


def _costs_tables(report: CostsReport) -> List[Table]:
    table = Table(title=f"Costs {report.period}", show_header=True, header_style="bold")
    table.add_column("Subscription", style="cyan")
    table.add_column("Resource group", style="white")
    table.add_column("Cost", justify="right")
    table.add_column("Currency")

    for entry in report.entries:
        label = _cell(entry.subscription.display_name or entry.subscription.id)
        if entry.error:
            table.add_row(label, f"[{ERROR_STYLE}]error: {escape(entry.error)}[/]", "", "")
            continue
        if not entry.records:
            table.add_row(label, "-", _money(Decimal("0")), "")
            continue
        for record in entry.records:
            table.add_row(label, _cell(record.resource_group or "(unassigned)"), _money(record.amount), _cell(record.currency))
        if entry.currency is not None and len(entry.records) > 1:
            table.add_row(label, "[bold]Subtotal[/]", f"[bold]{_money(entry.total)}[/]", _cell(entry.currency))

    for currency, amount in report.totals:
        table.add_row("[bold]Total[/]", "", f"[bold]{_money(amount)}[/]", _cell(currency))
    return [table]


def _domains_tables(report: DomainsReport) -> List[Table]:
    table = Table(title="DNS Records", show_header=True, header_style="bold")
    table.add_column("Zone", style="cyan")
    table.add_column("Resource group")
    table.add_column("Name", style="white")
    table.add_column("Type")
    table.add_column("Value")

    for entry in report.entries:
        group = _group_name(entry.resource_group, entry.zone.resource_group_ref)
        if entry.error:
            table.add_row(_cell(entry.zone.name), group, f"[{ERROR_STYLE}]error: {escape(entry.error)}[/]", "", "")
            continue
        for record in entry.records:
            table.add_row(
                _cell(entry.zone.name), group, _cell(record.fqdn), _cell(record.record_type), _cell(record.value)
            )
    return [table]


def _clusters_tables(report: ClustersReport) -> List[Table]:
    clusters = Table(title="Kubernetes Clusters", show_header=True, header_style="bold")
    clusters.add_column("Cluster", style="cyan")
    clusters.add_column("Resource group")
    clusters.add_column("Location")
    clusters.add_column("Version")
    clusters.add_column("Node pools", style="white")
    deployments = Table(title="Deployments", show_header=True, header_style="bold")
    deployments.add_column("Cluster", style="cyan")
    deployments.add_column("Namespace")
    deployments.add_column("Deployment", style="white")
    deployments.add_column("Replicas", justify="right")
    deployments.add_column("Image")

    for entry in report.entries:
        pools = ", ".join(f"{_cell(p.name)}={p.count}" for p in entry.node_pools) or "-"
        if entry.error:
            pools = f"{pools} [{ERROR_STYLE}](deployments unavailable: {escape(entry.error)})[/]"
        clusters.add_row(
            _cell(entry.cluster_name),
            _group_name(entry.resource_group, entry.resource_group_ref),
            _cell(entry.location),
            _cell(entry.kubernetes_version),
            pools,
        )
        for dep in entry.deployments or ():
            deployments.add_row(
                _cell(entry.cluster_name), _cell(dep.namespace), _cell(dep.name), str(dep.replica_count), _cell(dep.image)
            )

    tables = [clusters]
    if report.with_deployments:
        tables.append(deployments)
    return tables


def _failures_table(failures: Sequence[Failure]) -> Table:
    table = Table(title="Failures", show_header=True, header_style=f"bold {ERROR_STYLE}")
    table.add_column("Scope")
    table.add_column("Key", style="cyan")
    table.add_column("Error", style=ERROR_STYLE)
    for failure in failures:
        table.add_row(_cell(failure.scope), _cell(failure.key), _cell(failure.message))
    return table


def report_tables(report: Any) -> List[Table]:
    if isinstance(report, ListReport):
        tables = _list_tables(report)
    elif isinstance(report, CostsReport):
        tables = _costs_tables(report)
    elif isinstance(report, DomainsReport):
        tables = _domains_tables(report)
    elif isinstance(report, ClustersReport):
        tables = _clusters_tables(report)
    else:
        raise TypeError(f"Unsupported report type: {type(report).__name__}")
    failures = getattr(report, "failures", ())
    if failures:
        tables.append(_failures_table(failures))
    return tables


def render_report(report: Any, *, output: str = "table", console: Optional[Console] = None) -> None:
    """
    Print a report to stdout as rich tables or as JSON.
    """
    if output == "json":
        # no console markup or wrapping in machine output
        print(render_json(report), file=console.file if console is not None else None)
        return
    out = console or Console()
    for table in report_tables(report):
        out.print(table)
