"""
CLI: ``obspine obs``: inspect stored entities, read results, run removals.
"""

from __future__ import annotations

from typing import Any

import typer

from obspine.cli.utils import console, open_store, output_dict, output_items
from obspine.om.model import Location, Observation, Offering, Phenomenon, Procedure, SamplingFeature, Time
from obspine.om.queries import EntityQuery, ResultFormat, ResultQuery

app = typer.Typer(no_args_is_help=True)


# ── Row builders ─────────────────────────────────────────────────────────


def _time(time: Time | None) -> str | None:
    if time is None:
        return None
    if time.begin == time.end:
        return time.begin.isoformat()
    return f"{time.begin.isoformat()}/{time.end.isoformat()}"


def procedure_row(p: Procedure) -> dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "type": p.om_type.value if p.om_type else None,
        "sensor_type": p.sensor_type.value,
        "parent": p.parent,
        "fields": ", ".join(f.name for f in p.fields),
        "locations": len(p.locations),
    }


def phenomenon_row(p: Phenomenon) -> dict[str, Any]:
    return {
        "id": p.id,
        "kind": p.kind.value,
        "name": p.name,
        "components": ", ".join(c.id for c in p.components),
    }


def feature_row(f: SamplingFeature) -> dict[str, Any]:
    return {
        "id": f.id,
        "name": f.name,
        "sampled_feature": f.sampled_feature,
        "geometry": f.geometry.wkt if f.geometry is not None else None,
        "srid": f.srid,
    }


def location_row(loc: Location) -> dict[str, Any]:
    return {"time": loc.time.isoformat(), "geometry": loc.geometry.wkt, "srid": loc.srid}


def offering_row(o: Offering) -> dict[str, Any]:
    return {
        "id": o.id,
        "procedure": o.procedure,
        "time": _time(o.time),
        "phenomena": ", ".join(o.observed_properties),
        "features": ", ".join(o.features_of_interest),
    }


def template_dict(t: Observation) -> dict[str, Any]:
    return {
        "id": t.id,
        "procedure": t.procedure.id,
        "observed_property": t.observed_property.id if t.observed_property else None,
        "feature_of_interest": t.feature_of_interest.id if t.feature_of_interest else None,
        "time": _time(t.sampling_time),
        "fields": [f.name for f in t.fields],
    }


# ── Listings ─────────────────────────────────────────────────────────────


@app.command("procedures")
def list_procedures(
    limit: int | None = typer.Option(None, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List procedures with their field ledger."""
    with open_store(database) as store:
        found = store.get_procedures(EntityQuery(limit=limit, offset=offset))
        output_items([procedure_row(p) for p in found], as_json=json_out, title="Procedures")


@app.command("phenomena")
def list_phenomena(
    leaves: bool = typer.Option(False, "--leaves", help="Replace composites by their components"),
    limit: int | None = typer.Option(None, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List stored phenomena."""
    with open_store(database) as store:
        query = EntityQuery(limit=limit, offset=offset, no_composite_phenomenon=leaves)
        found = store.get_phenomenon(query)
        output_items([phenomenon_row(p) for p in found], as_json=json_out, title="Phenomena")


@app.command("features")
def list_features(
    limit: int | None = typer.Option(None, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List features of interest."""
    with open_store(database) as store:
        found = store.get_feature_of_interest(EntityQuery(limit=limit, offset=offset))
        output_items([feature_row(f) for f in found], as_json=json_out, title="Features of interest")


@app.command("offerings")
def list_offerings(
    limit: int | None = typer.Option(None, "--limit", "-n"),
    offset: int = typer.Option(0, "--offset"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """List the derived offerings, one per procedure."""
    with open_store(database) as store:
        found = store.get_offerings(EntityQuery(limit=limit, offset=offset))
        output_items([offering_row(o) for o in found], as_json=json_out, title="Offerings")


# ── Template and results ─────────────────────────────────────────────────


@app.command()
def template(
    procedure: str = typer.Argument(..., help="Procedure ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
    json_out: bool = typer.Option(False, "--json"),
) -> None:
    """Show the no-data template of a procedure."""
    with open_store(database) as store:
        found = store.get_template(procedure)
        if found is None:
            console.print(f"[yellow]Unknown procedure[/yellow] {procedure}")
            raise typer.Exit(code=1)
        output_dict(template_dict(found), as_json=json_out, title=f"Template: {found.id}")


@app.command()
def results(
    procedure: str = typer.Argument(..., help="Procedure ID"),
    fmt: ResultFormat = typer.Option(ResultFormat.CSV, "--format", "-f"),
    decimate: int | None = typer.Option(None, "--decimate", help="Down-sample to N points per series"),
    include_id: bool = typer.Option(False, "--include-id"),
    include_time: bool = typer.Option(False, "--include-time", help="Profile time column"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Print the results of a procedure."""
    query = ResultQuery(
        procedure=procedure,
        format=fmt,
        decimation_size=decimate,
        include_id=include_id,
        include_time_for_profile=include_time,
    )
    with open_store(database) as store:
        result = store.get_results(query)
    if result.data_array is not None:
        for line in result.data_array:
            typer.echo(",".join("" if v is None else str(v) for v in line))
    else:
        typer.echo(result.values or "", nl=False)


# ── Removals ─────────────────────────────────────────────────────────────


@app.command("remove-phenomenon")
def remove_phenomenon(
    phenomenon: str = typer.Argument(..., help="Phenomenon ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Remove a phenomenon and every value measured for it."""
    with open_store(database) as store:
        removed = store.remove_phenomenon(phenomenon)
    if not removed:
        console.print(f"[yellow]Unknown phenomenon[/yellow] {phenomenon}")
        raise typer.Exit(code=1)
    console.print(f"[green]Removed[/green] {phenomenon}")


@app.command("remove-procedure")
def remove_procedure(
    procedure: str = typer.Argument(..., help="Procedure ID"),
    database: str | None = typer.Option(None, "--database", "-d"),
) -> None:
    """Remove a procedure with its observations, ledger and offering."""
    with open_store(database) as store:
        removed = store.remove_procedure(procedure)
    if not removed:
        console.print(f"[yellow]Unknown procedure[/yellow] {procedure}")
        raise typer.Exit(code=1)
    console.print(f"[green]Removed[/green] {procedure}")
