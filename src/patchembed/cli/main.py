"""patchembed CLI - tissue-region embeddings for whole-slide images.

Command-line interface for generating, querying and clustering embeddings.
"""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Annotated, NoReturn

import typer

from patchembed import __version__
from patchembed.utils.logging import configure_logging, get_logger

app = typer.Typer(
    name="patchembed",
    help="patchembed: tissue-region embeddings and spatial search for WSIs",
    add_completion=False,
)


class Method(str, Enum):
    """Clustering method."""

    kmeans = "kmeans"


StoreDirOption = Annotated[
    Path | None,
    typer.Option("--store-dir", help="Directory holding the embedding store"),
]
VerboseOption = Annotated[
    int,
    typer.Option("--verbose", "-v", count=True, help="Increase verbosity (-v, -vv)"),
]
JsonOption = Annotated[bool, typer.Option("--json", help="Output as JSON")]
ModelOption = Annotated[
    str | None, typer.Option("--model", "-m", help="Registry model name")
]


# =============================================================================
# Commands
# =============================================================================


@app.command()
def version(json_output: JsonOption = False) -> None:
    """Show version information."""
    if json_output:
        typer.echo(json.dumps({"version": __version__}))
    else:
        typer.echo(f"patchembed {__version__}")


@app.command()
def models(json_output: JsonOption = False) -> None:
    """List embedding models in the registry."""
    from patchembed.cli.runners import list_models  # noqa: PLC0415

    try:
        entries = list_models()
    except Exception as e:
        _fail(e, json_output)

    if json_output:
        typer.echo(json.dumps(entries, indent=2))
        return
    for entry in entries:
        state = "" if entry["enabled"] else " (disabled)"
        typer.echo(
            f"{entry['model_name']}{state}: dim={entry['embedding_dimension']} "
            f"tile={entry['tile_resolution']}px -> {entry['tile_size_for_model']}px"
        )


@app.command()
def generate(  # noqa: PLR0913
    image_path: Annotated[
        Path,
        typer.Argument(
            exists=True,
            file_okay=True,
            dir_okay=False,
            readable=True,
            help="Path to image file (.svs, .ndpi, .tiff, .png, ...)",
        ),
    ],
    image_id: Annotated[
        str | None,
        typer.Option("--image-id", help="Identifier to store records under"),
    ] = None,
    model: ModelOption = None,
    cell_size: Annotated[
        int | None,
        typer.Option("--cell-size", min=1, help="Grid cell size in full-res pixels"),
    ] = None,
    store_dir: StoreDirOption = None,
    verbose: VerboseOption = 0,
    json_output: JsonOption = False,
) -> None:
    """Segment an image and embed its tissue regions."""
    from patchembed.cli.runners import resolve_settings, run_generate  # noqa: PLC0415

    _configure_logging(verbose)
    logger = get_logger(__name__)
    logger.info("Starting generate", image=str(image_path), model=model)

    try:
        outcome = run_generate(
            image_path=image_path,
            image_id=image_id,
            model_id=model,
            cell_size=cell_size,
            config=resolve_settings(store_dir),
        )
    except Exception as e:
        logger.exception("Generate failed")
        _fail(e, json_output)

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "image_id": outcome.image_id,
                    "model": outcome.model_id,
                    "status": outcome.status,
                    "total_regions": outcome.total_regions,
                    "succeeded": outcome.succeeded,
                    "failures": {str(k): v for k, v in outcome.failures.items()},
                    "records_written": outcome.records_written,
                    "records_total": outcome.records_total,
                },
                indent=2,
            )
        )
    else:
        typer.echo(f"\nImage: {outcome.image_id}")
        typer.echo(f"Model: {outcome.model_id}")
        typer.echo(f"Status: {outcome.status}")
        typer.echo(f"Regions: {outcome.succeeded}/{outcome.total_regions}")
        typer.echo(f"Records written: {outcome.records_written}")

    raise typer.Exit(0 if not outcome.failures else 1)


@app.command()
def query(  # noqa: PLR0913
    image_id: Annotated[
        str | None, typer.Option("--image-id", help="Restrict to one image")
    ] = None,
    lower: Annotated[
        str | None, typer.Option("--lower", help="Exclusive lower bound 'X,Y'")
    ] = None,
    upper: Annotated[
        str | None, typer.Option("--upper", help="Exclusive upper bound 'X,Y'")
    ] = None,
    model: Annotated[
        str | None, typer.Option("--model", "-m", help="Restrict to one model")
    ] = None,
    latest: Annotated[
        bool, typer.Option("--latest", help="Hide older duplicate records")
    ] = False,
    vectors: Annotated[
        bool, typer.Option("--vectors", help="Include vectors in JSON output")
    ] = False,
    store_dir: StoreDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """List stored records in a spatial range."""
    from patchembed.cli.runners import (  # noqa: PLC0415
        record_to_dict,
        resolve_settings,
        run_query,
    )

    try:
        records = run_query(
            image_id=image_id,
            lower=lower,
            upper=upper,
            model=model,
            latest_only=latest,
            config=resolve_settings(store_dir),
        )
    except Exception as e:
        _fail(e, json_output)

    if json_output:
        typer.echo(
            json.dumps(
                [record_to_dict(r, with_vector=vectors) for r in records], indent=2
            )
        )
        return
    for record in records:
        x, y, w, h = record.region.to_tuple()
        typer.echo(
            f"{record.record_id}\t{record.image_id}\t({x}, {y}, {w}, {h})\t"
            f"{record.model}\tdim={record.dimension}"
        )
    typer.echo(f"{len(records)} record(s)")


@app.command()
def count(
    image_id: Annotated[
        str | None, typer.Option("--image-id", help="Restrict to one image")
    ] = None,
    store_dir: StoreDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """Count stored records."""
    from patchembed.cli.runners import resolve_settings, run_count  # noqa: PLC0415

    try:
        total = run_count(image_id=image_id, config=resolve_settings(store_dir))
    except Exception as e:
        _fail(e, json_output)

    if json_output:
        typer.echo(json.dumps({"image_id": image_id, "count": total}))
    else:
        typer.echo(str(total))


@app.command()
def cluster(  # noqa: PLR0913
    image_id: Annotated[str, typer.Argument(help="Image to cluster")],
    k: Annotated[
        int | None, typer.Option("--k", "-k", min=1, help="Number of clusters")
    ] = None,
    method: Annotated[
        Method, typer.Option("--method", help="Clustering method")
    ] = Method.kmeans,
    seed: Annotated[
        int | None, typer.Option("--seed", help="Random seed for initialisation")
    ] = None,
    model: ModelOption = None,
    store_dir: StoreDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """Cluster an image's embeddings."""
    from patchembed.cli.runners import resolve_settings, run_cluster  # noqa: PLC0415

    try:
        outcome = run_cluster(
            image_id=image_id,
            k=k,
            method=method.value,
            seed=seed,
            config=resolve_settings(store_dir),
            model=model,
        )
    except Exception as e:
        _fail(e, json_output)

    if json_output:
        typer.echo(
            json.dumps(
                {
                    "image_id": outcome.image_id,
                    "k": outcome.k,
                    "sizes": {str(c): n for c, n in outcome.sizes.items()},
                    "assignments": outcome.assignments,
                },
                indent=2,
            )
        )
        return
    typer.echo(f"Image: {outcome.image_id} (k={outcome.k})")
    for cluster_id, size in outcome.sizes.items():
        typer.echo(f"  cluster {cluster_id}: {size} record(s)")


@app.command()
def similar(  # noqa: PLR0913
    image_id: Annotated[str, typer.Argument(help="Image to search")],
    x: Annotated[int, typer.Option("--x", min=0, help="Selection left edge")],
    y: Annotated[int, typer.Option("--y", min=0, help="Selection top edge")],
    width: Annotated[int, typer.Option("--width", min=1, help="Selection width")],
    height: Annotated[int, typer.Option("--height", min=1, help="Selection height")],
    threshold: Annotated[
        float | None,
        typer.Option("--threshold", help="Cosine similarity cutoff (exclusive)"),
    ] = None,
    model: ModelOption = None,
    store_dir: StoreDirOption = None,
    json_output: JsonOption = False,
) -> None:
    """Find regions similar to a rectangular selection."""
    from patchembed.cli.runners import (  # noqa: PLC0415
        record_to_dict,
        resolve_settings,
        run_similar,
    )
    from patchembed.geometry import Region  # noqa: PLC0415

    try:
        matches = run_similar(
            image_id=image_id,
            selection=Region(x=x, y=y, width=width, height=height),
            threshold=threshold,
            config=resolve_settings(store_dir),
            model=model,
        )
    except Exception as e:
        _fail(e, json_output)

    if json_output:
        typer.echo(
            json.dumps(
                [{**record_to_dict(r), "score": score} for r, score in matches],
                indent=2,
            )
        )
        return
    for record, score in matches:
        typer.echo(f"{record.record_id}\t{record.region.to_tuple()}\t{score:.4f}")
    typer.echo(f"{len(matches)} match(es)")


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """patchembed: tissue-region embeddings and spatial search for WSIs."""
    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def _configure_logging(verbose: int) -> None:
    """Configure logging based on verbosity level."""
    if verbose == 0:
        level = "WARNING"
    elif verbose == 1:
        level = "INFO"
    else:  # verbose >= 2
        level = "DEBUG"

    configure_logging(level=level)


def _fail(error: Exception, json_output: bool) -> NoReturn:
    """Report an error and exit with status 1."""
    if json_output:
        typer.echo(json.dumps({"error": str(error)}))
    else:
        typer.echo(f"Error: {error}", err=True)
    raise typer.Exit(1) from None


if __name__ == "__main__":  # pragma: no cover
    app()
