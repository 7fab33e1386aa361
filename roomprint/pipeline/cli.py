"""CLI entry-point for reconstructing, storing and recognising room scans."""

from __future__ import annotations

import logging
from pathlib import Path

import click

from roomprint.core.config import ScanConfig
from roomprint.core.errors import ScanNotFoundError, StorageError
from roomprint.pipeline.loader import load_point_cloud, load_recording, write_ply
from roomprint.pipeline.process import decode_points, process_recording
from roomprint.pipeline.session import ScanSession
from roomprint.pipeline.storage import ScanStore


@click.group()
@click.option(
    "--store",
    "storage_dir",
    type=click.Path(file_okay=False),
    default=None,
    help="Scan store directory (default: $ROOMPRINT_STORAGE_DIR or ~/.roomprint).",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, storage_dir: str | None, verbose: bool):
    """Room scan reconstruction and recognition."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s | %(name)s | %(message)s",
    )
    config = ScanConfig.from_env(storage_dir=storage_dir)
    ctx.obj = {"config": config, "store": ScanStore(config.storage_dir)}


def _session(ctx: click.Context, **overrides) -> ScanSession:
    config: ScanConfig = ctx.obj["config"]
    if overrides:
        config = ScanConfig.model_validate(
            {**config.model_dump(), **{k: v for k, v in overrides.items() if v is not None}}
        )
    session = ScanSession(store=ctx.obj["store"], config=config)
    session.load_known_scans()
    return session


@main.command()
@click.argument("recording", type=click.Path(exists=True, dir_okay=False))
@click.option("-n", "--name", default="", help="Room name.")
@click.option("--stride", type=int, default=None, help="Pixel sampling stride.")
@click.option("--target-points", type=int, default=None, help="Decimation target.")
@click.option("--no-save", is_flag=True, help="Reconstruct and recognise only.")
@click.pass_context
def replay(
    ctx: click.Context,
    recording: str,
    name: str,
    stride: int | None,
    target_points: int | None,
    no_save: bool,
):
    """Replay a recorded capture (.npz) through a scan session."""
    session = _session(ctx, sample_stride=stride, target_point_count=target_points)
    frames = load_recording(recording)

    session.start(name or Path(recording).stem)
    for frame in frames:
        session.ingest(frame)
    points = session.stop()
    click.echo(f"Reconstructed {len(points):,} points from {len(frames)} frames")

    match = session.recognize(points)
    if match is not None:
        click.echo(f"Recognised room: {match.name} ({match.id})")

    if no_save:
        return
    result = session.save()
    if result is None:
        raise click.ClickException("Nothing to save: the recording produced no points")
    if not result.persisted:
        raise click.ClickException(f"Scan built but not stored: {result.error}")
    click.echo(f"Saved {result.scan.name} as {result.scan.id} (signature {result.scan.signature})")


@main.command()
@click.argument("recording", type=click.Path(exists=True, dir_okay=False))
@click.option("-o", "--output", "output_file", default=None, help="Output PLY path.")
@click.pass_context
def reconstruct(ctx: click.Context, recording: str, output_file: str | None):
    """Reconstruct a recording into a PLY point cloud without storing it."""
    points = process_recording(recording, ctx.obj["config"])
    output = Path(output_file) if output_file else Path(recording).with_suffix(".ply")
    write_ply(output, points)
    click.echo(f"Wrote {len(points):,} points to {output}")


@main.command("list")
@click.pass_context
def list_scans(ctx: click.Context):
    """List stored scans, newest first."""
    session = _session(ctx)
    scans = session.known_scans
    if not scans:
        click.echo("No stored scans.")
        return
    for scan in scans:
        click.echo(
            f"{scan.id}  {scan.timestamp:%Y-%m-%d %H:%M}  {scan.name}"
            f"  ({len(scan.anchors)} anchors, signature {scan.signature})"
        )


@main.command()
@click.argument("scan_id")
@click.pass_context
def show(ctx: click.Context, scan_id: str):
    """Show one stored scan as JSON."""
    store: ScanStore = ctx.obj["store"]
    try:
        scan = store.load(scan_id)
    except StorageError as e:
        raise click.ClickException(str(e))
    if scan is None:
        raise click.ClickException(f"No stored scan with id {scan_id}")
    click.echo(scan.model_dump_json(indent=2, exclude={"payload"}))


@main.command()
@click.argument("scan_id")
@click.pass_context
def delete(ctx: click.Context, scan_id: str):
    """Delete a stored scan and its anchors."""
    store: ScanStore = ctx.obj["store"]
    if store.delete(scan_id):
        click.echo(f"Deleted {scan_id}")
    else:
        click.echo(f"No stored scan with id {scan_id}")


@main.command("export")
@click.argument("scan_id")
@click.argument("destination", type=click.Path(dir_okay=False))
@click.pass_context
def export_scan(ctx: click.Context, scan_id: str, destination: str):
    """Export a stored scan for interchange."""
    store: ScanStore = ctx.obj["store"]
    try:
        path = store.export(scan_id, destination)
    except ScanNotFoundError as e:
        raise click.ClickException(str(e))
    click.echo(f"Exported {scan_id} to {path}")


@main.command("import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def import_scan(ctx: click.Context, source: str):
    """Import an exported scan into the store."""
    store: ScanStore = ctx.obj["store"]
    try:
        scan = store.import_scan(source)
    except StorageError as e:
        raise click.ClickException(str(e))
    click.echo(f"Imported {scan.name} as {scan.id}")


@main.command("export-ply")
@click.argument("scan_id")
@click.argument("destination", type=click.Path(dir_okay=False))
@click.pass_context
def export_ply(ctx: click.Context, scan_id: str, destination: str):
    """Write a stored scan's point cloud as PLY."""
    store: ScanStore = ctx.obj["store"]
    scan = store.load(scan_id)
    if scan is None:
        raise click.ClickException(f"No stored scan with id {scan_id}")
    write_ply(destination, decode_points(scan.payload))
    click.echo(f"Wrote {scan.name} to {destination}")


@main.command()
@click.argument("cloud_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--threshold", type=float, default=None, help="Similarity threshold.")
@click.option("--top", default=3, show_default=True, help="Number of candidates to show.")
@click.pass_context
def recognize(ctx: click.Context, cloud_file: str, threshold: float | None, top: int):
    """Recognise the room captured in a PLY or E57 point cloud."""
    session = _session(ctx, recognition_threshold=threshold)
    points = load_point_cloud(cloud_file)
    for scan, score in session.rank(points)[:top]:
        click.echo(f"{score:.3f}  {scan.name}  ({scan.id})")
    match = session.recognize(points)
    if match is None:
        click.echo("No room recognised.")
    else:
        click.echo(f"Recognised room: {match.name} ({match.id})")


if __name__ == "__main__":
    main()
