"""Command line entry point for the campaign tracker view-count sync."""

from __future__ import annotations

import json
import signal
import threading
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from campaign_tracker.config import load_settings
from campaign_tracker.dependencies import AppContainer, build_container
from campaign_tracker.logging_config import configure_application_logging
from campaign_tracker.services.batching import chunk_video_ids, dedupe_video_ids
from campaign_tracker.services.video_ids import extract_video_id
from campaign_tracker.services.view_sync_service import JobResult, SyncAlreadyRunningError
from campaign_tracker.services.youtube_provider import YouTubeServiceError

console = Console()


def _container(ctx: click.Context, *, validate_api_key: bool = True) -> AppContainer:
    container = ctx.obj.get("container") if ctx.obj else None
    if container is None:
        try:
            settings = load_settings(validate_api_key=validate_api_key)
        except ValueError as exc:
            raise click.ClickException(str(exc)) from exc
        container = build_container(settings)
        ctx.ensure_object(dict)["container"] = container
    return container


def _parse_video_references(videos: tuple[str, ...]) -> list[str]:
    video_ids: list[str] = []
    for raw_value in videos:
        video_id = extract_video_id(raw_value)
        if video_id is None:
            raise click.BadParameter(f"not a YouTube video id or URL: {raw_value}")
        video_ids.append(video_id)
    return video_ids


def _print_job_result(result: JobResult, *, as_json: bool) -> None:
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        return

    status = "[green]succeeded[/green]" if result.success else "[red]failed[/red]"
    console.print(f"Sync {status}: {result.updated_count} updated, {len(result.errors)} errors")
    for error in result.errors:
        console.print(f"  - {error}", markup=False)


def _exit_for(result: JobResult) -> None:
    if not result.success:
        raise SystemExit(1)


@click.group()
@click.version_option(version="0.1.0")
@click.pass_context
def main(ctx: click.Context) -> None:
    """Campaign tracker - keeps YouTube view counts for campaign links fresh."""
    ctx.ensure_object(dict)


@main.command()
@click.pass_context
def serve(ctx: click.Context) -> None:
    """Run the scheduled view-count sync until interrupted."""
    container = _container(ctx)
    log_file = configure_application_logging(container.settings)
    stop_event = threading.Event()

    def _request_stop(signum: int, _frame: Any) -> None:
        _ = signum
        stop_event.set()

    signal.signal(signal.SIGTERM, _request_stop)
    container.scheduler.start()
    status = container.scheduler.get_status()
    console.print(
        f"[bold]View sync scheduler[/bold] enabled={status.enabled} "
        f"schedule='{status.schedule}' timezone={status.timezone}"
    )
    console.print(f"Logging to {log_file}. Press Ctrl-C to stop.")
    try:
        while not stop_event.wait(timeout=1.0):
            pass
    except KeyboardInterrupt:
        pass
    finally:
        container.scheduler.stop()
        console.print("Scheduler stopped.")


@main.command(name="sync-all")
@click.option("--json", "as_json", is_flag=True, help="Print the job result as JSON.")
@click.pass_context
def sync_all(ctx: click.Context, as_json: bool) -> None:
    """Refresh view counts for every video referenced by a campaign link."""
    container = _container(ctx)
    try:
        result = container.scheduler.trigger_full_sync()
    except SyncAlreadyRunningError as exc:
        raise click.ClickException(str(exc)) from exc
    _print_job_result(result, as_json=as_json)
    _exit_for(result)


@main.command()
@click.argument("videos", nargs=-1, required=True)
@click.option("--json", "as_json", is_flag=True, help="Print the job result as JSON.")
@click.pass_context
def sync(ctx: click.Context, videos: tuple[str, ...], as_json: bool) -> None:
    """Refresh view counts for the given video ids or YouTube URLs."""
    video_ids = _parse_video_references(videos)
    container = _container(ctx)
    try:
        result = container.scheduler.trigger_specific_sync(video_ids)
    except SyncAlreadyRunningError as exc:
        raise click.ClickException(str(exc)) from exc
    _print_job_result(result, as_json=as_json)
    _exit_for(result)


@main.command()
@click.argument("videos", nargs=-1, required=True)
@click.option("--json", "as_json", is_flag=True, help="Print the metadata as JSON.")
@click.pass_context
def metadata(ctx: click.Context, videos: tuple[str, ...], as_json: bool) -> None:
    """Look up title, channel and view count for the given videos."""
    video_ids = dedupe_video_ids(_parse_video_references(videos))
    container = _container(ctx)
    try:
        found = [
            video
            for chunk in chunk_video_ids(video_ids, container.client.max_ids_per_request)
            for video in container.client.bulk_fetch_metadata(chunk)
        ]
    except YouTubeServiceError as exc:
        raise click.ClickException(str(exc)) from exc

    if as_json:
        payload = {
            "requested": len(video_ids),
            "count": len(found),
            "videos": [
                {
                    "video_id": video.video_id,
                    "title": video.title,
                    "channel_title": video.channel_title,
                    "view_count": video.view_count,
                    "thumbnail_url": video.thumbnail_url,
                    "published_at": (
                        video.published_at.isoformat() if video.published_at else None
                    ),
                }
                for video in found
            ],
        }
        click.echo(json.dumps(payload, indent=2))
        return

    table = Table(title=f"Videos ({len(found)}/{len(video_ids)} found)")
    table.add_column("Video")
    table.add_column("Title")
    table.add_column("Channel")
    table.add_column("Views", justify="right")
    for video in found:
        table.add_row(
            video.video_id,
            video.title,
            video.channel_title or "-",
            f"{video.view_count:,}",
        )
    console.print(table)


@main.command()
@click.pass_context
def cleanup(ctx: click.Context) -> None:
    """Delete cached view counts no campaign link references anymore."""
    container = _container(ctx, validate_api_key=False)
    result = container.scheduler.trigger_cleanup()
    console.print(f"Removed {result.deleted_count} unused view count rows.")


@main.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show scheduler configuration and whether a sync is running."""
    container = _container(ctx, validate_api_key=False)
    scheduler_status = container.scheduler.get_status()
    batch_config = container.runner.batch_config

    table = Table(title="View sync")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("enabled", str(scheduler_status.enabled))
    table.add_row("running", str(scheduler_status.running))
    table.add_row("schedule", scheduler_status.schedule)
    table.add_row("timezone", scheduler_status.timezone)
    table.add_row("max videos per batch", str(batch_config.max_per_batch))
    table.add_row("batch delay (ms)", str(batch_config.inter_batch_delay_ms))
    console.print(table)


@main.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Check that the video provider answers a known video lookup."""
    container = _container(ctx)
    if container.client.health_check():
        console.print("[green]YouTube provider healthy[/green]")
        return
    console.print("[red]YouTube provider unreachable[/red]")
    raise SystemExit(1)


@main.command()
@click.pass_context
def quota(ctx: click.Context) -> None:
    """Show request window and daily quota usage."""
    container = _container(ctx, validate_api_key=False)
    info = container.client.quota_info()

    table = Table(title="YouTube quota")
    table.add_column("Metric")
    table.add_column("Value")
    table.add_row("window requests", f"{info.request_count}/{info.window_limit}")
    table.add_row("window length (s)", str(info.window_seconds))
    table.add_row("window resets in (s)", str(info.window_resets_in_seconds))
    table.add_row("calls today", f"{info.calls_today}/{info.daily_limit}")
    table.add_row("daily warning", str(info.daily_warning))
    console.print(table)


if __name__ == "__main__":
    main()
