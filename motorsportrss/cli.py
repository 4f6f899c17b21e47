"""CLI commands for MotorsportRSS."""

import asyncio
from contextlib import contextmanager
from typing import Iterator, Optional

import click

from .config import EngineConfig, setup_logging
from .controllers import (
    FeedNotFoundError,
    ItemNotFoundError,
    get_feed,
    get_items,
    mark_all_items_read,
    mark_item_read,
    remove_feed,
)
from .fetcher import EventKind, FeedEvent, FetchController, FetchOutcome
from .registry import FeedRegistry


@contextmanager
def _engine() -> Iterator[tuple[FeedRegistry, FetchController]]:
    config = EngineConfig.from_env()
    controller = FetchController(config)
    registry = FeedRegistry(controller.settings)
    try:
        yield registry, controller
    finally:
        controller.close()


def _fail(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"))
    raise SystemExit(1)


@click.group()
@click.version_option(package_name="motorsportrss")
@click.option("--log-level", help="Log level (DEBUG, INFO, WARNING, ERROR)")
def cli(log_level: Optional[str]):
    """MotorsportRSS - Follow motorsport news feeds."""
    setup_logging(log_level)


@cli.command()
@click.argument("name")
@click.argument("url")
@click.option("--category", "-c", default="", help="Category of the feed")
def add(name: str, url: str, category: str):
    """Add or replace a feed subscription."""
    with _engine() as (registry, _):
        replaced = name in registry
        registry.add_feed(name, url, category)
        verb = "Updated" if replaced else "Added"
        click.echo(click.style(f"{verb} feed '{name}'", fg="green"))


@cli.command()
@click.argument("name")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def remove(name: str, yes: bool):
    """Remove a feed subscription."""
    with _engine() as (registry, _):
        if name not in registry:
            _fail(f"Feed '{name}' not found")

        if not yes:
            click.confirm(f"Remove feed '{name}'?", abort=True)

        remove_feed(registry, name)
        click.echo(click.style(f"Removed feed '{name}'", fg="green"))


@cli.command("list-feeds")
def list_feeds():
    """List all registered feeds."""
    with _engine() as (registry, _):
        feeds = registry.list_feeds()
        if not feeds:
            click.echo("No feeds registered yet. Use 'motorsportrss add' to add one.")
            return

        click.echo(click.style(f"Registered feeds ({len(feeds)}):", fg="cyan", bold=True))
        click.echo()

        for feed in feeds:
            click.echo(click.style(f"  {feed.name}", fg="white", bold=True))
            click.echo(f"    URL: {feed.url}")
            if feed.category:
                click.echo(f"    Category: {feed.category}")
            click.echo()


@cli.command()
def categories():
    """List feed categories."""
    with _engine() as (registry, _):
        for category in registry.categories():
            click.echo(f"  {category}")


@cli.command()
@click.argument("name", required=False)
def fetch(name: Optional[str]):
    """Fetch feeds and report new items.

    If NAME is provided, only that feed is fetched.
    Otherwise, all registered feeds are fetched.
    """
    with _engine() as (registry, controller):
        if name:
            try:
                feeds = [get_feed(registry, name)]
            except FeedNotFoundError as e:
                _fail(str(e))
        else:
            feeds = registry.list_feeds()
            if not feeds:
                click.echo("No feeds registered yet. Use 'motorsportrss add' to add one.")
                return

        names = {feed.url: feed.name for feed in feeds}
        new_counts: dict[str, int] = {}

        def on_event(event: FeedEvent) -> None:
            if event.kind is EventKind.NEW_ITEMS_AVAILABLE:
                new_counts[event.url] = new_counts.get(event.url, 0) + event.count
            elif event.kind is EventKind.ERROR:
                label = names.get(event.url, event.url)
                click.echo(click.style(f"  {label}: {event.message}", fg="red"))

        controller.subscribe(on_event)
        click.echo(click.style(f"Fetching {len(feeds)} feed(s)...", fg="cyan"))
        click.echo()

        outcomes = asyncio.run(controller.fetch_all(feeds))

        for url, outcome in outcomes.items():
            _print_outcome(names[url], outcome, new_counts.get(url, 0))

        total_new = sum(new_counts.values())
        click.echo()
        if total_new > 0:
            click.echo(click.style(f"Found {total_new} new item(s) total!", fg="green", bold=True))
        else:
            click.echo(click.style("No new items found.", fg="yellow"))


def _print_outcome(name: str, outcome: FetchOutcome, new_count: int):
    """Print the result of fetching one feed."""
    click.echo(click.style(f"  {name}", fg="white", bold=True))
    if outcome is FetchOutcome.UPDATED:
        color = "green" if new_count > 0 else "white"
        click.echo("    Updated | " + click.style(f"New: {new_count}", fg=color))
    elif outcome is FetchOutcome.NOT_MODIFIED:
        click.echo("    Not modified since last fetch")
    else:
        click.echo(click.style("    Failed, showing cached items if available", fg="yellow"))


@cli.command()
@click.argument("name")
@click.option("--all", "-a", "show_all", is_flag=True, help="Show all items (including read)")
@click.option("--category", "-c", help="Filter by item category")
@click.option("--search", "-s", "search_text", help="Filter by text in title or description")
def items(name: str, show_all: bool, category: Optional[str], search_text: Optional[str]):
    """List cached items of a feed.

    By default, shows only unread items.
    """
    with _engine() as (registry, controller):
        try:
            items_list = get_items(controller, registry, name, show_all, category, search_text)
        except FeedNotFoundError as e:
            _fail(str(e))

        if not items_list:
            if show_all:
                click.echo("No items found.")
            else:
                click.echo(click.style("No unread items!", fg="green"))
            return

        label = "All items" if show_all else "Unread items"
        click.echo(click.style(f"{label} ({len(items_list)}):", fg="cyan", bold=True))
        click.echo()

        for item in items_list:
            status = click.style("[read]", fg="bright_black") if item.is_read else click.style("[new]", fg="yellow")
            click.echo(f"  {status} {item.title}")
            click.echo(f"       GUID: {item.guid}")
            click.echo(f"       URL: {item.link}")
            if item.pub_date:
                click.echo(f"       Published: {item.pub_date}")
            if item.category:
                click.echo(f"       Category: {item.category}")
            click.echo()


@cli.command()
@click.argument("name")
@click.argument("guid")
def read(name: str, guid: str):
    """Mark an item as read."""
    with _engine() as (registry, controller):
        try:
            item = mark_item_read(controller, registry, name, guid)
        except (FeedNotFoundError, ItemNotFoundError) as e:
            _fail(str(e))
        click.echo(click.style(f"Marked '{item.title}' as read", fg="green"))


@cli.command("read-all")
@click.argument("name")
def read_all(name: str):
    """Mark all items of a feed as read."""
    with _engine() as (registry, controller):
        try:
            count = mark_all_items_read(controller, registry, name)
        except FeedNotFoundError as e:
            _fail(str(e))
        click.echo(click.style(f"Marked {count} item(s) as read", fg="green"))


@cli.command("clear-cache")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt")
def clear_cache(yes: bool):
    """Delete cached items for every feed."""
    with _engine() as (_, controller):
        if not yes:
            click.confirm("Delete cached items for all feeds?", abort=True)
        controller.clear_cache()
        click.echo(click.style("Cache cleared successfully", fg="green"))


if __name__ == "__main__":
    cli()
