"""
recall: terminal study client.

A Rich terminal interface for spaced repetition study of flashcard decks
stored in a local SQLite database.

Commands:
- recall import   - Import a deck from a JSON file
- recall study    - Start a study session
- recall status   - Show what a deck offers today
- recall sync     - Push progress to the remote store
- recall stats    - Show learning statistics
- recall reset    - Clear progress (a backup is written first)
"""
from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from recall.config import Settings, get_settings
from recall.errors import DeckNotFoundError, GradeWriteError, RecallError
from recall.storage.state_store import StateStore
from recall.sync.remote import HttpDeckSource, HttpRemoteStore, RemoteStore, SqlRemoteStore
from recall.sync.sync_service import SyncReport, SyncService

from .deck_loader import DeckLoader
from .models import Card, Grade, SessionMode, utc_now
from .scheduler import FSRSScheduler
from .session import SessionCounters, StudySession, StudyStatus

# =============================================================================
# CLI Setup
# =============================================================================

app = typer.Typer(
    name="recall",
    help="recall: spaced repetition flashcards in the terminal",
    no_args_is_help=True,
)
console = Console()

STATUS_LABELS = {
    StudyStatus.NEVER_STUDIED: "[cyan]Start learning[/cyan]",
    StudyStatus.STUDY: "[green]Study[/green]",
    StudyStatus.CONTINUE: "[yellow]Continue[/yellow]",
    StudyStatus.STUDY_AGAIN: "[dim]Study again[/dim]",
}

GRADE_CHOICES = {"1": Grade.AGAIN, "a": Grade.AGAIN, "3": Grade.GOOD, "g": Grade.GOOD}


# =============================================================================
# Wiring
# =============================================================================


def _open_store(settings: Settings) -> StateStore:
    return StateStore(settings.db_path, backup_dir=settings.backup_dir)


def _deck_loader(settings: Settings, store: StateStore) -> DeckLoader:
    source = None
    if settings.deck_source_url:
        source = HttpDeckSource(settings.deck_source_url, timeout_seconds=settings.remote_timeout_seconds)
    return DeckLoader(
        store,
        source=source,
        retry_attempts=settings.store_retry_attempts,
        retry_backoff=settings.store_retry_backoff_seconds,
    )


def _remote_store(settings: Settings) -> RemoteStore | None:
    if settings.remote_url:
        return HttpRemoteStore(
            settings.remote_url,
            api_key=settings.remote_api_key,
            timeout_seconds=settings.remote_timeout_seconds,
        )
    if settings.remote_database_url:
        return SqlRemoteStore(settings.remote_database_url)
    return None


def _session(settings: Settings, store: StateStore, new_card_cap: int | None = None) -> StudySession:
    return StudySession(
        store,
        settings.user_id,
        scheduler=FSRSScheduler.from_settings(settings),
        new_card_cap=settings.new_card_cap if new_card_cap is None else new_card_cap,
        retry_attempts=settings.store_retry_attempts,
        retry_backoff=settings.store_retry_backoff_seconds,
    )


# =============================================================================
# Display Helpers
# =============================================================================


def display_card_front(card: Card, position: int, total: int, mode: SessionMode) -> None:
    """Display the front of a card."""
    header = f"Card {position}/{total}"
    if mode == SessionMode.EXTRA:
        header += "  |  [magenta]extra study[/magenta]"
    content = card.front
    if card.front_image:
        content += f"\n\n[dim]Image: {card.front_image}[/dim]"
    console.print(Panel(content, title=header, title_align="left", border_style="cyan", padding=(1, 2)))


def display_card_back(card: Card) -> None:
    """Display the back of a card."""
    content = card.back
    if card.back_image:
        content += f"\n\n[dim]Image: {card.back_image}[/dim]"
    if card.audio:
        content += f"\n[dim]Audio: {card.audio}[/dim]"
    console.print(Panel(content, border_style="green", padding=(1, 2)))


def _display_session_summary(counters: SessionCounters, mode: SessionMode) -> None:
    """Display end-of-session summary."""
    title = "Extra Study Complete!" if mode == SessionMode.EXTRA else "Daily Reviews Complete!"
    console.print(Panel(
        f"[bold]{title}[/bold]\n\n"
        f"Cards graded: {counters.graded}\n"
        f"Accuracy: {counters.accuracy * 100:.0f}%\n"
        f"New today: {counters.new_cards}  |  Reviews today: {counters.reviews}",
        title="Summary",
        border_style="green",
    ))


def _display_sync_report(report: SyncReport) -> None:
    """Display the outcome of a deck sync."""
    console.print(
        f"[green]Synced {report.deck_id}:[/green] {report.inserted} inserted, "
        f"{report.updated} updated, {report.unchanged} unchanged"
    )
    if report.failed:
        note = " (last sync not recorded)" if report.synced_at is None else ""
        console.print(f"[yellow]{report.failed} records failed{note}:[/yellow]")
        for card_id, error in report.to_dict()["errors"].items():
            console.print(f"  [dim]{card_id}: {error}[/dim]")


def _ask_grade() -> Grade:
    choice = Prompt.ask(
        "Grade ([red]1/a[/red] again, [green]3/g[/green] good)",
        choices=list(GRADE_CHOICES),
        default="g",
        show_choices=False,
    )
    return GRADE_CHOICES[choice.lower()]


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/red]")
    raise typer.Exit(1)


# =============================================================================
# Commands
# =============================================================================


@app.command("import")
def import_deck(
    file: Path = typer.Argument(..., help="Deck JSON file ({'deck': {...}, 'cards': [...]})"),
) -> None:
    """Import a deck from a JSON file into the local store."""
    settings = get_settings()

    async def run() -> None:
        async with _open_store(settings) as store:
            loaded = await _deck_loader(settings, store).import_file(file)
        console.print(f"[green]Imported '{loaded.deck.name}' ({loaded.card_count} cards) as {loaded.deck.id}[/green]")

    try:
        asyncio.run(run())
    except RecallError as e:
        _fail(str(e))


@app.command()
def study(
    deck_id: str = typer.Argument(..., help="Deck to study"),
    extra: bool = typer.Option(False, "--extra", "-x", help="Replay the cards graded today"),
    new_limit: Optional[int] = typer.Option(
        None,
        "--new", "-n",
        help="Maximum new cards today (defaults to RECALL_NEW_CARD_CAP)",
    ),
) -> None:
    """
    Start an interactive study session.

    Due reviews and up to the daily limit of new cards are shown in deck
    order. An interrupted session continues where it stopped.
    """
    settings = get_settings()
    mode = SessionMode.EXTRA if extra else SessionMode.NORMAL

    async def run() -> None:
        async with _open_store(settings) as store:
            loader = _deck_loader(settings, store)
            try:
                loaded = await loader.load(deck_id)
            finally:
                if loader.source is not None:
                    await loader.source.close()

            session = _session(settings, store, new_limit)
            view = await session.start(deck_id, mode)
            if view.error is not None:
                _fail(f"Failed to load deck: {view.error}")

            console.print(f"\n[bold cyan]{loaded.deck.name}[/bold cyan]")
            if view.is_complete:
                if mode == SessionMode.EXTRA:
                    console.print("[yellow]Nothing studied today yet.[/yellow]")
                else:
                    console.print("[green]Nothing due for review![/green] All caught up.")
                    console.print("Run with --extra to review today's cards again.")
                return

            try:
                while not session.is_complete:
                    view = session.view()
                    card = view.current_card
                    console.print()
                    display_card_front(card, view.position, view.total, mode)
                    Prompt.ask("[dim]Press Enter to reveal[/dim]", default="", show_default=False)
                    session.show_answer()
                    display_card_back(card)

                    grade = _ask_grade()
                    try:
                        await session.grade(grade)
                    except GradeWriteError as e:
                        console.print(f"[red]{e}[/red] [dim]Grade the card again to retry.[/dim]")
            except (KeyboardInterrupt, EOFError):
                console.print("\n[yellow]Session interrupted. Progress is saved; run study again to continue.[/yellow]")
                return

            _display_session_summary(session.counters, mode)

    try:
        asyncio.run(run())
    except DeckNotFoundError as e:
        _fail(str(e))
    except RecallError as e:
        _fail(f"Study failed: {e}")


@app.command()
def status(
    deck_id: str = typer.Argument(..., help="Deck to inspect"),
) -> None:
    """Show whether a deck should be started, continued or studied again."""
    settings = get_settings()

    async def run() -> None:
        async with _open_store(settings) as store:
            deck = await store.get_deck(deck_id)
            if deck is None:
                _fail(f"Deck not found: {deck_id}")
            session = _session(settings, store)
            deck_status = await session.status(deck_id)
            now = utc_now()
            ledger = await store.get_ledger(settings.user_id, deck_id, now.date())
            due = (await store.get_due_counts(settings.user_id, now)).get(deck_id, 0)
            last_sync = await store.get_last_sync(deck_id)

        table = Table(show_header=False, box=None)
        table.add_column("Metric", style="dim")
        table.add_column("Value", style="bold")
        table.add_row("Deck", deck.name)
        table.add_row("Status", STATUS_LABELS[deck_status])
        table.add_row("Graded today", str(len(ledger.graded_card_ids)))
        table.add_row("New today", f"{ledger.new_cards_graded}/{settings.new_card_cap}")
        table.add_row("Reviews due", str(due))
        table.add_row("Last sync", last_sync.strftime("%Y-%m-%d %H:%M") if last_sync else "Never")
        console.print(table)

    try:
        asyncio.run(run())
    except RecallError as e:
        _fail(str(e))


@app.command()
def sync(
    deck_id: str = typer.Argument(..., help="Deck whose progress is pushed"),
) -> None:
    """Push local progress to the configured remote store."""
    settings = get_settings()
    remote = _remote_store(settings)
    if remote is None:
        _fail("No remote configured. Set RECALL_REMOTE_URL or RECALL_REMOTE_DATABASE_URL.")

    async def run():
        async with _open_store(settings) as store:
            try:
                return await SyncService(
                    store,
                    remote,
                    settings.user_id,
                    retry_attempts=settings.store_retry_attempts,
                    retry_backoff=settings.store_retry_backoff_seconds,
                ).sync(deck_id)
            finally:
                await remote.close()

    try:
        report = asyncio.run(run())
    except RecallError as e:
        _fail(f"Sync failed: {e}")

    if report.offline:
        console.print("[yellow]Remote unreachable; progress kept locally. Try again later.[/yellow]")
        return

    _display_sync_report(report)


@app.command()
def stats() -> None:
    """Show learning statistics and progress."""
    settings = get_settings()

    async def run() -> None:
        async with _open_store(settings) as store:
            now = utc_now()
            decks = await store.get_all_decks()
            due_counts = await store.get_due_counts(settings.user_id, now)
            streak = await store.get_streak(settings.user_id, now.date())
            session = _session(settings, store)
            rows = []
            for deck in decks:
                cards = await store.get_cards_for_deck(deck.id)
                deck_status = await session.status(deck.id)
                rows.append((deck, len(cards), due_counts.get(deck.id, 0), deck_status))

        console.print("\n[bold cyan]Learning Statistics[/bold cyan]")
        console.print("=" * 40)
        console.print(f"Study streak: [bold]{streak}[/bold] day{'s' if streak != 1 else ''}\n")

        if not rows:
            console.print("[dim]No decks yet. Import one with 'recall import FILE'.[/dim]")
            return

        table = Table()
        table.add_column("Deck")
        table.add_column("ID", style="dim")
        table.add_column("Cards", justify="right")
        table.add_column("Due", justify="right")
        table.add_column("Status")
        for deck, card_count, due, deck_status in rows:
            table.add_row(deck.name, deck.id, str(card_count), str(due), STATUS_LABELS[deck_status])
        console.print(table)

    try:
        asyncio.run(run())
    except RecallError as e:
        _fail(str(e))


@app.command()
def reset(
    deck_id: Optional[str] = typer.Argument(None, help="Reset only this deck"),
    confirm: bool = typer.Option(
        False,
        "--yes", "-y",
        help="Skip confirmation",
    ),
) -> None:
    """Clear review progress for a fresh start (a JSON backup is written first)."""
    settings = get_settings()
    if deck_id:
        msg = f"Reset progress for deck {deck_id}?"
    else:
        msg = "Reset ALL progress? A backup is kept, but sessions start over."

    if not confirm and not Confirm.ask(msg, default=False):
        raise typer.Exit(0)

    async def run():
        async with _open_store(settings) as store:
            return await store.clear_progress(settings.user_id, deck_id)

    try:
        count, backup = asyncio.run(run())
    except RecallError as e:
        _fail(f"Reset failed: {e}")

    if backup is None:
        console.print("[dim]Nothing to reset.[/dim]")
        return
    console.print(f"[green]Reset {count} cards.[/green] Backup saved: {backup}")


# =============================================================================
# Entry Point
# =============================================================================


def configure_logging(settings: Settings) -> None:
    """Send log output to stderr (and optionally a rotating file)."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level,
        format="<level>{message}</level>",
    )
    if settings.log_file:
        logger.add(settings.log_file, level="DEBUG", rotation="1 MB", retention=5)


def main() -> None:
    """CLI entry point."""
    configure_logging(get_settings())
    app()


if __name__ == "__main__":
    main()
