"""CLI for ReceiptSplit using Typer."""

import json
import logging
import sys
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .currency import currency_symbol, round_currency
from .db import Database
from .ledger import display_total, preference_warnings
from .models import GroupSnapshot, Settlement, Transaction, UserDocument
from .service import LedgerService
from .ui import confirm, select_participant_interactive, toggle_items_interactive

app = typer.Typer(
    name="receipt-split",
    help="Split shared receipts, settle balances and review collaborator changes",
)

console = Console()

UserOption = typer.Option(..., "--user", "-u", help="Owner of the ledger")
GroupOption = typer.Option(..., "--group", "-g", help="Group id")
VerboseOption = typer.Option(False, "--verbose", "-v", help="Verbose output")


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def _fail(e: Exception, verbose: bool):
    console.print(f"\n[bold red]Error:[/bold red] {e}")
    if verbose:
        raise e
    sys.exit(1)


def format_money(amount: float, symbol: str = "€", use_color: bool = True) -> str:
    """
    Format money in accounting style with alignment.

    Negative amounts use parentheses: (€85.02)
    Positive amounts have spaces:      €85.02
    The spaces ensure decimal points align in tables.
    """
    abs_amount = round_currency(abs(amount))
    if amount < 0 and abs_amount:
        if use_color:
            formatted = f"({symbol}[red]{abs_amount:,.2f}[/red])"
        else:
            formatted = f"({symbol}{abs_amount:,.2f})"
    else:
        if use_color:
            formatted = f" [green]{symbol}{abs_amount:,.2f}[/green] "
        else:
            formatted = f" {symbol}{abs_amount:,.2f} "
    return formatted


def display_settlement(settlement: Settlement, symbol: str):
    """Display balances, transfers and the pairwise debt matrix."""
    table = Table(title="Balances", show_header=True, header_style="bold magenta")
    table.add_column("Person", style="cyan")
    table.add_column("Consumed", justify="right", width=14)
    table.add_column("Net", justify="right", width=14)

    for idx, name in enumerate(settlement.names):
        table.add_row(
            name,
            format_money(settlement.consumption[idx], symbol, use_color=False),
            format_money(settlement.net_balance[idx], symbol),
        )
    console.print(table)

    console.print("\n[bold]Suggested transfers:[/bold]")
    if not settlement.transfers:
        console.print("  [green]✓ Everyone is settled up[/green]")
    for edge in settlement.transfers:
        console.print(
            f"  {settlement.names[edge.from_participant]} → "
            f"{settlement.names[edge.to_participant]}: "
            f"[bold]{symbol}{edge.amount:,.2f}[/bold]"
        )

    matrix = Table(
        title="Who owes whom (row pays column)",
        show_header=True,
        header_style="bold magenta",
    )
    matrix.add_column("", style="cyan")
    for name in settlement.names:
        matrix.add_column(name, justify="right")
    for idx, row in enumerate(settlement.debt_matrix):
        matrix.add_row(
            settlement.names[idx],
            *[
                f"{round_currency(amount):,.2f}" if amount else "[dim]—[/dim]"
                for amount in row
            ],
        )
    console.print()
    console.print(matrix)


def display_transaction(
    transaction: Transaction,
    document: UserDocument,
    group_id: str,
    flags: set[tuple[int, int]] | None = None,
):
    """Display a transaction's items and assignment grid."""
    group = document.groups[group_id]
    flags = flags or set()
    warnings = preference_warnings(transaction, group.participants)
    symbol = currency_symbol(transaction.currency_code)

    payer = (
        group.participants[transaction.payer_index].name
        if transaction.payer_index is not None
        and transaction.payer_index < len(group.participants)
        else "nobody"
    )
    rate_note = f"1 {document.settings.base_currency} = "
    rate_note += f"{transaction.exchange_rate:g} {transaction.currency_code}"
    if transaction.rate_is_manual_override:
        rate_note += " (manual"
        if transaction.manual_override_reason:
            rate_note += f": {transaction.manual_override_reason}"
        rate_note += ")"

    console.print(f"\n[bold]{transaction.name or 'Untitled'}[/bold] ({transaction.id})")
    console.print(f"  Paid by: {payer}")
    console.print(f"  Rate: {rate_note}")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("#", style="dim", width=4)
    table.add_column("Item", style="cyan")
    table.add_column("Qty", justify="right", width=4)
    table.add_column("Total", justify="right", width=12)
    for column in transaction.extra_columns:
        table.add_column(column.name, style="dim")
    for participant in group.participants:
        header = participant.name
        if participant.excluded:
            header = f"[dim]{header}[/dim]"
        table.add_column(header, justify="center")

    for item_idx, item in enumerate(transaction.items):
        cells = []
        for person_idx in range(len(group.participants)):
            mark = "✓" if item.is_assigned(person_idx) else "·"
            if (item_idx, person_idx) in flags:
                mark = f"[yellow]{mark}*[/yellow]"
            if (item_idx, person_idx) in warnings and item.is_assigned(person_idx):
                mark = f"⚠️ {mark}"
            cells.append(mark)
        total = f"{item.total:,.2f}" if item.total is not None else ""
        table.add_row(
            str(item_idx + 1),
            item.name,
            str(item.quantity),
            total,
            *[item.extras.get(column.id, "") for column in transaction.extra_columns],
            *cells,
        )
    console.print(table)
    console.print(
        f"  Total: {format_money(display_total(transaction), symbol, use_color=False)}"
    )
    if flags:
        console.print("  [yellow]* proposed by a collaborator[/yellow]")
    for (item_idx, person_idx), prefs in sorted(warnings.items()):
        if transaction.items[item_idx].is_assigned(person_idx):
            console.print(
                f"  [yellow]⚠️  {transaction.items[item_idx].name} may not suit "
                f"{group.participants[person_idx].name} "
                f"({', '.join(p.value for p in prefs)})[/yellow]"
            )


@app.command("import")
def import_(
    path: Path = typer.Argument(..., exists=True, help="Exported ledger (JSON)"),
    user: str | None = typer.Option(
        None, "--user", "-u", help="Import only this user from a multi-user export"
    ),
    verbose: bool = VerboseOption,
):
    """
    Import a ledger from a JSON export.

    Accepts a single user's ledger, or a browser storage export of the form
    {"currentUser": ..., "users": {name: ledger}} from older versions.
    """
    setup_logging(verbose)

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(raw.get("users"), dict):
            ledgers = raw["users"]
        elif user:
            ledgers = {user: raw}
        else:
            raise ValueError("Single-user export needs --user")

        if user:
            if user not in ledgers:
                raise ValueError(f"User '{user}' not found in {path}")
            ledgers = {user: ledgers[user]}

        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        for username, body in ledgers.items():
            document = service.import_document(username, body)
            console.print(
                f"[green]✓ Imported {username}[/green] "
                f"({len(document.groups)} groups)"
            )

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command("import-text")
def import_text(
    path: Path = typer.Argument(..., exists=True, help="Receipt text, one line each"),
    user: str = UserOption,
    group: str = GroupOption,
    name: str = typer.Option(..., "--name", "-n", help="Transaction name"),
    payer: int | None = typer.Option(
        None, "--payer", help="Payer's participant number (1-based)"
    ),
    currency: str | None = typer.Option(
        None, "--currency", "-c", help="Receipt currency code"
    ),
    verbose: bool = VerboseOption,
):
    """Create a transaction from receipt text (e.g. OCR output)."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        transaction = service.import_receipt_text(
            user,
            group,
            name,
            path.read_text(encoding="utf-8"),
            payer_index=payer - 1 if payer is not None else None,
            currency_code=currency,
        )
        console.print(
            f"[green]✓ Added '{transaction.name}' with "
            f"{len(transaction.items)} items[/green] ({transaction.id})"
        )

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def settle(
    user: str = UserOption,
    group: str = GroupOption,
    verbose: bool = VerboseOption,
):
    """Show balances and the transfers that settle a group."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        document = service.load_user(user)
        settlement = service.compute_settlement(user, group)
        console.print(f"\n[bold]{document.groups[group].name or group}[/bold]\n")
        display_settlement(
            settlement, currency_symbol(document.settings.base_currency)
        )

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def show(
    user: str = UserOption,
    group: str = GroupOption,
    transaction: str | None = typer.Option(
        None, "--transaction", "-t", help="Show only this transaction"
    ),
    all_: bool = typer.Option(False, "--all", help="Include hidden transactions"),
    verbose: bool = VerboseOption,
):
    """Show a group's transactions with pending proposals highlighted."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        document = service.load_user(user)
        selected = service.get_group(document, group)
        if transaction:
            transactions = [service.get_transaction(selected, transaction)]
        else:
            transactions = [t for t in selected.transactions if all_ or not t.hidden]

        if not transactions:
            console.print("[yellow]No transactions in this group.[/yellow]")
            return

        for txn in transactions:
            flags = service.pending_changes(user, group, txn.id)
            display_transaction(txn, document, group, flags)

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def currency(
    code: str = typer.Argument(..., help="New currency code, e.g. USD"),
    user: str = UserOption,
    group: str = GroupOption,
    transaction: str = typer.Option(..., "--transaction", "-t"),
    rescale: bool = typer.Option(
        True,
        "--rescale/--keep-values",
        help="Convert existing prices, or keep the numbers as typed",
    ),
    verbose: bool = VerboseOption,
):
    """Change a transaction's currency using the current exchange rate."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        txn = service.change_currency(user, group, transaction, code, rescale)
        console.print(
            f"[green]✓ '{txn.name}' now in {txn.currency_code}[/green] "
            f"(rate {txn.exchange_rate:g})"
        )

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command("override-rate")
def override_rate(
    rate: float = typer.Argument(..., help="Display units per base unit"),
    user: str = UserOption,
    group: str = GroupOption,
    transaction: str = typer.Option(..., "--transaction", "-t"),
    reason: str | None = typer.Option(None, "--reason", "-r"),
    verbose: bool = VerboseOption,
):
    """Set a manual exchange rate for a transaction."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        txn = service.override_rate(user, group, transaction, rate, reason)
        console.print(
            f"[green]✓ Rate for '{txn.name}' set to {txn.exchange_rate:g} "
            f"{txn.currency_code}[/green]"
        )

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def assign(
    item: int = typer.Argument(..., help="Item number as shown by 'show'"),
    person: int = typer.Argument(..., help="Participant number, 1 for the first"),
    user: str = UserOption,
    group: str = GroupOption,
    transaction: str = typer.Option(..., "--transaction", "-t"),
    remove: bool = typer.Option(False, "--remove", help="Uncheck instead"),
    verbose: bool = VerboseOption,
):
    """Check (or uncheck) who consumed an item."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        checked = not remove
        line = service.assign(user, group, transaction, item - 1, person - 1, checked)
        state = "checked" if checked else "unchecked"
        console.print(f"[green]✓ #{person} {state} for '{line.name}'[/green]")

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command("add-item")
def add_item(
    name: str = typer.Argument(..., help="Item name"),
    user: str = UserOption,
    group: str = GroupOption,
    transaction: str = typer.Option(..., "--transaction", "-t"),
    quantity: int = typer.Option(1, "--quantity", "-q", min=0),
    price: float | None = typer.Option(
        None, "--price", "-p", help="Unit price in the transaction's currency"
    ),
    verbose: bool = VerboseOption,
):
    """Add a line item to a transaction."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        line = service.add_item(user, group, transaction, name, quantity, price)
        console.print(f"[green]✓ Added '{line.name}'[/green]")

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command("edit-item")
def edit_item(
    item: int = typer.Argument(..., help="Item number as shown by 'show'"),
    user: str = UserOption,
    group: str = GroupOption,
    transaction: str = typer.Option(..., "--transaction", "-t"),
    quantity: int | None = typer.Option(None, "--quantity", "-q"),
    price: float | None = typer.Option(None, "--price", "-p"),
    verbose: bool = VerboseOption,
):
    """Change an item's quantity or unit price."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        line = service.edit_item(user, group, transaction, item - 1, quantity, price)
        console.print(
            f"[green]✓ '{line.name}' now {line.quantity} × "
            f"{line.unit_price if line.unit_price is not None else '—'}[/green]"
        )

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command("remove-item")
def remove_item(
    item: int = typer.Argument(..., help="Item number as shown by 'show'"),
    user: str = UserOption,
    group: str = GroupOption,
    transaction: str = typer.Option(..., "--transaction", "-t"),
    verbose: bool = VerboseOption,
):
    """Delete a line item from a transaction."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        line = service.remove_item(user, group, transaction, item - 1)
        console.print(f"[green]✓ Removed '{line.name}'[/green]")

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def share(
    user: str = UserOption,
    group: str = GroupOption,
    transaction: str | None = typer.Option(
        None, "--transaction", "-t", help="Share one transaction instead of the group"
    ),
    verbose: bool = VerboseOption,
):
    """Create a share link for collaborators."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        url = service.create_share_url(user, group, transaction)
        console.print("\n[bold]Share this link:[/bold]")
        console.print(f"  [cyan]{url}[/cyan]\n")

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def review(
    link: str = typer.Argument(..., help="Share link or token"),
    verbose: bool = VerboseOption,
):
    """
    Review a shared receipt as a collaborator.

    Pick who you are, tick what you had, and submit. The owner sees your
    changes as proposals until they apply or discard them.
    """
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        snapshot = service.open_share(link)
        if snapshot is None:
            console.print("[red]This share link is invalid or has expired.[/red]")
            sys.exit(1)

        title = (
            snapshot.group_name
            if isinstance(snapshot, GroupSnapshot)
            else snapshot.transaction.name
        )
        console.print(f"\n[bold]Shared by {snapshot.owner}:[/bold] {title}")

        participant_index = select_participant_interactive(snapshot.people)
        if participant_index is None:
            console.print("[yellow]No participant selected.[/yellow]")
            return

        checked = {}
        for txn in snapshot.snapshot_transactions():
            ticks = toggle_items_interactive(txn, participant_index)
            if ticks is None:
                console.print("[yellow]Review cancelled, nothing submitted.[/yellow]")
                return
            checked[txn.id] = ticks

        if not confirm("Submit your changes?"):
            console.print("[yellow]Nothing submitted.[/yellow]")
            return

        staged = service.submit_collaborator_changes(
            snapshot, participant_index, checked
        )
        if staged:
            console.print(
                f"[green]✓ Submitted changes for {len(staged)} "
                f"transaction(s)[/green]"
            )
        else:
            console.print("[dim]No changes to submit.[/dim]")

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def pending(
    user: str = UserOption,
    verbose: bool = VerboseOption,
):
    """List collaborator proposals waiting for review."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        proposals = service.list_pending(user)
        if not proposals:
            console.print("[green]No pending proposals.[/green]")
            return

        table = Table(
            title="Pending proposals", show_header=True, header_style="bold magenta"
        )
        table.add_column("Transaction", style="cyan")
        table.add_column("Changes", justify="right")
        table.add_column("For participant", style="dim")
        for transaction_id, entries in proposals.items():
            people = sorted({str(e.participant_index + 1) for e in entries})
            table.add_row(
                transaction_id, str(len(entries)), "#" + ", #".join(people)
            )
        console.print(table)

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def apply(
    user: str = UserOption,
    group: str = GroupOption,
    transaction: str = typer.Option(..., "--transaction", "-t"),
    verbose: bool = VerboseOption,
):
    """Apply a collaborator's proposal to your ledger."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        if service.get_pending_delta(user, transaction) is None:
            console.print("[yellow]Nothing pending for this transaction.[/yellow]")
            return

        applied = service.apply_delta(user, group, transaction)
        console.print(f"[green]✓ Applied {applied} change(s)[/green]")

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


@app.command()
def discard(
    user: str = UserOption,
    transaction: str = typer.Option(..., "--transaction", "-t"),
    verbose: bool = VerboseOption,
):
    """Discard a collaborator's proposal without changing your ledger."""
    setup_logging(verbose)

    try:
        settings = load_settings()
        db = Database(settings.database_path)
        service = LedgerService(settings, db)

        if service.discard_delta(user, transaction):
            console.print("[green]✓ Proposal discarded[/green]")
        else:
            console.print("[yellow]Nothing pending for this transaction.[/yellow]")

    except Exception as e:
        _fail(e, verbose)
    finally:
        if "db" in locals():
            db.close()


if __name__ == "__main__":
    app()
