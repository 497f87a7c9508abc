"""Interactive UI components for the collaborator review flow."""

import logging
from typing import Any

from prompt_toolkit import PromptSession
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.document import Document

from .models import SnapshotPerson, SnapshotTransaction

logger = logging.getLogger(__name__)


class ParticipantCompleter(Completer):
    """Fuzzy search completer for participant names."""

    def __init__(self, people: list[SnapshotPerson]):
        """Initialize the completer with the snapshot's participants."""
        self.people = people
        self.name_to_index: dict[str, int] = {}
        for idx, person in enumerate(people):
            # First occurrence wins if two people share a name
            self.name_to_index.setdefault(person.name, idx)

    def get_completions(self, document: Document, complete_event: Any):
        """Get fuzzy-matched completions."""
        query = document.text.lower()

        for name in self.name_to_index:
            if not query or self._fuzzy_match(query, name.lower()):
                yield Completion(
                    text=name,
                    start_position=-len(document.text),
                    display=name,
                )

    def _fuzzy_match(self, query: str, text: str) -> bool:
        """
        Fuzzy match: all characters in query must appear in order in text.

        Example:
            query="ann" matches "Johanna"
        """
        query_idx = 0
        for char in text:
            if query_idx < len(query) and char == query[query_idx]:
                query_idx += 1
        return query_idx == len(query)


def select_participant_interactive(people: list[SnapshotPerson]) -> int | None:
    """
    Ask the collaborator who they are.

    Args:
        people: Participants from the snapshot

    Returns:
        The chosen participant index, or None if cancelled
    """
    if not people:
        print("❌ This link has no participants.")
        return None

    print("\n👤 Who are you?")
    for idx, person in enumerate(people):
        print(f"   {idx + 1}. {person.name}")
    print("   Type a name or number, press Enter to confirm, Ctrl+C to cancel\n")

    completer = ParticipantCompleter(people)
    session: PromptSession[str] = PromptSession(completer=completer)

    try:
        while True:
            result = session.prompt("I am: ", complete_while_typing=True).strip()

            if not result:
                return None

            if result.isdigit() and 1 <= int(result) <= len(people):
                return int(result) - 1

            if result in completer.name_to_index:
                logger.info(f"Collaborator identified as {result}")
                return completer.name_to_index[result]

            print("❌ Unknown name. Press Tab to complete or enter a number.")

    except KeyboardInterrupt:
        print("\n⏭️  Cancelled")
        return None
    except EOFError:
        return None


def _print_items(
    transaction: SnapshotTransaction, checked: dict[int, bool]
) -> None:
    print(f"\n🧾 {transaction.name} ({transaction.currency_code})")
    for idx, item in enumerate(transaction.items):
        mark = "x" if checked[idx] else " "
        total = f"{item.total:.2f}" if item.total is not None else ""
        print(
            f"   [{mark}] {idx + 1:>3}. {item.name:<30} "
            f"{item.quantity:>3} {total:>10}"
        )


def toggle_items_interactive(
    transaction: SnapshotTransaction, participant_index: int
) -> dict[int, bool] | None:
    """
    Let the collaborator tick the items they consumed.

    Starts from the snapshot's assignment for ``participant_index``.

    Returns:
        item index -> ticked for every item, or None if cancelled
    """
    checked = {
        idx: item.is_assigned(participant_index)
        for idx, item in enumerate(transaction.items)
    }
    if not checked:
        print(f"\n🧾 {transaction.name}: no items")
        return checked

    session: PromptSession[str] = PromptSession()

    try:
        while True:
            _print_items(transaction, checked)
            result = session.prompt(
                "Toggle item numbers (e.g. 1,3), Enter when done: "
            ).strip()

            if not result:
                return checked

            for part in result.replace(" ", ",").split(","):
                if not part:
                    continue
                if part.isdigit() and 1 <= int(part) <= len(transaction.items):
                    idx = int(part) - 1
                    checked[idx] = not checked[idx]
                else:
                    print(f"❌ No item {part!r}")

    except KeyboardInterrupt:
        print("\n⏭️  Cancelled")
        return None
    except EOFError:
        return None


def confirm(message: str) -> bool:
    """Simple yes/no confirmation, defaulting to yes."""
    response = input(f"   {message} [Y/n] ").strip().lower()
    return response in ("", "y", "yes")
