"""Tests for LedgerService layer."""

from unittest.mock import MagicMock, patch

import pytest

from receipt_split.config import Settings
from receipt_split.db import Database
from receipt_split.exceptions import (
    GroupNotFoundError,
    InvalidRateError,
    RateLookupError,
    TransactionNotFoundError,
    UserNotFoundError,
    ValidationError,
)
from receipt_split.models import (
    Group,
    LineItem,
    Participant,
    PendingDeltaEntry,
    Transaction,
    TransactionSnapshot,
    UserDocument,
)
from receipt_split.service import LedgerService
from receipt_split.sharing import encode_legacy_reference


@pytest.fixture
def mock_settings(tmp_path):
    """Create settings pointing at a temporary database."""
    return Settings(
        base_currency="eur",
        rate_api_url="https://rates.test",
        share_base_url="https://split.test/index.html",
        database_path=tmp_path / "test.db",
    )


@pytest.fixture
def mock_db(mock_settings):
    """Create a temporary database."""
    db = Database(mock_settings.database_path)
    yield db
    db.close()


@pytest.fixture
def service(mock_settings, mock_db):
    """Create a LedgerService instance."""
    return LedgerService(mock_settings, mock_db)


@pytest.fixture
def document(service):
    """Store a ledger for alice with one group and one transaction."""
    doc = UserDocument(
        username="alice",
        groups={
            "trip": Group(
                name="Trip",
                participants=[
                    Participant(name="Ann"),
                    Participant(name="Ben"),
                    Participant(name="Cat"),
                ],
                transactions=[
                    Transaction(
                        id="t1",
                        name="Pizzeria",
                        payer_index=0,
                        items=[
                            LineItem(
                                name="Pizza",
                                quantity=1,
                                unit_price=30.0,
                                total=30.0,
                                total_base=30.0,
                                assigned={0: True, 1: True, 2: True},
                            ),
                            LineItem(
                                name="Beer",
                                quantity=2,
                                unit_price=5.0,
                                total=10.0,
                                total_base=10.0,
                                assigned={1: True},
                            ),
                        ],
                    )
                ],
            )
        },
    )
    service.save_user(doc)
    return doc


def entry(item_index, participant_index, value=True):
    return PendingDeltaEntry(
        item_index=item_index,
        participant_index=participant_index,
        assigned_value=value,
    )


def mock_rate_client(rate=None, error=None):
    """Patch target for RateClient used as a context manager."""
    client = MagicMock()
    client.__enter__.return_value = client
    client.__exit__.return_value = False
    if error is not None:
        client.get_rate.side_effect = error
    else:
        client.get_rate.return_value = rate
    return MagicMock(return_value=client)


class TestDocuments:
    """Loading, creating and importing ledgers."""

    def test_missing_user(self, service):
        with pytest.raises(UserNotFoundError):
            service.load_user("nobody")

    def test_create_user_uses_default_base_currency(self, service):
        doc = service.create_user("dora")

        assert doc.settings.base_currency == "EUR"
        assert service.load_user("dora").username == "dora"

    def test_missing_group_and_transaction(self, service, document):
        doc = service.load_user("alice")
        with pytest.raises(GroupNotFoundError):
            service.get_group(doc, "nope")
        with pytest.raises(TransactionNotFoundError):
            service.get_transaction(doc.groups["trip"], "nope")

    def test_import_legacy_document(self, service):
        raw = {
            "settings": {"baseCurrency": "usd"},
            "folders": {
                "f1": {
                    "name": "Flat",
                    "people": ["Ann", "Ben"],
                    "receipts": [
                        {
                            "id": "r1",
                            "name": "Groceries",
                            "payer": 0,
                            "items": [
                                {"name": "Milk", "qty": 1, "total": 2.0},
                                {
                                    "name": "Eggs",
                                    "qty": 1,
                                    "total": 3.0,
                                    "assigned": [True, True],
                                },
                            ],
                        }
                    ],
                }
            },
        }

        service.import_document("ben", raw)
        doc = service.load_user("ben")

        group = doc.groups["f1"]
        assert doc.settings.base_currency == "USD"
        assert [p.name for p in group.participants] == ["Ann", "Ben"]
        assert group.transactions[0].currency_code == "USD"
        assert group.transactions[0].items[1].is_assigned(1)


class TestSettlementAndCurrency:
    """Settling groups and changing currencies through the service."""

    def test_compute_settlement(self, service, document):
        settlement = service.compute_settlement("alice", "trip")

        assert settlement.consumption == pytest.approx([10.0, 20.0, 10.0])
        assert settlement.net_balance == pytest.approx([30.0, -20.0, -10.0])
        pairs = {(t.from_participant, t.to_participant) for t in settlement.transfers}
        assert pairs == {(1, 0), (2, 0)}

    def test_change_currency_persists(self, service, document):
        with patch("receipt_split.service.RateClient", mock_rate_client(rate=1.2)):
            service.change_currency("alice", "trip", "t1", "usd", True)

        txn = service.load_user("alice").groups["trip"].transactions[0]
        assert txn.currency_code == "USD"
        assert txn.exchange_rate == 1.2
        assert txn.items[0].unit_price == pytest.approx(36.0)
        assert txn.items[1].unit_price == pytest.approx(6.0)
        assert txn.items[0].total_base == 30.0

    def test_change_currency_falls_back(self, service, document):
        client = mock_rate_client(error=RateLookupError("unreachable"))
        with patch("receipt_split.service.RateClient", client):
            txn = service.change_currency("alice", "trip", "t1", "USD", False)

        assert txn.exchange_rate == 1.1
        assert txn.items[0].unit_price == 30.0

    def test_settlement_unchanged_by_currency(self, service, document):
        before = service.compute_settlement("alice", "trip").net_balance
        with patch("receipt_split.service.RateClient", mock_rate_client(rate=150.0)):
            service.change_currency("alice", "trip", "t1", "JPY", True)

        after = service.compute_settlement("alice", "trip").net_balance
        assert after == pytest.approx(before)

    def test_override_rate(self, service, document):
        service.override_rate("alice", "trip", "t1", 1.05, "bank statement")

        txn = service.load_user("alice").groups["trip"].transactions[0]
        assert txn.rate_is_manual_override is True
        assert txn.manual_override_reason == "bank statement"
        assert txn.items[0].total == pytest.approx(31.5)

    def test_invalid_override_rate_not_persisted(self, service, document):
        with pytest.raises(InvalidRateError):
            service.override_rate("alice", "trip", "t1", -3)

        txn = service.load_user("alice").groups["trip"].transactions[0]
        assert txn.exchange_rate == 1.0
        assert txn.rate_is_manual_override is False

    def test_import_receipt_text(self, service, document):
        with patch("receipt_split.service.RateClient", mock_rate_client(rate=1.25)):
            txn = service.import_receipt_text(
                "alice",
                "trip",
                "Kiosk",
                "Cola 2 x 1,25 2,50\nChips 3,75\nThank you!",
                currency_code="usd",
            )

        stored = service.load_user("alice").groups["trip"].find_transaction(txn.id)
        assert stored.currency_code == "USD"
        assert stored.exchange_rate == 1.25
        assert stored.payer_index == 0
        assert [i.name for i in stored.items] == ["Cola", "Chips"]
        assert stored.items[0].total_base == pytest.approx(2.0)


class TestSharing:
    """Share links through the service."""

    def test_share_url_opens(self, service, document):
        url = service.create_share_url("alice", "trip", "t1")

        assert url.startswith("https://split.test/index.html?share=")
        snapshot = service.open_share(url)
        assert isinstance(snapshot, TransactionSnapshot)
        assert snapshot.transaction.name == "Pizzeria"

    def test_invalid_link(self, service):
        assert service.open_share("https://split.test/?share=garbage!") is None

    def test_legacy_link_resolves_against_owner(self, service, document):
        snapshot = service.open_share(encode_legacy_reference("alice", "trip", "t1"))

        assert isinstance(snapshot, TransactionSnapshot)
        assert snapshot.transaction_id == "t1"

    def test_legacy_group_link(self, service, document):
        snapshot = service.open_share(
            encode_legacy_reference("alice", "trip", "folder")
        )
        assert [t.id for t in snapshot.transactions] == ["t1"]

    @pytest.mark.parametrize(
        "owner,group_id,transaction_id",
        [("nobody", "trip", "t1"), ("alice", "nope", "t1"), ("alice", "trip", "x")],
    )
    def test_unresolvable_legacy_link(
        self, service, document, owner, group_id, transaction_id
    ):
        token = encode_legacy_reference(owner, group_id, transaction_id)
        assert service.open_share(token) is None


class TestPendingDeltas:
    """Staging, applying and discarding collaborator proposals."""

    def test_collaborator_flow(self, service, document):
        snapshot = service.open_share(service.create_share_token("alice", "trip", "t1"))

        # Cat also had some beer and did not have pizza
        staged = service.submit_collaborator_changes(
            snapshot, 2, {"t1": {0: False, 1: True}}
        )

        assert len(staged) == 1
        assert service.list_pending("alice") == {"t1": staged[0].entries}
        assert service.pending_changes("alice", "trip", "t1") == {(0, 2), (1, 2)}

        assert service.apply_delta("alice", "trip", "t1") == 2

        txn = service.load_user("alice").groups["trip"].transactions[0]
        assert not txn.items[0].is_assigned(2)
        assert txn.items[1].is_assigned(2)
        assert service.get_pending_delta("alice", "t1") is None

    def test_apply_twice_is_noop(self, service, document):
        service.submit_delta("alice", "t1", [entry(1, 0)])
        assert service.apply_delta("alice", "trip", "t1") == 1
        after_first = service.load_user("alice").model_dump()

        assert service.apply_delta("alice", "trip", "t1") == 0
        assert service.load_user("alice").model_dump() == after_first

    def test_last_submission_wins(self, service, document):
        service.submit_delta("alice", "t1", [entry(1, 0)])
        service.submit_delta("alice", "t1", [entry(0, 1, False)])

        delta = service.get_pending_delta("alice", "t1")
        assert delta.entries == [entry(0, 1, False)]

    def test_empty_submission_keeps_previous(self, service, document):
        service.submit_delta("alice", "t1", [entry(1, 0)])

        assert service.submit_delta("alice", "t1", []) is None
        assert service.get_pending_delta("alice", "t1").entries == [entry(1, 0)]

    def test_unchanged_collaborator_submits_nothing(self, service, document):
        snapshot = service.open_share(service.create_share_token("alice", "trip", "t1"))

        assert service.submit_collaborator_changes(snapshot, 1, {"t1": {}}) == []
        assert service.get_pending_delta("alice", "t1") is None

    def test_apply_after_item_deleted(self, service, document):
        service.submit_delta("alice", "t1", [entry(1, 0)])
        doc = service.load_user("alice")
        del doc.groups["trip"].transactions[0].items[1]
        service.save_user(doc)

        assert service.apply_delta("alice", "trip", "t1") == 0

        txn = service.load_user("alice").groups["trip"].transactions[0]
        assert len(txn.items) == 1
        assert service.get_pending_delta("alice", "t1") is None

    def test_apply_after_first_item_deleted(self, service, document):
        snapshot = service.open_share(service.create_share_token("alice", "trip", "t1"))
        service.submit_collaborator_changes(snapshot, 2, {"t1": {0: False}})
        doc = service.load_user("alice")
        del doc.groups["trip"].transactions[0].items[0]
        service.save_user(doc)

        assert service.apply_delta("alice", "trip", "t1") == 0

        txn = service.load_user("alice").groups["trip"].transactions[0]
        assert txn.items[0].name == "Beer"
        assert txn.items[0].assigned == {1: True}
        assert service.get_pending_delta("alice", "t1") is None

    def test_apply_to_transaction_moved_to_other_group(self, service, document):
        service.submit_delta("alice", "t1", [entry(1, 0)])
        doc = service.load_user("alice")
        trip = doc.groups["trip"]
        doc.groups["home"] = Group(
            name="Home",
            participants=list(trip.participants),
            transactions=[trip.transactions.pop()],
        )
        service.save_user(doc)

        assert service.apply_delta("alice", "trip", "t1") == 1

        txn = service.load_user("alice").groups["home"].transactions[0]
        assert txn.items[1].is_assigned(0)
        assert service.get_pending_delta("alice", "t1") is None

    def test_apply_with_wrong_group_finds_transaction(self, service, document):
        service.submit_delta("alice", "t1", [entry(1, 0)])
        doc = service.load_user("alice")
        doc.groups["home"] = Group(name="Home")
        service.save_user(doc)

        assert service.apply_delta("alice", "home", "t1") == 1

        txn = service.load_user("alice").groups["trip"].transactions[0]
        assert txn.items[1].is_assigned(0)

    def test_apply_after_transaction_deleted(self, service, document):
        service.submit_delta("alice", "t1", [entry(0, 0, False)])
        doc = service.load_user("alice")
        doc.groups["trip"].transactions.clear()
        service.save_user(doc)

        assert service.apply_delta("alice", "trip", "t1") == 0
        assert service.get_pending_delta("alice", "t1") is None

    def test_discard(self, service, document):
        service.submit_delta("alice", "t1", [entry(1, 0)])
        before = service.load_user("alice").model_dump()

        assert service.discard_delta("alice", "t1") is True
        assert service.discard_delta("alice", "t1") is False
        assert service.load_user("alice").model_dump() == before
        assert service.pending_changes("alice", "trip", "t1") == set()


class TestItemEditing:
    """Owner-side edits of items and assignments."""

    def test_add_item(self, service, document):
        item = service.add_item("alice", "trip", "t1", "Tiramisu", 2, 4.5)

        txn = service.load_user("alice").groups["trip"].transactions[0]
        assert txn.items[-1].name == "Tiramisu"
        assert item.total == 9.0
        assert txn.items[-1].total_base == 9.0

    def test_edit_item_quantity(self, service, document):
        service.edit_item("alice", "trip", "t1", 1, quantity=3)

        beer = service.load_user("alice").groups["trip"].transactions[0].items[1]
        assert beer.quantity == 3
        assert beer.total_base == pytest.approx(15.0)

    def test_remove_item(self, service, document):
        removed = service.remove_item("alice", "trip", "t1", 0)

        txn = service.load_user("alice").groups["trip"].transactions[0]
        assert removed.name == "Pizza"
        assert [item.name for item in txn.items] == ["Beer"]

    def test_assign_changes_settlement(self, service, document):
        service.assign("alice", "trip", "t1", 1, 2)

        settlement = service.compute_settlement("alice", "trip")
        assert settlement.consumption == pytest.approx([10.0, 15.0, 15.0])

    def test_invalid_positions_rejected(self, service, document):
        with pytest.raises(ValidationError):
            service.edit_item("alice", "trip", "t1", 5, quantity=1)
        with pytest.raises(ValidationError):
            service.assign("alice", "trip", "t1", 0, 7)

    def test_extra_columns(self, service, document):
        column = service.add_extra_column("alice", "trip", "t1", "Notes")

        txn = service.load_user("alice").groups["trip"].transactions[0]
        assert [c.name for c in txn.extra_columns] == ["Notes"]
        assert all(item.extras[column.id] == "" for item in txn.items)

        assert service.remove_extra_column("alice", "trip", "t1", column.id) is True
        assert service.remove_extra_column("alice", "trip", "t1", column.id) is False
        txn = service.load_user("alice").groups["trip"].transactions[0]
        assert txn.extra_columns == []
