"""Tests for model validation and legacy record upgrades."""

from receipt_split.models import (
    DietaryPref,
    ItemFields,
    LineItem,
    Participant,
    PendingDeltaEntry,
    Transaction,
    UserDocument,
    UserSettings,
)


class TestParticipant:
    """Participant parsing and serialization."""

    def test_bare_name(self):
        participant = Participant.model_validate("Ann")

        assert participant.name == "Ann"
        assert participant.excluded is False
        assert participant.dietary_prefs == set()

    def test_prefs_mapping(self):
        participant = Participant.model_validate(
            {"name": "Ben", "prefs": {"vegan": True, "noNuts": False, "spicy": True}}
        )
        assert participant.dietary_prefs == {DietaryPref.VEGAN}

    def test_prefs_serialized_sorted(self):
        participant = Participant(
            name="Cat", dietary_prefs={DietaryPref.VEGAN, DietaryPref.NO_ALCOHOL}
        )
        assert participant.to_document()["dietaryPrefs"] == ["noAlcohol", "vegan"]


class TestItems:
    """Line item normalization."""

    def test_assigned_list(self):
        item = ItemFields.model_validate({"assigned": [True, None, False, True]})
        assert item.assigned == {0: True, 2: False, 3: True}

    def test_unit_price_derived_from_total(self):
        item = LineItem.model_validate({"name": "Tea", "qty": 4, "total": 6.0})
        assert item.quantity == 4
        assert item.unit_price == 1.5

    def test_float_quantity_rounded(self):
        assert LineItem(name="Tea", quantity=2.0).quantity == 2

    def test_extras_stringified(self):
        item = LineItem.model_validate({"extras": {"c1": 5, "c2": None}})
        assert item.extras == {"c1": "5", "c2": ""}


class TestTransaction:
    """Transaction defaults and legacy fields."""

    def test_defaults(self):
        transaction = Transaction.model_validate(
            {"id": "", "payer": -1, "rate": 0, "currency": "usd"}
        )

        assert transaction.id
        assert transaction.payer_index is None
        assert transaction.exchange_rate == 1.0
        assert transaction.currency_code == "USD"

    def test_legacy_manual_reason(self):
        transaction = Transaction.model_validate(
            {"id": "t1", "rate": 1.3, "manualReason": "cash exchange"}
        )

        assert transaction.rate_is_manual_override is True
        assert transaction.manual_override_reason == "cash exchange"

    def test_document_round_trip(self):
        transaction = Transaction(
            id="t1",
            items=[LineItem(name="A", total_base=2.0, assigned={1: True})],
        )

        restored = Transaction.model_validate(transaction.to_document())

        assert restored.model_dump() == transaction.model_dump()


class TestUserDocument:
    """Whole-ledger upgrades."""

    def test_legacy_layout(self):
        document = UserDocument.model_validate(
            {
                "username": "ann",
                "folders": {
                    "f1": {
                        "name": "Flat",
                        "people": ["Ann", {"name": "Ben", "excluded": True}],
                        "receipts": [{"id": "r1", "items": []}],
                        "sharedWith": ["ben"],
                    }
                },
            }
        )

        group = document.groups["f1"]
        assert group.participants[1].excluded is True
        assert group.shared_with_user_ids == ["ben"]
        assert group.transactions[0].currency_code == "EUR"
        assert group.active_indices() == [0]

    def test_existing_currency_kept(self):
        document = UserDocument.model_validate(
            {
                "username": "ann",
                "settings": {"baseCurrency": "GBP"},
                "groups": {
                    "g": {
                        "transactions": [
                            {"id": "a", "currencyCode": "SEK"},
                            {"id": "b"},
                        ]
                    }
                },
            }
        )

        codes = [t.currency_code for t in document.groups["g"].transactions]
        assert codes == ["SEK", "GBP"]

    def test_settings_instance_sets_default_currency(self):
        document = UserDocument.model_validate(
            {
                "username": "ann",
                "settings": UserSettings(base_currency="gbp"),
                "groups": {"g": {"transactions": [{"id": "a"}]}},
            }
        )

        assert document.settings.base_currency == "GBP"
        assert document.groups["g"].transactions[0].currency_code == "GBP"

    def test_ordered_groups(self):
        document = UserDocument.model_validate(
            {
                "username": "ann",
                "groups": {"late": {"order": 2}, "early": {"order": 1}},
            }
        )
        assert [gid for gid, _ in document.ordered_groups()] == ["early", "late"]


def test_pending_entry_legacy_keys():
    entry = PendingDeltaEntry.model_validate(
        {"itemIndex": 3, "personIndex": 1, "assigned": True}
    )
    assert (entry.item_index, entry.participant_index, entry.assigned_value) == (
        3,
        1,
        True,
    )
