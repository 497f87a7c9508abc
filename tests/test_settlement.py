"""Tests for settlement aggregation and debt minimization."""

import pytest

from receipt_split.exceptions import NoActiveParticipantsError
from receipt_split.models import Group, LineItem, Participant, Transaction
from receipt_split.settlement import compute_settlement, settle, settle_group


def make_group(names, transactions, excluded=()):
    """Build a group from participant names and transactions."""
    return Group(
        name="Trip",
        participants=[Participant(name=n, excluded=n in excluded) for n in names],
        transactions=transactions,
    )


def item(value, *assignees, name="Item"):
    """Line item worth ``value`` in the base currency."""
    return LineItem(
        name=name, total_base=value, assigned={idx: True for idx in assignees}
    )


def replay(net_balance, transfers):
    """Apply transfers to a copy of the balances."""
    balances = list(net_balance)
    for edge in transfers:
        balances[edge.from_participant] += edge.amount
        balances[edge.to_participant] -= edge.amount
    return balances


class TestComputeSettlement:
    """Balances, consumption and the debt matrix."""

    def test_two_people_sharing_one_item(self):
        group = make_group(
            ["A", "B"], [Transaction(payer_index=0, items=[item(10.0, 0, 1)])]
        )

        settlement = settle_group(group)

        assert settlement.net_balance == [5.0, -5.0]
        assert settlement.consumption == [5.0, 5.0]
        assert settlement.debt_matrix == [[0.0, 0.0], [5.0, 0.0]]
        assert len(settlement.transfers) == 1
        edge = settlement.transfers[0]
        assert (edge.from_participant, edge.to_participant, edge.amount) == (1, 0, 5.0)

    def test_unassigned_items_are_ignored(self):
        group = make_group(
            ["A", "B"], [Transaction(payer_index=0, items=[item(10.0)])]
        )

        settlement = settle_group(group)

        assert settlement.net_balance == [0.0, 0.0]
        assert settlement.consumption == [0.0, 0.0]
        assert settlement.transfers == []

    def test_balances_sum_to_zero(self):
        group = make_group(
            ["A", "B", "C", "D"],
            [
                Transaction(
                    payer_index=0,
                    items=[item(17.3, 0, 1, 2), item(4.99, 3), item(12.0, 1, 3)],
                ),
                Transaction(payer_index=2, items=[item(33.33, 0, 1, 2, 3)]),
                Transaction(payer_index=3, items=[item(0.01, 0, 1, 2)]),
            ],
        )

        settlement = compute_settlement(group)

        assert sum(settlement.net_balance) == pytest.approx(0.0, abs=1e-9)
        total = 17.3 + 4.99 + 12.0 + 33.33 + 0.01
        assert sum(settlement.consumption) == pytest.approx(total)

    def test_excluded_participants_are_removed(self):
        group = make_group(
            ["A", "B", "C"],
            [Transaction(payer_index=2, items=[item(30.0, 0, 1, 2)])],
            excluded={"B"},
        )

        settlement = settle_group(group)

        assert settlement.participant_indices == [0, 2]
        assert settlement.names == ["A", "C"]
        assert settlement.net_balance == [-15.0, 15.0]
        assert settlement.debt_matrix[0][1] == 15.0

    def test_excluded_payer_only_debits_consumers(self):
        group = make_group(
            ["A", "B", "C"],
            [Transaction(payer_index=1, items=[item(20.0, 0, 2)])],
            excluded={"B"},
        )

        settlement = settle_group(group)

        assert settlement.net_balance == [-10.0, -10.0]
        assert settlement.debt_matrix == [[0.0, 0.0], [0.0, 0.0]]
        assert settlement.transfers == []

    def test_no_payer_only_debits_consumers(self):
        group = make_group(
            ["A", "B"], [Transaction(payer_index=None, items=[item(8.0, 0, 1)])]
        )

        settlement = compute_settlement(group)

        assert settlement.net_balance == [-4.0, -4.0]

    def test_hidden_transactions_still_count(self):
        group = make_group(
            ["A", "B"],
            [Transaction(payer_index=1, hidden=True, items=[item(6.0, 0)])],
        )

        assert compute_settlement(group).net_balance == [-6.0, 6.0]

    def test_display_only_items_use_rate(self):
        group = make_group(
            ["A", "B"],
            [
                Transaction(
                    payer_index=0,
                    currency_code="USD",
                    exchange_rate=1.1,
                    items=[LineItem(name="X", total=22.0, assigned={1: True})],
                )
            ],
        )

        assert compute_settlement(group).net_balance == pytest.approx([20.0, -20.0])

    def test_no_active_participants(self):
        group = make_group(["A"], [], excluded={"A"})
        with pytest.raises(NoActiveParticipantsError):
            compute_settlement(group)

    def test_empty_group_settles_to_zero(self):
        settlement = settle_group(make_group(["A", "B"], []))
        assert settlement.net_balance == [0.0, 0.0]
        assert settlement.transfers == []


class TestSettle:
    """Greedy transfer suggestions."""

    def test_largest_pairs_first(self):
        transfers = settle([10.0, -4.0, -6.0, 0.0])

        triples = [(t.from_participant, t.to_participant, t.amount) for t in transfers]
        assert triples == [(2, 0, 6.0), (1, 0, 4.0)]

    def test_replayed_transfers_zero_the_balances(self):
        net = [12.345, -3.333, 7.5, -10.0, -6.512]

        transfers = settle(net)

        for balance in replay(net, transfers):
            assert balance == pytest.approx(0.0, abs=0.01)

    def test_transfer_count_bound(self):
        net = [50.0, 25.0, -30.0, -20.0, -15.0, -10.0]
        transfers = settle(net)
        assert len(transfers) <= 2 + 4 - 1

    def test_amounts_are_positive_and_rounded(self):
        transfers = settle([1 / 3, 1 / 3, -2 / 3])
        for edge in transfers:
            assert edge.amount > 0
            assert round(edge.amount, 2) == edge.amount

    def test_balances_below_epsilon_are_settled(self):
        assert settle([0.004, -0.004]) == []

    def test_all_zero(self):
        assert settle([0.0, 0.0, 0.0]) == []
