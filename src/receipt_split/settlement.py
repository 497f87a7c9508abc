"""Settlement aggregation and debt minimization across a group's transactions."""

import logging

from .currency import round_currency
from .exceptions import NoActiveParticipantsError
from .ledger import transaction_shares
from .models import DebtEdge, Group, Participant, Settlement, Transaction

logger = logging.getLogger(__name__)

# Balances closer to zero than this are considered settled
SETTLEMENT_EPSILON = 0.005


def _active_payer(
    transaction: Transaction,
    participants: list[Participant],
    active_map: dict[int, int],
) -> int | None:
    """Active index of the transaction's payer, or None if it has no usable payer."""
    payer = transaction.payer_index
    if payer is None or not 0 <= payer < len(participants):
        return None
    if participants[payer].excluded:
        return None
    return active_map.get(payer)


def compute_settlement(group: Group) -> Settlement:
    """
    Aggregate every transaction of a group into balances and a debt matrix.

    Steps per transaction:
    1. Split each item's base value evenly across its active assignees
    2. Debit every consumer with their share
    3. Credit the payer (if active) with the whole amount spent, so they
       end up owed exactly what others consumed
    4. Record each consumer's share as owed directly to the payer

    A transaction without an active payer only debits its consumers.
    Amounts are accumulated unrounded; round only for display.

    Args:
        group: The group to settle

    Returns:
        Settlement in the dense active-index space (no transfers yet)

    Raises:
        NoActiveParticipantsError: If the group has no active participants
    """
    active = group.active_indices()
    if not active:
        raise NoActiveParticipantsError(
            f"Group '{group.name}' has no active participants to settle"
        )

    n = len(active)
    active_map = {original: ai for ai, original in enumerate(active)}
    net_balance = [0.0] * n
    consumption = [0.0] * n
    debt_matrix = [[0.0] * n for _ in range(n)]

    for transaction in group.transactions:
        sums = [0.0] * n
        for original, amount in transaction_shares(
            transaction, group.participants
        ).items():
            sums[active_map[original]] += amount

        spent = sum(sums)
        for ai, amount in enumerate(sums):
            consumption[ai] += amount
            net_balance[ai] -= amount

        payer_ai = _active_payer(transaction, group.participants, active_map)
        if payer_ai is None:
            if spent:
                logger.debug(
                    f"'{transaction.name}' has no active payer; "
                    f"{spent:.2f} debited without a creditor"
                )
            continue

        # Own share was debited above, so the payer nets spent - own share
        net_balance[payer_ai] += spent
        for ai, amount in enumerate(sums):
            if ai != payer_ai:
                debt_matrix[ai][payer_ai] += amount

    logger.info(
        f"Settled '{group.name}': {len(group.transactions)} transactions, "
        f"{n} active participants"
    )

    return Settlement(
        participant_indices=active,
        names=[group.participants[idx].name for idx in active],
        net_balance=net_balance,
        consumption=consumption,
        debt_matrix=debt_matrix,
    )


def settle(net_balance: list[float]) -> list[DebtEdge]:
    """
    Suggest transfers that bring every balance to (near) zero.

    Greedy: repeatedly pay the largest remaining creditor from the largest
    remaining debtor. Produces at most ``creditors + debtors - 1`` transfers
    but is not guaranteed to find the fewest possible transfers.

    Args:
        net_balance: Signed balance per participant (positive = is owed)

    Returns:
        Transfers between indices of ``net_balance``, amounts rounded to cents
    """
    creditors = [
        [idx, value]
        for idx, value in enumerate(net_balance)
        if value > SETTLEMENT_EPSILON
    ]
    debtors = [
        [idx, -value]
        for idx, value in enumerate(net_balance)
        if value < -SETTLEMENT_EPSILON
    ]
    creditors.sort(key=lambda entry: entry[1], reverse=True)
    debtors.sort(key=lambda entry: entry[1], reverse=True)

    transfers: list[DebtEdge] = []
    ci = di = 0
    while ci < len(creditors) and di < len(debtors):
        creditor = creditors[ci]
        debtor = debtors[di]
        pay = min(creditor[1], debtor[1])

        amount = round_currency(pay)
        if amount > 0:
            transfers.append(
                DebtEdge(
                    from_participant=int(debtor[0]),
                    to_participant=int(creditor[0]),
                    amount=amount,
                )
            )

        creditor[1] -= pay
        debtor[1] -= pay
        if creditor[1] < SETTLEMENT_EPSILON:
            ci += 1
        if debtor[1] < SETTLEMENT_EPSILON:
            di += 1

    return transfers


def settle_group(group: Group) -> Settlement:
    """Compute a group's settlement including the suggested transfers."""
    settlement = compute_settlement(group)
    settlement.transfers = settle(settlement.net_balance)
    logger.info(f"Suggested {len(settlement.transfers)} transfers")
    return settlement
