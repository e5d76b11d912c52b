"""
Assembly of the chain of withdrawals from a funded pool.

Participants leave one at a time, lowest index first. Each step spends the current pool output through the leaf of
the exiting participant, and produces the output of the next (smaller) pool; the last step pays the two remaining
participants directly. Building a step does not perform any I/O: broadcasting the transaction and waiting for it is
up to the caller, which then advances to the returned SpendStep.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

from verystable.core.messages import COutPoint, CTransaction, CTxIn, CTxInWitness, CTxOut

from .config import ENABLE_RBF_NO_LOCKTIME
from .ctv import calc_ctv_hash, withdraw_outputs
from .errors import FundingError, MissingLeafError
from .pools import ParticipantSet, PoolLadder
from .taptree import ExitLeaf, LockingTree


@dataclass(frozen=True)
class SpendStep:
    """
    The state of the pool before one withdrawal.

    Attributes:
        txid (str): The id of the transaction that created the current pool output.
        vout (int): The index of the current pool output in that transaction.
        participants (ParticipantSet): The participants whose funds are locked in the current pool output.
        step (int): The number of withdrawals already performed.
    """

    txid: str
    vout: int
    participants: ParticipantSet
    step: int = 0

    @property
    def exiting(self) -> int:
        """The participant leaving at this step."""
        return self.participants.lowest

    @property
    def is_terminal(self) -> bool:
        return len(self.participants) == 2

    @property
    def outpoint(self) -> COutPoint:
        return COutPoint(int(self.txid, 16), self.vout)


def initial_step(ladder: PoolLadder, txid: str, vout: int) -> SpendStep:
    """The state of a pool whose entry output is `vout` of the transaction `txid`."""
    return SpendStep(txid, vout, ladder.participants, 0)


def locate_pool_output(tx: CTransaction, amount: int) -> int:
    """Returns the index of the first output of `tx` with value `amount`."""

    for i, out in enumerate(tx.vout):
        if out.nValue == amount:
            return i
    raise FundingError(f"No output with value {amount} in the transaction")


def spend_ctv(tx: CTransaction, tree: LockingTree, leaf: ExitLeaf) -> CTransaction:
    """Completes the witness of every input of `tx` to spend `tree` through the script of `leaf`."""

    control_block = tree.control_block(leaf)
    wits = []
    for _ in tx.vin:
        in_wit = CTxInWitness()
        in_wit.scriptWitness.stack = [leaf.script, control_block]
        wits.append(in_wit)
    tx.wit.vtxinwit = wits
    return tx


def _find_leaf(tree: LockingTree, participant: int, ctv_hash: bytes) -> ExitLeaf:
    leaf = tree.leaf_for(participant)
    if leaf.ctv_hash != ctv_hash:
        raise MissingLeafError(
            f"The leaf of participant {participant} commits to {leaf.ctv_hash.hex()}, expected {ctv_hash.hex()}")
    return leaf


def _make_tx(ladder: PoolLadder, step: SpendStep, outputs: List[CTxOut]) -> CTransaction:
    tx = CTransaction()
    tx.nVersion = ladder.ctx.tx_version
    tx.nLockTime = 0
    tx.vin = [CTxIn(outpoint=step.outpoint, nSequence=ENABLE_RBF_NO_LOCKTIME)]
    tx.vout = outputs
    return tx


def next_spend(ladder: PoolLadder, step: SpendStep) -> Tuple[CTransaction, Optional[SpendStep]]:
    """
    Builds the transaction for the withdrawal of `step.exiting`.

    Returns:
        Tuple[CTransaction, Optional[SpendStep]]: The complete transaction, and the state after it is confirmed; the
            state is None after the final payout of the last two participants.

    Raises:
        MissingLeafError: If the tree being spent has no leaf that commits to the expected transaction.
    """

    ctx = ladder.ctx
    pool_size = len(step.participants)
    current_tree = ladder[pool_size][step.participants]

    if step.is_terminal:
        first, last = step.participants
        outputs = withdraw_outputs(ctx, ladder.scripts[first], ladder.scripts[last], ctx.amount_per_user)
        leaf = _find_leaf(current_tree, first, calc_ctv_hash(outputs, tx_version=ctx.tx_version))

        return spend_ctv(_make_tx(ladder, step, outputs), current_tree, leaf), None

    exiting = step.exiting
    recipients = step.participants.without(exiting)
    recipient_tree = ladder[pool_size - 1][recipients]

    outputs = withdraw_outputs(ctx, recipient_tree.scriptPubKey, ladder.scripts[exiting], ctx.pool_amount(len(recipients)))
    leaf = _find_leaf(current_tree, exiting, calc_ctv_hash(outputs, tx_version=ctx.tx_version))

    tx = spend_ctv(_make_tx(ladder, step, outputs), current_tree, leaf)
    tx.rehash()

    return tx, SpendStep(tx.hash, 0, recipients, step.step + 1)
