"""
Child-pays-for-parent bumping of pool transactions.

On networks with an anchor output, pool transactions carry their fee in the anchor; the child spends it together
with a coin of the wallet, and pays the actual fee at the current fee rate.
"""

import logging
from typing import TYPE_CHECKING

from verystable.core.messages import COutPoint, CTransaction, CTxIn, CTxOut
from verystable.core.script import OP_RETURN, CScript

from .config import ENABLE_RBF_NO_LOCKTIME, PoolContext
from .errors import InsufficientFundsError

if TYPE_CHECKING:
    from .wallet import Coin

logger = logging.getLogger(__name__)

# Rough virtual sizes used for fee estimation
INPUT_VSIZE = 68  # SegWit input
OUTPUT_VSIZE = 34  # SegWit output
TX_OVERHEAD_VSIZE = 10  # Version, locktime, and input/output count

# "⚓ 🥪 ⚓"
CPFP_MARKER = b"\xe2\x9a\x93 \xf0\x9f\xa5\xaa \xe2\x9a\x93"


def estimate_vsize(n_inputs: int, n_outputs: int) -> int:
    return n_inputs * INPUT_VSIZE + n_outputs * OUTPUT_VSIZE + TX_OVERHEAD_VSIZE


def build_cpfp_child(
    ctx: PoolContext,
    parent_txid: str,
    fee_rate: int,
    aux_coin: 'Coin',
    change_script: bytes,
    *,
    anchor_vout: int = 2
) -> CTransaction:
    """
    Builds the unsigned child that spends the anchor output of `parent_txid` and `aux_coin`.

    Args:
        ctx: The context of the pool; the anchor is expected to hold `ctx.fee_amount`.
        parent_txid: The id of the pool transaction to bump.
        fee_rate: The fee rate of the child, in sat/kvB.
        aux_coin: A wallet coin paying for the rest of the fee; it is the only input that needs a signature.
        change_script: The scriptPubKey receiving the change.
        anchor_vout: The index of the anchor output in the parent.

    Returns:
        CTransaction: The child, with a zero-value OP_RETURN marker as first output and the change as second.

    Raises:
        ValueError: If the network of `ctx` does not use anchor outputs.
        InsufficientFundsError: If the change would be below the dust limit.
    """

    if not ctx.network.uses_anchor:
        raise ValueError(f"No anchor outputs on {ctx.network.name}")
    if fee_rate < 0:
        raise ValueError("The fee rate cannot be negative")

    vsize = estimate_vsize(2, 2)
    fee = fee_rate * vsize // 1000
    total_in = ctx.fee_amount + aux_coin.amount
    change = total_in - fee

    logger.info("CPFP child of %s: %d vB at %d sat/kvB, fee %d sats", parent_txid, vsize, fee_rate, fee)

    if change < ctx.dust_amount:
        raise InsufficientFundsError(f"Inputs of {total_in} sats cannot pay a fee of {fee} sats and dust change")

    tx = CTransaction()
    tx.nVersion = ctx.tx_version
    tx.nLockTime = 0
    tx.vin = [
        CTxIn(outpoint=COutPoint(int(parent_txid, 16), anchor_vout), nSequence=ENABLE_RBF_NO_LOCKTIME),
        CTxIn(outpoint=aux_coin.outpoint, nSequence=ENABLE_RBF_NO_LOCKTIME),
    ]
    tx.vout = [
        CTxOut(nValue=0, scriptPubKey=CScript([OP_RETURN, CPFP_MARKER])),
        CTxOut(nValue=change, scriptPubKey=change_script),
    ]
    return tx
