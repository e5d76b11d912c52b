"""
The commitment hash engine: BIP-119 standard template hashes for the fixed shape of pool transactions
(one input, no scriptSig, zero locktime), and the leaf scripts that commit to them.
"""

import struct
from typing import List, Optional, Sequence, Tuple

from verystable.core.messages import CTransaction, CTxIn, CTxOut, sha256
from verystable.core.script import OP_NOP4, CScript

from .config import ENABLE_RBF_NO_LOCKTIME, PoolContext

# OP_NOP4 is the upgradeable opcode redefined by BIP-119
OP_CHECKTEMPLATEVERIFY = OP_NOP4


def calc_ctv_hash(outputs: Sequence[CTxOut], sequence: Optional[int] = None, *, tx_version: int = 2) -> bytes:
    """
    Computes the CTV hash of a transaction with a single input spent at index 0, no scriptSig and zero locktime.

    Args:
        outputs: The outputs of the transaction, in order.
        sequence: The nSequence of the only input; defaults to ENABLE_RBF_NO_LOCKTIME.
        tx_version: The nVersion of the transaction.

    Returns:
        bytes: The 32-byte hash.
    """

    if sequence is None:
        sequence = ENABLE_RBF_NO_LOCKTIME
    if not (0 <= sequence < 2**32):
        raise ValueError(f"Invalid nSequence: {sequence}")

    buffer = struct.pack("<i", tx_version)
    buffer += struct.pack("<I", 0)  # nLockTime
    buffer += struct.pack("<I", 1)  # number of inputs
    buffer += sha256(struct.pack("<I", sequence))
    buffer += struct.pack("<I", len(outputs))
    buffer += sha256(b"".join(out.serialize() for out in outputs))
    buffer += struct.pack("<I", 0)  # input index
    return sha256(buffer)


def ctv_script(ctv_hash: bytes) -> CScript:
    if len(ctv_hash) != 32:
        raise ValueError("The CTV hash must be 32 bytes long")
    return CScript([ctv_hash, OP_CHECKTEMPLATEVERIFY])


def make_ctv_template(outputs: List[Tuple[bytes, int]], *, nVersion: int = 2, nSequence: int = ENABLE_RBF_NO_LOCKTIME) -> CTransaction:
    tmpl = CTransaction()
    tmpl.nVersion = nVersion
    tmpl.vin = [CTxIn(nSequence=nSequence)]
    for script_pubkey, amount in outputs:
        tmpl.vout.append(CTxOut(nValue=amount, scriptPubKey=script_pubkey))
    return tmpl


def withdraw_outputs(ctx: PoolContext, pool_script: bytes, withdraw_script: bytes, pool_amount: int) -> List[CTxOut]:
    """
    Returns the outputs of a withdrawal: `pool_amount` to `pool_script`, the withdrawal (net of the fee) to
    `withdraw_script` and, on networks that use one, the anchor output carrying the fee.
    """

    outputs = [
        CTxOut(nValue=pool_amount, scriptPubKey=pool_script),
        CTxOut(nValue=ctx.amount_per_user - ctx.fee_amount, scriptPubKey=withdraw_script),
    ]
    if ctx.network.uses_anchor:
        outputs.append(CTxOut(nValue=ctx.fee_amount, scriptPubKey=ctx.network.anchor_script))
    return outputs


def create_withdraw_ctv_hash(ctx: PoolContext, pool_script: bytes, withdraw_script: bytes, pool_amount: int) -> bytes:
    outputs = withdraw_outputs(ctx, pool_script, withdraw_script, pool_amount)
    return calc_ctv_hash(outputs, tx_version=ctx.tx_version)
