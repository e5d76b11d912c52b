"""
The wallet and node collaborator of the pool: everything that needs a connection to a bitcoin node.
"""

import logging
import time
from dataclasses import dataclass
from io import BytesIO
from typing import List

from verystable.core.messages import COutPoint, CTransaction
from verystable.rpc import BitcoinRPC, JSONRPCError

from .config import DEFAULT_FEE_RATE, DUST_AMOUNT, INIT_WALLET_AMOUNT_FEE, NetworkConfig
from .cpfp import estimate_vsize
from .errors import FundingError, InsufficientFundsError
from .utils import addr_to_script, btc_to_sats, sats_to_btc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Coin:
    txid: str
    vout: int
    amount: int
    scriptPubKey: bytes

    @property
    def outpoint(self) -> COutPoint:
        return COutPoint(int(self.txid, 16), self.vout)


class PoolWallet:
    """
    Wraps the RPC connection to the wallet of a bitcoin node. None of the methods retries a failed call:
    JSONRPCError exceptions are propagated to the caller, except for fee estimation, that falls back to
    DEFAULT_FEE_RATE.
    """

    def __init__(self, rpc: BitcoinRPC, network: NetworkConfig):
        self.rpc = rpc
        self.network = network

    def new_address(self) -> str:
        return self.rpc.getnewaddress()

    def new_change_script(self) -> bytes:
        return addr_to_script(self.rpc.getrawchangeaddress(), self.network.hrp)

    def get_balance(self) -> int:
        return btc_to_sats(self.rpc.getbalance())

    def broadcast(self, tx: CTransaction) -> str:
        return self.rpc.sendrawtransaction(tx.serialize().hex())

    def fetch_transaction(self, txid: str) -> CTransaction:
        tx = CTransaction()
        # gettransaction works without -txindex, as all the pool transactions pay to the wallet
        tx.deserialize(BytesIO(bytes.fromhex(self.rpc.gettransaction(txid)["hex"])))
        tx.rehash()
        return tx

    def estimate_fee_rate(self) -> int:
        """Returns the fee rate (in sat/kvB) to confirm in the next block, or DEFAULT_FEE_RATE if the node has no estimate."""

        try:
            estimate = self.rpc.estimatesmartfee(1)
        except JSONRPCError as e:
            logger.warning("Fee estimation failed (%s), using the default fee rate", e)
            return DEFAULT_FEE_RATE

        if "feerate" not in estimate:
            logger.info("No fee estimate available, using the default fee rate")
            return DEFAULT_FEE_RATE
        return btc_to_sats(estimate["feerate"])

    def list_spendable_coins(self, min_conf: int = 1) -> List[Coin]:
        return [
            Coin(utxo["txid"], utxo["vout"], btc_to_sats(utxo["amount"]), bytes.fromhex(utxo["scriptPubKey"]))
            for utxo in self.rpc.listunspent(min_conf)
            if utxo.get("spendable", True)
        ]

    def sign_with_wallet(self, tx: CTransaction) -> CTransaction:
        result = self.rpc.signrawtransactionwithwallet(tx.serialize().hex())
        if not result.get("complete", False):
            # inputs that need no signature (like anchors) are reported as incomplete
            logger.debug("signrawtransactionwithwallet errors: %s", result.get("errors"))
        signed = CTransaction()
        signed.deserialize(BytesIO(bytes.fromhex(result["hex"])))
        signed.rehash()
        return signed

    def mine_blocks(self, n_blocks: int = 1) -> List[str]:
        address = self.rpc.getnewaddress()
        return self.rpc.generatetoaddress(n_blocks, address)

    def send_funding_transaction(self, n_users: int, amount_per_user: int) -> str:
        """
        Sends `amount_per_user` plus INIT_WALLET_AMOUNT_FEE to `n_users` fresh addresses of the wallet, simulating
        the coins that each participant will contribute to the pool.
        """

        amounts = {self.new_address(): sats_to_btc(amount_per_user + INIT_WALLET_AMOUNT_FEE) for _ in range(n_users)}
        txid = self.rpc.sendmany("", amounts, 1, "Fund init user wallets")
        logger.info("Fund init user wallets TXID: %s", txid)
        return txid

    def fund_pool(self, init_txid: str, pool_address: str, n_users: int, amount_per_user: int) -> str:
        """
        Funds the pool at `pool_address` with a PSBT joined by all the participants, each spending the coin received
        in `init_txid` and paying an equal share of the fee.

        Raises:
            FundingError: If `init_txid` does not have an output for each participant.
            InsufficientFundsError: If a participant's coin cannot cover the contribution, its share of the fee and
                the change.
        """

        tx = self.rpc.gettransaction(init_txid)
        expected = amount_per_user + INIT_WALLET_AMOUNT_FEE
        vouts = sorted({d["vout"] for d in tx["details"] if btc_to_sats(d["amount"]) == expected})
        if len(vouts) < n_users:
            raise FundingError(f"Expected {n_users} outputs of {expected} sats in {init_txid}, found {len(vouts)}")
        vouts = vouts[:n_users]

        estimated_vsize = estimate_vsize(n_users, n_users + 1)
        fee_rate = self.estimate_fee_rate()
        total_fee = fee_rate * estimated_vsize // 1000
        fee_per_user = total_fee // n_users

        logger.info("Fee estimation: %d sat/kvB, Est. size: %d vB, Total fee: %d sats, Per user: %d sats",
                    fee_rate, estimated_vsize, total_fee, fee_per_user)

        if expected < amount_per_user + fee_per_user + DUST_AMOUNT:
            raise InsufficientFundsError(
                f"Each input has {expected} sats, but {amount_per_user + fee_per_user + DUST_AMOUNT} are needed; "
                "increase INIT_WALLET_AMOUNT_FEE")

        current_psbt = self.rpc.createpsbt([], [{pool_address: sats_to_btc(amount_per_user * n_users)}])
        for i, vout in enumerate(vouts):
            change_address = self.rpc.getrawchangeaddress()
            change_amount = expected - amount_per_user - fee_per_user

            input_psbt = self.rpc.createpsbt(
                [{"txid": init_txid, "vout": vout}], [{change_address: sats_to_btc(change_amount)}])
            current_psbt = self.rpc.joinpsbts([current_psbt, input_psbt])
            current_psbt = self.rpc.walletprocesspsbt(current_psbt, True)["psbt"]

            logger.info("User %d added and signed their input to PSBT, fee contribution: %d sats", i, fee_per_user)

        finalized = self.rpc.finalizepsbt(current_psbt)
        if not finalized.get("complete", False):
            raise FundingError("The pool funding PSBT could not be finalized")
        return self.rpc.sendrawtransaction(finalized["hex"])

    def select_coin(self, min_amount: int) -> Coin:
        """Returns the smallest confirmed coin of the wallet worth at least `min_amount`."""

        candidates = [coin for coin in self.list_spendable_coins(1) if coin.amount >= min_amount]
        if len(candidates) == 0:
            raise InsufficientFundsError(f"No confirmed coin of at least {min_amount} sats in the wallet")
        return min(candidates, key=lambda coin: coin.amount)

    def submit_package(self, txs: List[CTransaction]) -> List[str]:
        """
        Submits a parent and its children to the mempool together, so that a parent paying no fee is accepted
        thanks to its children. Returns the txids, in the same order.
        """

        result = self.rpc.submitpackage([tx.serialize().hex() for tx in txs])
        if result.get("package_msg", "success") != "success":
            raise FundingError(f"Package rejected: {result['package_msg']}")

        txids = []
        for tx in txs:
            tx.rehash()
            txids.append(tx.hash)
        return txids

    # We ignore the possibility of reorgs for simplicity.
    def wait_for_confirmation(self, txid: str, poll_interval: float = 1) -> int:
        """Blocks until `txid` is in a block, and returns the height of that block."""

        while True:
            try:
                tx = self.rpc.gettransaction(txid)
                if tx.get("confirmations", 0) > 0:
                    return tx["blockheight"]
            except JSONRPCError as e:
                logger.warning("A JSON RPC Exception occurred: %s", e)

            time.sleep(poll_interval)
