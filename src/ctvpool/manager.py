"""
This module drives the lifetime of an exit pool on a live node.

The PoolManager
- builds the pool ladder for addresses of its wallet;
- funds the entry pool, with a transaction jointly paid by all the participants;
- walks the spend chain, broadcasting one withdrawal at a time and waiting for it to confirm.

On networks with an anchor output, every pool transaction pays no fee itself: it is submitted in a package together
with a CPFP child spending the anchor.
"""

import logging
from typing import List, Optional

from verystable.core.messages import CTransaction

from .config import PoolContext
from .cpfp import build_cpfp_child, estimate_vsize
from .errors import PoolError
from .pools import PoolLadder, build_ladder
from .spend import SpendStep, initial_step, locate_pool_output, next_spend
from .utils import format_tx_markdown
from .wallet import PoolWallet

logger = logging.getLogger(__name__)


class PoolManager:
    """
    Coordinates the construction, funding and spending of one exit pool. Steps are strictly sequential: a withdrawal
    is only built once the previous one is confirmed.
    """

    def __init__(self, wallet: PoolWallet, ctx: PoolContext, *, poll_interval: float = 1, mine_automatically: bool = False):
        """
        Parameters:
            wallet (PoolWallet): The wallet that owns the addresses of all the participants, and pays for the fees.
            ctx (PoolContext): The parameters of the pool; must be for the same network as the wallet.
            poll_interval (float, optional): The interval, in seconds, between checks for confirmations.
            mine_automatically (bool, optional): If True, a block is mined after each broadcast instead of waiting
                for one. Only meaningful on regtest.
        """

        if wallet.network != ctx.network:
            raise ValueError(f"Wallet on {wallet.network.name}, but pool on {ctx.network.name}")

        self.wallet = wallet
        self.ctx = ctx
        self.poll_interval = poll_interval
        self.mine_automatically = mine_automatically

        self.ladder: Optional[PoolLadder] = None
        self.initial: Optional[SpendStep] = None
        self.current: Optional[SpendStep] = None
        self.txids: List[str] = []
        self.transactions: List[CTransaction] = []

    def create(self, n_users: int) -> PoolLadder:
        """Builds the ladder for `n_users` fresh addresses of the wallet."""

        addresses = [self.wallet.new_address() for _ in range(n_users)]
        for i, addr in enumerate(addresses):
            logger.debug("User %d address: %s", i, addr)

        self.ladder = build_ladder(self.ctx, addresses)
        self.initial = None
        self.current = None
        self.txids = []
        self.transactions = []
        logger.info("Entry pool address: %s", self.entry_address)
        return self.ladder

    @property
    def entry_address(self) -> str:
        return self._get_ladder().entry_tree.get_address(self.ctx.network.hrp)

    def _get_ladder(self) -> PoolLadder:
        if self.ladder is None:
            raise PoolError("No pool was created")
        return self.ladder

    def _confirm(self, txid: str) -> None:
        if self.mine_automatically:
            self.wallet.mine_blocks(1)
        self.wallet.wait_for_confirmation(txid, self.poll_interval)

    def fund(self) -> SpendStep:
        """
        Funds the entry pool: first sends a coin to each participant, then spends all of them into the pool with a
        jointly signed transaction. Returns the first step of the spend chain.
        """

        ladder = self._get_ladder()
        if self.current is not None:
            raise PoolError("The pool is already funded")

        n_users = ladder.n_users
        init_txid = self.wallet.send_funding_transaction(n_users, self.ctx.amount_per_user)
        self._confirm(init_txid)

        pool_txid = self.wallet.fund_pool(init_txid, self.entry_address, n_users, self.ctx.amount_per_user)
        logger.info("Pool funding txid: %s", pool_txid)
        self._confirm(pool_txid)

        funding_tx = self.wallet.fetch_transaction(pool_txid)
        vout = locate_pool_output(funding_tx, self.ctx.pool_amount(n_users))

        self.initial = self.current = initial_step(ladder, pool_txid, vout)
        self.txids.append(pool_txid)
        self.transactions.append(funding_tx)
        return self.current

    def _bump(self, parent: CTransaction) -> CTransaction:
        fee_rate = self.wallet.estimate_fee_rate()
        fee = fee_rate * estimate_vsize(2, 2) // 1000
        aux_coin = self.wallet.select_coin(fee + self.ctx.dust_amount)

        child = build_cpfp_child(self.ctx, parent.hash, fee_rate, aux_coin, self.wallet.new_change_script())
        return self.wallet.sign_with_wallet(child)

    def process_spend(self, step: SpendStep) -> Optional[SpendStep]:
        """
        Broadcasts the withdrawal of `step.exiting` and waits for it to confirm.

        Returns:
            Optional[SpendStep]: The next step, or None after the final payout.
        """

        ladder = self._get_ladder()
        tx, next_step = next_spend(ladder, step)
        tx.rehash()

        if self.ctx.network.uses_anchor:
            child = self._bump(tx)
            txid, child_txid = self.wallet.submit_package([tx, child])
            logger.info("Withdrawal of user %d: %s, CPFP child: %s", step.exiting, txid, child_txid)
        else:
            txid = self.wallet.broadcast(tx)
            logger.info("Withdrawal of user %d: %s", step.exiting, txid)

        if next_step is None:
            logger.info("Final exit of users %s", list(step.participants))

        self._confirm(txid)

        self.txids.append(txid)
        self.transactions.append(tx)
        self.current = next_step
        return next_step

    def run(self) -> List[str]:
        """Performs all the remaining withdrawals, and returns the txids of all the pool transactions."""

        if self.current is None:
            raise PoolError("The pool is not funded, or all the users already left")

        step: Optional[SpendStep] = self.current
        while step is not None:
            step = self.process_spend(step)
        return self.txids

    def report(self) -> str:
        titles = ["Pool funding"] + [f"Withdrawal {i}" for i in range(1, len(self.transactions))]
        return "".join(format_tx_markdown(tx, title) for title, tx in zip(titles, self.transactions))
