"""
Construction of the pool ladder.

A pool of size k maps each k-subset of the participants to a LockingTree with one leaf per member; the leaf of
member m commits to paying m out, and to locking the rest into the tree of the pool of size k-1 for the same subset
without m. The pool of size 2 (the "exit pool") pays both remaining participants directly.

Pools are built bottom-up, from size 2 to N; the pool of size N (the "entry pool") only contains the set of all
the participants. The cost grows as the sum of C(N, k) * k over all sizes, so this is only practical for a few
dozen participants at most.
"""

import itertools
import logging
import math
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from .config import MAX_RECOMMENDED_POOL_USERS, MIN_POOL_USERS, PoolContext
from .ctv import calc_ctv_hash, withdraw_outputs
from .errors import MissingSubpoolError, PoolSizeError
from .taptree import ExitLeaf, LockingTree
from .utils import addr_to_script

logger = logging.getLogger(__name__)


class ParticipantSet(tuple):
    """
    The indices of the participants that are still in a pool, sorted and without duplicates.
    Two sets with the same members are equal (and hash the same) regardless of the order they were given in.
    """

    def __new__(cls, members: Iterable[int] = ()):
        members = sorted(set(members))
        if any(m < 0 for m in members):
            raise ValueError("Participant indices cannot be negative")
        return super().__new__(cls, members)

    @property
    def lowest(self) -> int:
        if len(self) == 0:
            raise ValueError("Empty participant set")
        return self[0]

    def without(self, participant: int) -> 'ParticipantSet':
        if participant not in self:
            raise ValueError(f"Participant {participant} is not in {self}")
        return ParticipantSet(m for m in self if m != participant)

    def __repr__(self):
        return f"{self.__class__.__name__}({list(self)})"


class Combinations:
    """The k-subsets of the participants 0, ..., n-1, generated lazily in lexicographic order; can be iterated many times."""

    def __init__(self, n: int, k: int):
        if n < 0 or k < 0:
            raise ValueError("n and k must be non-negative")
        self.n = n
        self.k = k

    def __iter__(self) -> Iterator[ParticipantSet]:
        return (ParticipantSet(combo) for combo in itertools.combinations(range(self.n), self.k))

    def __len__(self) -> int:
        return math.comb(self.n, self.k)


class Pool:
    """The locking trees of all the participant sets of a given size."""

    def __init__(self, size: int):
        self.size = size
        self._trees: Dict[ParticipantSet, LockingTree] = {}

    def add(self, participants: ParticipantSet, tree: LockingTree) -> None:
        if len(participants) != self.size:
            raise ValueError(f"Expected {self.size} participants, got {len(participants)}")
        self._trees[ParticipantSet(participants)] = tree

    def get(self, participants: Iterable[int]) -> Optional[LockingTree]:
        return self._trees.get(ParticipantSet(participants))

    def __getitem__(self, participants: Iterable[int]) -> LockingTree:
        tree = self.get(participants)
        if tree is None:
            raise MissingSubpoolError(ParticipantSet(participants), self.size)
        return tree

    def __contains__(self, participants: Iterable[int]) -> bool:
        return ParticipantSet(participants) in self._trees

    def __iter__(self) -> Iterator[ParticipantSet]:
        return iter(self._trees)

    def __len__(self) -> int:
        return len(self._trees)

    def items(self) -> Iterable[Tuple[ParticipantSet, LockingTree]]:
        return self._trees.items()

    def __repr__(self):
        return f"{self.__class__.__name__}(size={self.size}, trees={len(self)})"


class PoolLadder:
    """
    The pools of every size from 2 to N, where the pool of size N only contains the set of all the participants.
    Built once by `build_ladder`; it is never modified afterwards.
    """

    def __init__(self, ctx: PoolContext, scripts: List[bytes], pools: Dict[int, Pool]):
        self.ctx = ctx
        self.scripts = scripts
        self._pools = pools

    @property
    def n_users(self) -> int:
        return len(self.scripts)

    @property
    def participants(self) -> ParticipantSet:
        return ParticipantSet(range(self.n_users))

    @property
    def exit_pool(self) -> Pool:
        return self._pools[2]

    @property
    def entry_pool(self) -> Pool:
        return self._pools[self.n_users]

    @property
    def entry_tree(self) -> LockingTree:
        return self.entry_pool[self.participants]

    @property
    def sizes(self) -> List[int]:
        return sorted(self._pools.keys())

    def total_trees(self) -> int:
        return sum(len(pool) for pool in self._pools.values())

    def __getitem__(self, size: int) -> Pool:
        if size not in self._pools:
            raise PoolSizeError(f"No pool of size {size} in a ladder for {self.n_users} users")
        return self._pools[size]

    def __iter__(self) -> Iterator[Pool]:
        return (self._pools[size] for size in self.sizes)

    def __repr__(self):
        return f"{self.__class__.__name__}(n_users={self.n_users}, trees={self.total_trees()})"


def ladder_cost(n_users: int) -> int:
    """The number of leaves (hence, of CTV hashes) needed by the ladder for `n_users` participants."""
    # one leaf per pair in the exit pool, one per member in every other tree
    return math.comb(n_users, 2) + sum(math.comb(n_users, k) * k for k in range(3, n_users)) + n_users


def build_exit_pool(ctx: PoolContext, scripts: List[bytes]) -> Pool:
    """
    Builds the pool of size 2: for each pair i < j, a tree with a single leaf that pays the full amount to i and
    the amount net of the fee to j. Nothing is locked any further.
    """

    exit_pool = Pool(2)
    for pair in Combinations(len(scripts), 2):
        i, j = pair
        outputs = withdraw_outputs(ctx, scripts[i], scripts[j], ctx.amount_per_user)
        leaf = ExitLeaf(i, outputs, calc_ctv_hash(outputs, tx_version=ctx.tx_version))
        exit_pool.add(pair, LockingTree([leaf], ctx.internal_pubkey))
    return exit_pool


def _build_subset_tree(ctx: PoolContext, target: Pool, participants: ParticipantSet, scripts: List[bytes]) -> LockingTree:
    leaves: List[ExitLeaf] = []
    for user in participants:
        remaining = participants.without(user)
        target_tree = target.get(remaining)
        if target_tree is None:
            raise MissingSubpoolError(remaining, target.size)

        outputs = withdraw_outputs(ctx, target_tree.scriptPubKey, scripts[user], ctx.pool_amount(len(remaining)))
        leaves.append(ExitLeaf(user, outputs, calc_ctv_hash(outputs, tx_version=ctx.tx_version)))

    return LockingTree(leaves, ctx.internal_pubkey)


def build_pool(ctx: PoolContext, target: Pool, size: int, scripts: List[bytes]) -> Pool:
    """
    Builds the pool of the given size, whose leaves spend into the trees of `target`, the pool of size `size - 1`.

    Raises:
        MissingSubpoolError: If `target` does not have a tree for some participant set of size `size - 1`.
    """

    if target.size != size - 1:
        raise PoolSizeError(f"A pool of size {size} must be built on a pool of size {size - 1}, not {target.size}")

    logger.info("Creating addresses for %d user pool", size)

    new_pool = Pool(size)
    for participants in Combinations(len(scripts), size):
        new_pool.add(participants, _build_subset_tree(ctx, target, participants, scripts))
    return new_pool


def build_entry_pool(ctx: PoolContext, target: Pool, scripts: List[bytes]) -> Pool:
    """Builds the pool holding the funds of all the participants, spending into `target` (the pool of size N-1)."""

    n_users = len(scripts)
    if target.size != n_users - 1:
        raise PoolSizeError(f"The entry pool must be built on a pool of size {n_users - 1}, not {target.size}")

    everyone = ParticipantSet(range(n_users))
    entry_pool = Pool(n_users)
    entry_pool.add(everyone, _build_subset_tree(ctx, target, everyone, scripts))
    return entry_pool


def build_ladder(ctx: PoolContext, addresses: List[str]) -> PoolLadder:
    """
    Builds all the pools for the participants withdrawing to `addresses`, from the exit pool up to the entry pool.

    Raises:
        PoolSizeError: If there are fewer than MIN_POOL_USERS participants.
    """

    n_users = len(addresses)
    if n_users < MIN_POOL_USERS:
        raise PoolSizeError(f"Pool must have at least {MIN_POOL_USERS} users")
    if n_users > MAX_RECOMMENDED_POOL_USERS:
        logger.warning("Building a ladder for %d users needs %d CTV hashes, this will take a very long time",
                       n_users, ladder_cost(n_users))

    scripts = [addr_to_script(addr, ctx.network.hrp) for addr in addresses]

    pools: Dict[int, Pool] = {2: build_exit_pool(ctx, scripts)}
    for size in range(3, n_users):
        pools[size] = build_pool(ctx, pools[size - 1], size, scripts)
    pools[n_users] = build_entry_pool(ctx, pools[n_users - 1], scripts)

    ladder = PoolLadder(ctx, scripts, pools)
    logger.info("total taproot addresses across all pools: %d for %d users", ladder.total_trees(), n_users)
    return ladder
