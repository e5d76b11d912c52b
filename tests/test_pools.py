import pytest

from ctvpool.config import NetworkConfig, PoolContext
from ctvpool.ctv import calc_ctv_hash
from ctvpool.errors import MissingSubpoolError, PoolSizeError
from ctvpool.pools import (Combinations, ParticipantSet, Pool, build_exit_pool, build_ladder, build_pool,
                           ladder_cost)
from ctvpool.utils import addr_to_script

from test_utils import user_addresses


def test_participant_set():
    s = ParticipantSet([3, 1, 2, 1])

    assert list(s) == [1, 2, 3]
    assert s == ParticipantSet([1, 2, 3])
    assert hash(s) == hash(ParticipantSet((2, 3, 1)))
    assert s.lowest == 1
    assert s.without(2) == ParticipantSet([1, 3])

    with pytest.raises(ValueError):
        s.without(0)
    with pytest.raises(ValueError):
        ParticipantSet([0, -1])
    with pytest.raises(ValueError):
        ParticipantSet().lowest


def test_combinations():
    combos = Combinations(4, 2)

    assert len(combos) == 6
    assert list(combos) == [ParticipantSet(c) for c in [(0, 1), (0, 2), (0, 3), (1, 2), (1, 3), (2, 3)]]
    # can be iterated again
    assert len(list(combos)) == 6

    assert list(Combinations(3, 3)) == [ParticipantSet([0, 1, 2])]
    assert list(Combinations(2, 3)) == []
    assert len(Combinations(10, 5)) == 252

    with pytest.raises(ValueError):
        Combinations(-1, 2)


def test_ladder_3_users(ctx: PoolContext):
    addresses = user_addresses(3)
    scripts = [addr_to_script(addr) for addr in addresses]
    A, F = ctx.amount_per_user, ctx.fee_amount

    ladder = build_ladder(ctx, addresses)

    assert ladder.n_users == 3
    assert ladder.sizes == [2, 3]
    assert len(ladder.exit_pool) == 3
    assert len(ladder.entry_pool) == 1
    assert ladder.total_trees() == 4

    entry = ladder.entry_tree
    assert len(entry) == 3
    assert entry.depths == [2, 2, 1]

    # user 0 leaves the entry pool, locking the rest into the exit tree of {1, 2}
    leaf = entry.leaf_for(0)
    assert [out.nValue for out in leaf.outputs] == [2 * A, A - F, F]
    assert leaf.outputs[0].scriptPubKey == ladder.exit_pool[[1, 2]].scriptPubKey
    assert leaf.outputs[1].scriptPubKey == scripts[0]
    assert leaf.outputs[2].scriptPubKey == ctx.network.anchor_script

    # the exit tree of {1, 2} pays both users
    exit_tree = ladder[2][[2, 1]]
    assert len(exit_tree) == 1
    [exit_leaf] = exit_tree.leaves
    assert exit_leaf.participant == 1
    assert [out.nValue for out in exit_leaf.outputs] == [A, A - F, F]
    assert [out.scriptPubKey for out in exit_leaf.outputs[:2]] == [scripts[1], scripts[2]]


def test_ladder_4_users(ctx: PoolContext):
    ladder = build_ladder(ctx, user_addresses(4))

    assert ladder.sizes == [2, 3, 4]
    assert [len(pool) for pool in ladder] == [6, 4, 1]
    assert ladder.total_trees() == 11

    for participants, tree in ladder[3].items():
        assert len(tree) == 3
        for user in participants:
            leaf = tree.leaf_for(user)
            assert leaf.outputs[0].scriptPubKey == ladder[2][participants.without(user)].scriptPubKey


@pytest.mark.parametrize("n_users", [3, 4, 6])
def test_ladder_amounts_and_hashes(ctx: PoolContext, n_users: int):
    ladder = build_ladder(ctx, user_addresses(n_users))

    n_leaves = 0
    for pool in ladder:
        for participants, tree in pool.items():
            for leaf in tree.leaves:
                n_leaves += 1
                # the anchor carries the fee: nothing is left to the miners
                assert leaf.total_amount == ctx.pool_amount(len(participants))
                assert leaf.ctv_hash == calc_ctv_hash(leaf.outputs, tx_version=3)
                assert leaf.participant in participants

    assert n_leaves == ladder_cost(n_users)


def test_ladder_signet():
    ctx = PoolContext(network=NetworkConfig.signet("w"))
    ladder = build_ladder(ctx, user_addresses(4, hrp="tb"))

    assert ladder.entry_tree.get_address("tb").startswith("tb1p")
    for pool in ladder:
        for participants, tree in pool.items():
            for leaf in tree.leaves:
                assert len(leaf.outputs) == 2
                assert leaf.total_amount == ctx.pool_amount(len(participants)) - ctx.fee_amount
                assert leaf.ctv_hash == calc_ctv_hash(leaf.outputs, tx_version=2)


def test_ladder_is_deterministic(ctx: PoolContext):
    addresses = user_addresses(5)

    assert build_ladder(ctx, addresses).entry_tree.scriptPubKey == build_ladder(ctx, addresses).entry_tree.scriptPubKey
    assert build_ladder(ctx, addresses).entry_tree.scriptPubKey != build_ladder(ctx, addresses[::-1]).entry_tree.scriptPubKey


def test_ladder_too_small(ctx: PoolContext):
    with pytest.raises(PoolSizeError):
        build_ladder(ctx, user_addresses(2))


def test_ladder_wrong_network(ctx: PoolContext):
    with pytest.raises(ValueError):
        build_ladder(ctx, user_addresses(3, hrp="tb"))


def test_ladder_missing_size(ctx: PoolContext):
    ladder = build_ladder(ctx, user_addresses(3))

    with pytest.raises(PoolSizeError):
        ladder[4]
    with pytest.raises(MissingSubpoolError):
        ladder[2][[0, 5]]


def test_build_pool_missing_subpool(ctx: PoolContext):
    scripts = [addr_to_script(addr) for addr in user_addresses(4)]
    exit_pool = build_exit_pool(ctx, scripts)

    partial = Pool(2)
    for participants, tree in exit_pool.items():
        if participants != ParticipantSet([2, 3]):
            partial.add(participants, tree)

    with pytest.raises(MissingSubpoolError) as exc_info:
        build_pool(ctx, partial, 3, scripts)

    assert isinstance(exc_info.value, KeyError)
    assert exc_info.value.participants == ParticipantSet([2, 3])
    assert exc_info.value.size == 2

    # the complete pool works
    assert len(build_pool(ctx, exit_pool, 3, scripts)) == 4


def test_build_pool_wrong_target(ctx: PoolContext):
    scripts = [addr_to_script(addr) for addr in user_addresses(4)]
    exit_pool = build_exit_pool(ctx, scripts)

    with pytest.raises(PoolSizeError):
        build_pool(ctx, exit_pool, 4, scripts)


def test_pool_add_wrong_size(ctx: PoolContext):
    ladder = build_ladder(ctx, user_addresses(3))

    with pytest.raises(ValueError):
        Pool(3).add(ParticipantSet([0, 1]), ladder.exit_pool[[0, 1]])
