from fractions import Fraction

import pytest

from verystable.core.key import TaggedHash, tweak_add_pubkey
from verystable.core.messages import ser_string

from ctvpool import NUMS_KEY
from ctvpool.config import PoolContext
from ctvpool.ctv import calc_ctv_hash, withdraw_outputs
from ctvpool.errors import MissingLeafError, TreeConstructionError
from ctvpool.taptree import ExitLeaf, LockingTree, leaf_depths, taptree_from_depths
from ctvpool.utils import addr_to_script

from test_utils import user_addresses


def make_leaves(n: int):
    ctx = PoolContext()
    scripts = [addr_to_script(addr) for addr in user_addresses(n + 1)]
    leaves = []
    for i in range(n):
        outputs = withdraw_outputs(ctx, scripts[n], scripts[i], ctx.amount_per_user)
        leaves.append(ExitLeaf(i, outputs, calc_ctv_hash(outputs, tx_version=ctx.tx_version)))
    return leaves


def test_leaf_depths_small():
    assert leaf_depths(0) == []
    assert leaf_depths(1) == [0]
    assert leaf_depths(2) == [1, 1]
    assert leaf_depths(3) == [2, 2, 1]
    assert leaf_depths(4) == [2, 2, 2, 2]
    assert leaf_depths(5) == [3, 3, 2, 2, 2]

    with pytest.raises(ValueError):
        leaf_depths(-1)


def test_leaf_depths_describe_complete_trees():
    for n in range(1, 70):
        depths = leaf_depths(n)

        assert len(depths) == n
        assert sum(Fraction(1, 2**d) for d in depths) == 1
        assert max(depths) - min(depths) <= 1
        assert depths == sorted(depths, reverse=True)


def test_taptree_from_depths():
    a, b, c, d = ("a", b"\x51"), ("b", b"\x52"), ("c", b"\x53"), ("d", b"\x54")

    assert taptree_from_depths([a], [0]) == [a]
    assert taptree_from_depths([a, b], [1, 1]) == [a, b]
    assert taptree_from_depths([a, b, c], [2, 2, 1]) == [[a, b], c]
    assert taptree_from_depths([a, b, c], [1, 2, 2]) == [a, [b, c]]
    assert taptree_from_depths([a, b, c, d], [2, 2, 2, 2]) == [[a, b], [c, d]]


@pytest.mark.parametrize("depths", [
    [1],  # incomplete
    [0, 0],  # a second root
    [2, 1, 2],  # the second leaf would hide the sibling of the first one
    [129],
    [-1],
    [1, 1, 1],
])
def test_taptree_from_depths_invalid(depths):
    leaves = [(f"l{i}", bytes([0x51])) for i in range(len(depths))]
    with pytest.raises(TreeConstructionError):
        taptree_from_depths(leaves, depths)


def test_taptree_from_depths_mismatched_lengths():
    with pytest.raises(TreeConstructionError):
        taptree_from_depths([("a", b"\x51")], [0, 1])
    with pytest.raises(TreeConstructionError):
        taptree_from_depths([], [])


def test_locking_tree_commitments():
    leaves = make_leaves(5)
    tree = LockingTree(leaves, NUMS_KEY)

    assert len(tree) == 5
    assert tree.depths == [3, 3, 2, 2, 2]
    assert tree.get_address().startswith("bcrt1p")
    assert tree.scriptPubKey == bytes([0x51, 32]) + tree.output_pubkey

    for leaf, depth in zip(leaves, tree.depths):
        leaf_hash = TaggedHash("TapLeaf", bytes([0xc0]) + ser_string(bytes(leaf.script)))
        control_block = tree.control_block(leaf)

        assert control_block[1:33] == NUMS_KEY
        assert len(control_block) == 33 + 32 * depth

        # walk up the merkle branch in the control block
        h = leaf_hash
        for i in range(depth):
            sibling = control_block[33 + 32 * i: 65 + 32 * i]
            h = TaggedHash("TapBranch", min(h, sibling) + max(h, sibling))
        assert h == tree.merkle_root

    tweaked, negated = tweak_add_pubkey(NUMS_KEY, TaggedHash("TapTweak", NUMS_KEY + tree.merkle_root))
    assert tweaked == tree.output_pubkey
    assert tree.control_block(leaves[0])[0] == 0xc0 + int(negated)


def test_control_block_layout():
    leaves = make_leaves(3)
    tree = LockingTree(leaves, NUMS_KEY)

    for leaf in leaves:
        leaf_info = tree.tr_info.leaves[leaf.name]
        control_block = tree.control_block(leaf)

        # leaf version and parity, internal key, merkle branch
        assert control_block == bytes([0xc0 | tree.tr_info.negflag]) + NUMS_KEY + leaf_info.merklebranch
        assert bytes(leaf_info.script) == bytes(leaf.script)


def test_locking_tree_single_leaf():
    [leaf] = make_leaves(1)
    tree = LockingTree([leaf], NUMS_KEY)

    assert tree.depths == [0]
    assert tree.merkle_root == TaggedHash("TapLeaf", bytes([0xc0]) + ser_string(bytes(leaf.script)))
    assert tree.control_block(leaf)[1:] == NUMS_KEY


def test_locking_tree_lookup():
    leaves = make_leaves(3)
    tree = LockingTree(leaves, NUMS_KEY)

    assert tree.leaf_for(1) is leaves[1]
    with pytest.raises(MissingLeafError):
        tree.leaf_for(3)

    [other] = make_leaves(1)
    other.participant = 7
    with pytest.raises(MissingLeafError):
        tree.control_block(other)


def test_locking_tree_invalid():
    leaves = make_leaves(2)

    with pytest.raises(TreeConstructionError):
        LockingTree([leaves[0], leaves[0]], NUMS_KEY)
    with pytest.raises(TreeConstructionError):
        LockingTree(leaves, NUMS_KEY[:31])
    with pytest.raises(TreeConstructionError):
        LockingTree([], NUMS_KEY)


def test_locking_tree_is_deterministic():
    assert LockingTree(make_leaves(4), NUMS_KEY).output_pubkey == LockingTree(make_leaves(4), NUMS_KEY).output_pubkey
    assert LockingTree(make_leaves(4), NUMS_KEY).output_pubkey != LockingTree(make_leaves(3), NUMS_KEY).output_pubkey
