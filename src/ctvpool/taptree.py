from dataclasses import dataclass
from typing import List, Tuple, Union

from verystable.core import script
from verystable.core.messages import CTxOut
from verystable.core.script import CScript, TaprootInfo
from verystable.core.segwit_addr import encode_segwit_address

from .ctv import ctv_script
from .errors import MissingLeafError, TreeConstructionError

# Maximum depth of a leaf in a taptree (BIP-341)
TAPROOT_CONTROL_MAX_NODE_COUNT = 128

Tapleaf = Tuple[str, Union[CScript, bytes]]
TaptreeDescription = Union[List[Tapleaf], List['TaptreeDescription']]


def ceil_lg(n: int) -> int:
    """Return ceiling(log_2(n)) for a positive integer `n`."""

    assert n > 0

    r = 0
    t = 1
    while t < n:
        t = 2 * t
        r = r + 1
    return r


def leaf_depths(n_leaves: int) -> List[int]:
    """
    Returns the depth of each of `n_leaves` leaves in a balanced taptree.

    All the leaves are at depth ceil(log_2(n_leaves)), except the last 2^depth - n_leaves ones, which are promoted
    one level up so that the tree is complete.
    """

    if n_leaves < 0:
        raise ValueError("The number of leaves cannot be negative")
    if n_leaves == 0:
        return []

    height = ceil_lg(n_leaves)
    depths = [height] * n_leaves

    excess = (1 << height) - n_leaves
    for i in range(excess):
        depths[n_leaves - 1 - i] = height - 1

    return depths


def taptree_from_depths(leaves: List[Tapleaf], depths: List[int]) -> TaptreeDescription:
    """
    Places the leaves left to right at the given depths, and returns the nested description of the resulting tree,
    where every branch is a list with exactly two children.

    Raises:
        TreeConstructionError: If a depth is out of range, or if the depths do not describe a complete binary tree.
    """

    if len(leaves) != len(depths):
        raise TreeConstructionError("Each leaf needs exactly one depth")
    if len(leaves) == 0:
        raise TreeConstructionError("A taptree needs at least one leaf")

    # subtrees whose sibling is not known yet, with the depth of their root
    stack: List[Tuple[int, TaptreeDescription]] = []

    for leaf, depth in zip(leaves, depths):
        if not (0 <= depth <= TAPROOT_CONTROL_MAX_NODE_COUNT):
            raise TreeConstructionError(f"Invalid depth {depth} for leaf {leaf[0]}")
        if len(stack) > 0 and stack[-1][0] > depth:
            raise TreeConstructionError(f"Leaf {leaf[0]} at depth {depth} hides a pending subtree at depth {stack[-1][0]}")

        node: TaptreeDescription = leaf
        while len(stack) > 0 and stack[-1][0] == depth:
            if depth == 0:
                raise TreeConstructionError("The tree is already complete")
            _, left = stack.pop()
            node = [left, node]
            depth -= 1
        stack.append((depth, node))

    if len(stack) != 1 or stack[0][0] != 0:
        raise TreeConstructionError("The depths do not describe a complete tree")

    root = stack[0][1]
    # a single leaf is given to taproot_construct wrapped in a list
    return [root] if isinstance(root, tuple) else root


@dataclass
class ExitLeaf:
    """
    One admissible way of spending a locking tree: the withdrawal of `participant`, committed via the CTV hash of
    the exact `outputs` of the spending transaction.
    """

    participant: int
    outputs: List[CTxOut]
    ctv_hash: bytes

    @property
    def name(self) -> str:
        return f"exit_{self.participant}"

    @property
    def script(self) -> CScript:
        return ctv_script(self.ctv_hash)

    @property
    def total_amount(self) -> int:
        return sum(out.nValue for out in self.outputs)

    def __repr__(self):
        return f"{self.__class__.__name__}(participant={self.participant}, ctv_hash={self.ctv_hash.hex()})"


class LockingTree:
    """
    A taproot output whose only spending paths are the scripts of its ExitLeaf list.

    The leaves are placed at the depths given by `leaf_depths`, and the tree is committed to the internal key,
    which must be a point with no known private key.
    """

    def __init__(self, leaves: List[ExitLeaf], internal_pubkey: bytes):
        if len(internal_pubkey) != 32:
            raise TreeConstructionError("The internal key must be an x-only pubkey")

        names = [leaf.name for leaf in leaves]
        if len(set(names)) != len(names):
            raise TreeConstructionError("Each participant can only have one leaf")

        self.leaves = leaves
        self.internal_pubkey = internal_pubkey
        self.depths = leaf_depths(len(leaves))

        taptree = taptree_from_depths([(leaf.name, leaf.script) for leaf in leaves], self.depths)
        try:
            self.tr_info: TaprootInfo = script.taproot_construct(internal_pubkey, taptree)
        except (AssertionError, TypeError) as e:
            raise TreeConstructionError(f"Could not compute the output key: {e}") from e

        self._leaves_dict = {leaf.participant: leaf for leaf in leaves}

    @property
    def output_pubkey(self) -> bytes:
        return self.tr_info.output_pubkey

    @property
    def merkle_root(self) -> bytes:
        return self.tr_info.merkle_root

    @property
    def scriptPubKey(self) -> bytes:
        return bytes(self.tr_info.scriptPubKey)

    def get_address(self, hrp: str = "bcrt") -> str:
        return encode_segwit_address(hrp, 1, self.output_pubkey)

    def leaf_for(self, participant: int) -> ExitLeaf:
        leaf = self._leaves_dict.get(participant)
        if leaf is None:
            raise MissingLeafError(f"No leaf for participant {participant} in {self}")
        return leaf

    def control_block(self, leaf: ExitLeaf) -> bytes:
        if leaf.name not in self.tr_info.leaves:
            raise MissingLeafError(f"Leaf {leaf.name} is not in {self}")
        leaf_info = self.tr_info.leaves[leaf.name]
        return bytes([leaf_info.version + self.tr_info.negflag]) + self.tr_info.internal_pubkey + leaf_info.merklebranch

    def __len__(self) -> int:
        return len(self.leaves)

    def __repr__(self):
        return f"{self.__class__.__name__}(leaves={[leaf.participant for leaf in self.leaves]}, output_pubkey={self.output_pubkey.hex()})"
