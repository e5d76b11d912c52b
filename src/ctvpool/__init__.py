# point with provably unknown private key
NUMS_KEY: bytes = bytes.fromhex("50929b74c1a04954b78b4b6035e97a5e078a5a0f28ec96d547bfee9ace803ac0")

from .config import NetworkConfig, PoolContext, bitcoin_rpc  # noqa: E402
from .ctv import OP_CHECKTEMPLATEVERIFY, calc_ctv_hash, ctv_script  # noqa: E402
from .errors import (  # noqa: E402
    ConstructionError,
    FundingError,
    InsufficientFundsError,
    MissingLeafError,
    MissingSubpoolError,
    PoolError,
    PoolSizeError,
    ProofError,
    TreeConstructionError,
)
from .manager import PoolManager  # noqa: E402
from .pools import Combinations, ParticipantSet, Pool, PoolLadder, build_ladder  # noqa: E402
from .spend import SpendStep, initial_step, next_spend  # noqa: E402
from .taptree import ExitLeaf, LockingTree, leaf_depths  # noqa: E402
from .wallet import Coin, PoolWallet  # noqa: E402
