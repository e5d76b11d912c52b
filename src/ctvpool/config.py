"""
Constants and network parameters shared by pool construction and spending.

Every amount below is committed to inside the CTV hashes of the pool ladder: changing any of them between
construction and spending makes every leaf unsatisfiable.
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from verystable.rpc import BitcoinRPC, JSONRPCError

from . import NUMS_KEY

logger = logging.getLogger(__name__)

# This could be 240 for P2A, but 1000 works on signet with the hard coded fee
FEE_AMOUNT: int = 1000
DUST_AMOUNT: int = 546
DEFAULT_FEE_RATE: int = 5000  # sat/kvB

# Sent on top of AMOUNT_PER_USER to each user wallet, to cover the fees of the pool funding transaction
INIT_WALLET_AMOUNT_FEE: int = 2000

# Must be 3 or more. Above MAX_RECOMMENDED_POOL_USERS, building the ladder takes a very long time
POOL_USERS: int = 10
MIN_POOL_USERS: int = 3
MAX_RECOMMENDED_POOL_USERS: int = 20

# Has to be more than FEE_AMOUNT + DUST_AMOUNT
AMOUNT_PER_USER: int = 11000

ENABLE_RBF_NO_LOCKTIME: int = 0xfffffffd

# Pay-to-anchor output: OP_1 <0x4e73>
P2A_SCRIPT: bytes = bytes.fromhex("51024e73")


@dataclass(frozen=True)
class NetworkConfig:
    name: str
    hrp: str
    rpc_port: int
    tx_version: int
    fee_anchor_addr: str
    uses_anchor: bool
    wallet_name: str
    anchor_script: bytes = P2A_SCRIPT

    @staticmethod
    def regtest(wallet_name: str = "simple_ctv") -> 'NetworkConfig':
        # v3 transactions with a P2A output, bumped with CPFP
        return NetworkConfig(
            name="regtest",
            hrp="bcrt",
            rpc_port=18443,
            tx_version=3,
            fee_anchor_addr="bcrt1pfeesnyr2tx",
            uses_anchor=True,
            wallet_name=wallet_name,
        )

    @staticmethod
    def signet(wallet_name: str) -> 'NetworkConfig':
        return NetworkConfig(
            name="signet",
            hrp="tb",
            rpc_port=38332,
            tx_version=2,
            fee_anchor_addr="tb1pfees9rn5nz",
            uses_anchor=False,
            wallet_name=wallet_name,
        )

    @staticmethod
    def from_env(name: Optional[str] = None) -> 'NetworkConfig':
        """
        Returns the configuration for the network named `name`, or for the one in the CTVPOOL_NETWORK environment
        variable (defaults to regtest).
        """

        if name is None:
            name = os.getenv("CTVPOOL_NETWORK", "regtest")

        if name == "regtest":
            return NetworkConfig.regtest(os.getenv("REGTEST_WALLET", "simple_ctv"))
        elif name == "signet":
            wallet_name = os.getenv("SIGNET_WALLET")
            if wallet_name is None:
                raise ValueError("SIGNET_WALLET env var not set")
            logger.info("wallet name: %s", wallet_name)
            return NetworkConfig.signet(wallet_name)
        else:
            raise ValueError(f"Unsupported network: {name}")


@dataclass(frozen=True)
class PoolContext:
    """
    Immutable parameters of a pool, passed explicitly to every construction and spending operation.

    Attributes:
        network (NetworkConfig): The network the pool lives on; it determines the transaction version and
            whether an anchor output is added to every pool transaction.
        amount_per_user (int): The contribution of each participant, in satoshis.
        fee_amount (int): The fee deducted from each withdrawal, in satoshis.
        dust_amount (int): The smallest amount accepted for an output.
        internal_pubkey (bytes): The x-only taproot internal key of every locking tree.
    """

    network: NetworkConfig = field(default_factory=NetworkConfig.regtest)
    amount_per_user: int = AMOUNT_PER_USER
    fee_amount: int = FEE_AMOUNT
    dust_amount: int = DUST_AMOUNT
    internal_pubkey: bytes = NUMS_KEY

    def __post_init__(self):
        if self.amount_per_user <= self.fee_amount + self.dust_amount:
            raise ValueError(
                f"amount_per_user ({self.amount_per_user}) must exceed fee_amount + dust_amount "
                f"({self.fee_amount + self.dust_amount})")
        if self.fee_amount < 0:
            raise ValueError("fee_amount cannot be negative")
        if len(self.internal_pubkey) != 32:
            raise ValueError("internal_pubkey must be an x-only pubkey")

    @property
    def tx_version(self) -> int:
        return self.network.tx_version

    def pool_amount(self, n_users: int) -> int:
        """The value locked in a pool with `n_users` participants."""
        return self.amount_per_user * n_users


def _rpc_url(userinfo: str, host: str, network: NetworkConfig) -> str:
    return f"http://{userinfo}@{host}:{network.rpc_port}/wallet/{network.wallet_name}"


def _connect(url: str, network: NetworkConfig) -> BitcoinRPC:
    rpc = BitcoinRPC(net_name=network.name, service_url=url)
    rpc.getbestblockhash()
    return rpc


def bitcoin_rpc(network: NetworkConfig) -> BitcoinRPC:
    """
    Connects to the wallet of a bitcoin node, using the credentials in the environment.

    The BITCOIN_RPC_USER and BITCOIN_RPC_PASS variables are tried first; if they are missing or rejected, the cookie
    file in BITCOIN_RPC_COOKIE_PATH is used instead. On regtest, the wallet is created if it does not exist.

    Raises:
        ValueError: If no credentials are configured, or none of them is accepted by the node.
    """

    rpc_user = os.getenv("BITCOIN_RPC_USER")
    rpc_password = os.getenv("BITCOIN_RPC_PASS")
    cookie_path = os.getenv("BITCOIN_RPC_COOKIE_PATH")
    rpc_host = os.getenv("BITCOIN_RPC_HOST", "localhost")

    logger.info("wallet name in use: %s", network.wallet_name)

    rpc: Optional[BitcoinRPC] = None
    if rpc_user is not None and rpc_password is not None:
        try:
            rpc = _connect(_rpc_url(f"{rpc_user}:{rpc_password}", rpc_host, network), network)
        except Exception as e:
            if cookie_path is None:
                logger.error("UserPass failed and no cookie file was found!")
                raise ValueError(f"RPC authentication failed: {e}") from e
            logger.info("UserPass would not authenticate, trying CookieFile now")
    elif cookie_path is None:
        logger.error("No User/Pass or Cookie found!")
        raise ValueError("No RPC credentials: set BITCOIN_RPC_USER and BITCOIN_RPC_PASS, or BITCOIN_RPC_COOKIE_PATH")

    if rpc is None:
        try:
            cookie = Path(cookie_path).read_text().strip()
            rpc = _connect(_rpc_url(cookie, rpc_host, network), network)
        except Exception as e:
            logger.error("Cookie File authentication failed!: %s", e)
            raise ValueError(f"Cookie file authentication failed: {e}") from e
        logger.info("Cookie File authentication succeeded!")

    if network.name == "regtest":
        try:
            rpc.createwallet(network.wallet_name)
            logger.info("regtest wallet created")
        except JSONRPCError as e:
            logger.debug("createwallet: %s", e)

    try:
        rpc.loadwallet(network.wallet_name)
    except JSONRPCError as e:
        logger.debug("loadwallet: %s", e)

    return rpc
