from typing import List

from verystable.core.messages import sha256
from verystable.core.segwit_addr import encode_segwit_address
from verystable.rpc import BitcoinRPC


def mine_blocks(rpc: BitcoinRPC, n_blocks: int) -> List[str]:
    address = rpc.getnewaddress()
    return rpc.generatetoaddress(n_blocks, address)


def user_addresses(n: int, hrp: str = "bcrt") -> List[str]:
    """Deterministic P2WPKH addresses, one per user."""
    return [encode_segwit_address(hrp, 0, sha256(bytes([i]))[:20]) for i in range(n)]
