from decimal import Decimal
from typing import Union

from verystable.core.messages import CTransaction
from verystable.core.script import CScript, CScriptNum
from verystable.core.segwit_addr import decode_segwit_address, encode_segwit_address

COIN = 100_000_000


def addr_to_script(addr: str, hrp: str = "bcrt") -> bytes:
    """Returns the scriptPubKey of a segwit or taproot address for the network with the given human readable part."""

    wit_ver, wit_prog = decode_segwit_address(hrp, addr)

    if wit_ver is None or wit_prog is None:
        raise ValueError(f"Invalid segwit address (or wrong network): {addr}")

    return bytes([
        wit_ver + (0x50 if wit_ver > 0 else 0),
        len(wit_prog),
        *wit_prog
    ])


def script_to_addr(script_pub_key: bytes, hrp: str = "bcrt") -> str:
    script_pub_key = bytes(script_pub_key)
    if len(script_pub_key) < 4 or script_pub_key[1] != len(script_pub_key) - 2:
        raise ValueError(f"Not a witness program: {script_pub_key.hex()}")

    wit_ver = script_pub_key[0] - 0x50 if script_pub_key[0] else 0
    return encode_segwit_address(hrp, wit_ver, script_pub_key[2:])


def btc_to_sats(value: Union[Decimal, float, str, int]) -> int:
    """Converts an amount in BTC, as returned by the RPC, to satoshis."""
    return int((Decimal(str(value)) * COIN).to_integral_value())


def sats_to_btc(amount: int) -> str:
    return f"{Decimal(amount) / COIN:.8f}"


# stolen from jamesob: https://github.com/bitcoin/bitcoin/pull/28550
def _pprint_tx(tx: CTransaction) -> str:
    s = f"CTransaction: (nVersion={tx.nVersion}, {len(tx.serialize())} bytes)\n"
    s += "  vin:\n"
    for i, inp in enumerate(tx.vin):
        s += f"    - [{i}] {inp}\n"
    s += "  vout:\n"
    for i, out in enumerate(tx.vout):
        s += f"    - [{i}] {out}\n"

    s += "  witnesses:\n"
    for i, wit in enumerate(tx.wit.vtxinwit):
        witbytes = sum(len(s) or 1 for s in wit.scriptWitness.stack)
        s += f"    - [{i}] ({witbytes} bytes, {witbytes / 4} vB)\n"
        for j, item in enumerate(wit.scriptWitness.stack):
            if type(item) is bytes:
                scriptstr = repr(CScript([item]))
            elif type(item) in {CScript, CScriptNum}:
                scriptstr = repr(item)
            else:
                raise NotImplementedError

            s += f"      - [{i}.{j}] ({len(item)} bytes) {scriptstr}\n"

    s += f"  nLockTime: {tx.nLockTime}\n"
    return s


def format_tx_markdown(tx: CTransaction, title: str) -> str:
    return f'''
<details><summary>{title} <i>({tx.get_vsize()} vB)</i></summary>

```python
{_pprint_tx(tx)}
```

</details>

'''
