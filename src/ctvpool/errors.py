"""
Exceptions raised while building and spending exit pools.

Construction and proof errors mean the pool ladder is inconsistent; they are never retried.
Funding errors are about the state of the chain or of the wallet, and are reported to the caller.
"""


class PoolError(Exception):
    """Base class for all the errors raised by ctvpool."""


class ConstructionError(PoolError):
    """The pool ladder could not be built consistently."""


class TreeConstructionError(ConstructionError):
    """Invalid leaf depths, or the taproot output key could not be computed."""


class MissingSubpoolError(ConstructionError, KeyError):
    """A pool was built against a smaller pool that lacks a required participant set."""

    def __init__(self, participants, size: int):
        super().__init__(f"No tree for participants {list(participants)} in the pool of size {size}")
        self.participants = participants
        self.size = size

    def __str__(self):
        return self.args[0]


class PoolSizeError(ConstructionError):
    """Degenerate number of participants."""


class ProofError(PoolError):
    """The material to spend a leaf of a locking tree is not available."""


class MissingLeafError(ProofError):
    """The expected leaf does not exist in the locking tree."""


class FundingError(PoolError):
    """The on-chain funds do not match what the pool expects."""


class InsufficientFundsError(FundingError):
    """Not enough value to cover an amount plus its fees."""
