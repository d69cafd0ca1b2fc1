"""burnloop — fee attribution and buy-back-and-burn cycle orchestration.

Watches creator-fee vaults, attributes each deposit to the token mint that
produced it, and periodically runs one buy/burn cycle for an eligible token.

Watcher:      burnloop/watcher/  (balance deltas, attribution)
Cycle:        burnloop/cycle/    (selection, allocation, DLQ, validation, orchestration)
History:      burnloop/chain/    (hash-chained event ledger)
"""

__version__ = "0.3.0"
