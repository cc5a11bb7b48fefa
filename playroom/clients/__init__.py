"""
playroom.clients
~~~~~~~~~~~~~~~~

外部协作方（钱包、账本）的接口与实现。
"""
from playroom.clients.ledger import InMemoryLedger, LedgerClient, MongoLedger
from playroom.clients.wallet import DebitResult, InMemoryWallet, MongoWallet, WalletClient

__all__ = [
    "DebitResult",
    "InMemoryLedger",
    "InMemoryWallet",
    "LedgerClient",
    "MongoLedger",
    "MongoWallet",
    "WalletClient",
]
