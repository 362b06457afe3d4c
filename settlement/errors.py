class SettlementError(Exception):
    pass


class ConfigError(SettlementError):
    """Fatal misconfiguration detected at startup."""


class RpcError(SettlementError):
    """Transport-level RPC failure. The only error class that is retried."""


class TransactionReverted(SettlementError):
    def __init__(self, tx_hash: str, message: str = ""):
        super().__init__(message or f"Transaction {tx_hash} reverted")
        self.tx_hash = tx_hash


class InsufficientFundsForGas(SettlementError):
    """Raised before anything is broadcast when a signer cannot cover its gas."""

    def __init__(self, address: str, balance: int, required: int):
        super().__init__(f"{address} holds {balance} wei, needs more than {required} wei reserved for gas")
        self.address = address
        self.balance = balance
        self.required = required


class LiquidityError(SettlementError):
    pass


class SwapError(SettlementError):
    pass


class SplitError(SettlementError):
    pass


class SignatureError(SettlementError):
    pass


class LedgerError(SettlementError):
    pass
