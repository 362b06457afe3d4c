"""Stable-token payouts from the treasury signer."""

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional, Union

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_utils import is_address

from . import abi
from .config import Config
from .errors import InsufficientFundsForGas, SettlementError
from .gas import GAS_ERC20_TRANSFER, gas_cost
from .hd import HDKeyring
from .rpc import ChainClient, TxRequest

logger = logging.getLogger(__name__)


def treasury_signer(keyring: Optional[HDKeyring] = None) -> LocalAccount:
    """Treasury private key when configured, otherwise the treasury derivation index."""
    if Config.TREASURY_PRIVATE_KEY:
        return Account.from_key(Config.TREASURY_PRIVATE_KEY)
    keyring = keyring or HDKeyring()
    return keyring.derive_signer(Config.TREASURY_DERIVATION_INDEX).account


def to_raw(amount: Union[str, int, Decimal], decimals: int) -> int:
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}")
    raw = value * (Decimal(10) ** decimals)
    if raw != raw.to_integral_value():
        raise ValueError(f"{amount} has more than {decimals} decimals")
    if raw <= 0:
        raise ValueError("Withdrawal amount must be positive")
    return int(raw)


async def send_withdrawal(client: ChainClient, to: str, amount: Union[str, int, Decimal],
                          signer: Optional[LocalAccount] = None, wait: bool = True) -> str:
    if not is_address(to):
        raise ValueError(f"Invalid recipient address: {to}")
    chain = client.chain
    amount_raw = to_raw(amount, chain.stable_decimals)
    signer = signer or treasury_signer()

    held = await client.token_balance(chain.stable_token, signer.address)
    if held < amount_raw:
        raise SettlementError(f"Treasury {signer.address} holds {held}, withdrawal needs {amount_raw}")
    fee = await client.fee_data()
    required = gas_cost(GAS_ERC20_TRANSFER, fee)
    balance = await client.get_balance(signer.address)
    if balance < required:
        raise InsufficientFundsForGas(signer.address, balance, required)

    tx = TxRequest(chain.stable_token, abi.encode_call(abi.ERC20_TRANSFER, abi.checksum(to), amount_raw),
                   0, GAS_ERC20_TRANSFER, "withdrawal")
    if wait:
        tx_hash = (await client.transact(signer, tx, fee))["transactionHash"]
    else:
        tx_hash = await client.send_transaction(signer, tx, fee)
    logger.info("[%s] withdrawal of %s to %s: %s", chain.key, amount, to, tx_hash)
    return tx_hash
