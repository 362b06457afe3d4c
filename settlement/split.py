"""
Proceeds splitter
-----------------
Divides a stable-token amount between the treasury and the fee recipient. ``direct`` mode sends two
ERC-20 transfers signed by the depositor. ``gasless`` mode has the depositor sign EIP-3009
``transferWithAuthorization`` messages that the sponsor verifies and relays, paying the gas itself.
A failed gasless relay raises; it never falls back to funding the depositor.
"""

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from eth_abi.exceptions import DecodingError
from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_account.signers.local import LocalAccount
from web3.exceptions import ContractLogicError

from . import abi
from .config import BPS_DENOMINATOR
from .errors import RpcError, SettlementError, SignatureError, SplitError
from .gas import GAS_AUTHORIZED_TRANSFER, GAS_ERC20_TRANSFER
from .rpc import ChainClient, TxRequest

logger = logging.getLogger(__name__)

AUTHORIZATION_VALIDITY_SECONDS = 600
DEFAULT_DOMAIN_NAME = "USD Coin"
DEFAULT_DOMAIN_VERSION = "2"

SPLIT_DIRECT = "direct"
SPLIT_GASLESS = "gasless"


def compute_split(amount: int, bps_treasury: int, bps_fee: int) -> Tuple[int, int]:
    """``(treasury_amount, fee_amount)``; the fee side absorbs the rounding remainder, nothing is lost."""
    if bps_treasury < 0 or bps_fee < 0 or bps_treasury + bps_fee != BPS_DENOMINATOR:
        raise ValueError(f"Split bps must be non-negative and add up to {BPS_DENOMINATOR}, "
                         f"got {bps_treasury}/{bps_fee}")
    if amount < 0:
        raise ValueError("Split amount cannot be negative")
    treasury_amount = amount * bps_treasury // BPS_DENOMINATOR
    fee_amount = amount - treasury_amount
    return treasury_amount, fee_amount


@dataclass
class SplitTransfer:
    recipient: str
    amount: int
    tx_hash: Optional[str] = None


@dataclass
class SplitResult:
    treasury: SplitTransfer
    fee: SplitTransfer
    mode: str = SPLIT_DIRECT

    @property
    def treasury_amount(self) -> int:
        return self.treasury.amount

    @property
    def fee_amount(self) -> int:
        return self.fee.amount

    def tx_hashes(self) -> Dict[str, Optional[str]]:
        return {"treasury": self.treasury.tx_hash, "fee": self.fee.tx_hash}

    def pending(self) -> List[Tuple[str, SplitTransfer]]:
        """Non-zero transfers that have not been sent yet, as ``(side, transfer)``."""
        return [(side, transfer) for side, transfer in (("treasury", self.treasury), ("fee", self.fee))
                if transfer.amount > 0 and not transfer.tx_hash]


class DirectSplitter:
    mode = SPLIT_DIRECT

    def __init__(self, client: ChainClient):
        self.client = client

    async def split(self, account: LocalAccount, token: str, amount: int, treasury: str, fee_address: str,
                    bps_treasury: int, bps_fee: int) -> SplitResult:
        treasury_amount, fee_amount = compute_split(amount, bps_treasury, bps_fee)
        result = SplitResult(SplitTransfer(treasury, treasury_amount), SplitTransfer(fee_address, fee_amount))
        return await self.execute(account, token, result)

    async def execute(self, account: LocalAccount, token: str, result: SplitResult,
                      on_transfer: Optional[Callable[[str, str], None]] = None) -> SplitResult:
        # Both transfers share the depositor's nonce sequence.
        for side, transfer in result.pending():
            receipt = await self.client.transact(account, TxRequest(
                token, abi.encode_call(abi.ERC20_TRANSFER, abi.checksum(transfer.recipient), transfer.amount),
                0, GAS_ERC20_TRANSFER, f"{side} share",
            ))
            transfer.tx_hash = receipt["transactionHash"]
            if on_transfer is not None:
                on_transfer(side, transfer.tx_hash)
        logger.info("[%s] split -> treasury %d / fee %d", self.client.key, result.treasury_amount,
                    result.fee_amount)
        return result


@dataclass
class TransferAuthorization:
    token: str
    from_address: str
    to: str
    value: int
    valid_after: int
    valid_before: int
    nonce: bytes
    typed_data: Dict[str, Any] = field(repr=False)
    signature: bytes = b""
    v: int = 0
    r: int = 0
    s: int = 0

    def call_data(self) -> bytes:
        return abi.encode_call(
            abi.TRANSFER_WITH_AUTHORIZATION,
            abi.checksum(self.from_address), abi.checksum(self.to), self.value, self.valid_after,
            self.valid_before, self.nonce, self.v, self.r.to_bytes(32, "big"), self.s.to_bytes(32, "big"),
        )


def authorization_typed_data(token: str, chain_id: int, name: str, version: str, from_address: str, to: str,
                             value: int, valid_after: int, valid_before: int, nonce: bytes) -> Dict[str, Any]:
    return {
        "types": {
            "EIP712Domain": [
                {"name": "name", "type": "string"},
                {"name": "version", "type": "string"},
                {"name": "chainId", "type": "uint256"},
                {"name": "verifyingContract", "type": "address"},
            ],
            "TransferWithAuthorization": [
                {"name": "from", "type": "address"},
                {"name": "to", "type": "address"},
                {"name": "value", "type": "uint256"},
                {"name": "validAfter", "type": "uint256"},
                {"name": "validBefore", "type": "uint256"},
                {"name": "nonce", "type": "bytes32"},
            ],
        },
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": name,
            "version": version,
            "chainId": chain_id,
            "verifyingContract": abi.checksum(token),
        },
        "message": {
            "from": abi.checksum(from_address),
            "to": abi.checksum(to),
            "value": value,
            "validAfter": valid_after,
            "validBefore": valid_before,
            "nonce": "0x" + nonce.hex(),
        },
    }


def sign_authorization(account: LocalAccount, auth: TransferAuthorization) -> TransferAuthorization:
    signed = account.sign_message(encode_typed_data(full_message=auth.typed_data))
    auth.signature = bytes(signed.signature)
    auth.v, auth.r, auth.s = signed.v, signed.r, signed.s
    return auth


def verify_authorization(auth: TransferAuthorization) -> str:
    """Recover the signer of ``auth``; raises :class:`SignatureError` unless it is ``from_address``."""
    if not auth.signature:
        raise SignatureError("Authorization is not signed")
    try:
        signer = Account.recover_message(encode_typed_data(full_message=auth.typed_data), signature=auth.signature)
    except ValueError as e:
        raise SignatureError(f"Malformed authorization signature: {e}") from e
    if not abi.same_address(signer, auth.from_address):
        raise SignatureError(f"Authorization signed by {signer}, expected {auth.from_address}")
    return signer


class GaslessSplitter:
    mode = SPLIT_GASLESS

    def __init__(self, client: ChainClient, sponsor: LocalAccount,
                 validity_seconds: int = AUTHORIZATION_VALIDITY_SECONDS):
        self.client = client
        self.sponsor = sponsor
        self.validity_seconds = validity_seconds

    async def token_domain(self, token: str) -> Tuple[str, str]:
        try:
            (name,) = await self.client.read(token, abi.ERC20_NAME, [], ["string"])
            (version,) = await self.client.read(token, abi.ERC20_VERSION, [], ["string"])
        except (ContractLogicError, DecodingError, RpcError) as e:
            logger.warning("[%s] could not read EIP-712 domain of %s (%s); using %s/%s",
                           self.client.key, token, e, DEFAULT_DOMAIN_NAME, DEFAULT_DOMAIN_VERSION)
            return DEFAULT_DOMAIN_NAME, DEFAULT_DOMAIN_VERSION
        return name, version

    def build_authorization(self, token: str, name: str, version: str, from_address: str, to: str,
                            value: int) -> TransferAuthorization:
        valid_before = int(time.time()) + self.validity_seconds
        nonce = os.urandom(32)
        typed = authorization_typed_data(token, self.client.chain.chain_id, name, version, from_address, to,
                                         value, 0, valid_before, nonce)
        return TransferAuthorization(token, from_address, to, value, 0, valid_before, nonce, typed)

    async def relay(self, auth: TransferAuthorization) -> str:
        verify_authorization(auth)
        receipt = await self.client.transact(self.sponsor, TxRequest(
            auth.token, auth.call_data(), 0, GAS_AUTHORIZED_TRANSFER, "relayed transfer",
        ))
        return receipt["transactionHash"]

    async def _check_sponsor(self, transfers: int):
        fee = await self.client.fee_data()
        required = fee.cost(GAS_AUTHORIZED_TRANSFER * transfers)
        balance = await self.client.get_balance(self.sponsor.address)
        if balance < required:
            raise SplitError(f"Sponsor {self.sponsor.address} cannot pay relay gas ({balance} < {required})")

    async def split(self, account: LocalAccount, token: str, amount: int, treasury: str, fee_address: str,
                    bps_treasury: int, bps_fee: int) -> SplitResult:
        treasury_amount, fee_amount = compute_split(amount, bps_treasury, bps_fee)
        result = SplitResult(SplitTransfer(treasury, treasury_amount), SplitTransfer(fee_address, fee_amount),
                             mode=self.mode)
        return await self.execute(account, token, result)

    async def execute(self, account: LocalAccount, token: str, result: SplitResult,
                      on_transfer: Optional[Callable[[str, str], None]] = None) -> SplitResult:
        pending = result.pending()
        needed = sum(transfer.amount for _, transfer in pending)
        try:
            held = await self.client.token_balance(token, account.address)
            if held < needed:
                raise SplitError(f"{account.address} holds {held} of {token}, split needs {needed}")
            await self._check_sponsor(len(pending))
            name, version = await self.token_domain(token)
            for side, transfer in pending:
                auth = sign_authorization(account, self.build_authorization(
                    token, name, version, account.address, transfer.recipient, transfer.amount,
                ))
                transfer.tx_hash = await self.relay(auth)
                if on_transfer is not None:
                    on_transfer(side, transfer.tx_hash)
        except SplitError:
            raise
        except SettlementError as e:
            raise SplitError(f"Gasless split failed: {e}") from e
        logger.info("[%s] gasless split -> treasury %d / fee %d relayed by %s",
                    self.client.key, result.treasury_amount, result.fee_amount, self.sponsor.address)
        return result
