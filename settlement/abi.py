"""
Minimal ABI layer: call data and log decoding for the handful of contracts the pipeline talks to.
Functions are referenced by their canonical signature, e.g. ``"transfer(address,uint256)"``.
"""

from typing import Any, List, Sequence, Tuple

from eth_abi import decode, encode
from eth_utils import function_signature_to_4byte_selector, keccak, to_checksum_address

# ERC-20 / WETH9
ERC20_TRANSFER = "transfer(address,uint256)"
ERC20_APPROVE = "approve(address,uint256)"
ERC20_BALANCE_OF = "balanceOf(address)"
ERC20_NAME = "name()"
ERC20_VERSION = "version()"
WETH_DEPOSIT = "deposit()"

# EIP-3009
TRANSFER_WITH_AUTHORIZATION = (
    "transferWithAuthorization(address,address,uint256,uint256,uint256,bytes32,uint8,bytes32,bytes32)"
)

# Uniswap V2 style factory / pair
V2_GET_PAIR = "getPair(address,address)"
V2_TOKEN0 = "token0()"
V2_GET_RESERVES = "getReserves()"
V2_SWAP = "swap(uint256,uint256,address,bytes)"

# Uniswap V3 style factory / pool / SwapRouter02 / QuoterV2
V3_GET_POOL = "getPool(address,address,uint24)"
V3_LIQUIDITY = "liquidity()"
ROUTER_FACTORY = "factory()"
ROUTER_WETH9 = "WETH9()"
ROUTER_EXACT_INPUT_SINGLE = "exactInputSingle((address,address,uint24,address,uint256,uint256,uint160))"
QUOTER_EXACT_INPUT_SINGLE = "quoteExactInputSingle((address,address,uint256,uint24,uint160))"

# One-shot swap-and-distribute contract
ONESHOT_SWAP_NATIVE = "swapEthToUsdcAndDistribute(address,address,uint16,address,address,uint24)"
ONESHOT_SWAP_ERC20 = "swapErc20ToUsdcAndDistribute(address,uint256,address,address,uint16,address,uint24)"
ONESHOT_EVENT = "SwapAndSplitExecuted(address,address,address,uint256,uint256)"

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def arg_types(signature: str) -> List[str]:
    """Split the top-level argument types out of a function signature."""
    inner = signature[signature.index("(") + 1:signature.rindex(")")]
    types, depth, current = [], 0, ""
    for ch in inner:
        if ch == "," and depth == 0:
            types.append(current)
            current = ""
            continue
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        current += ch
    if current:
        types.append(current)
    return types


def selector(signature: str) -> bytes:
    return function_signature_to_4byte_selector(signature)


def encode_call(signature: str, *args: Any) -> bytes:
    return selector(signature) + encode(arg_types(signature), list(args))


def decode_call_args(signature: str, data: bytes) -> Tuple[Any, ...]:
    return decode(arg_types(signature), bytes(data)[4:])


def decode_result(types: Sequence[str], data: bytes) -> Tuple[Any, ...]:
    return decode(list(types), bytes(data))


def encode_result(types: Sequence[str], values: Sequence[Any]) -> bytes:
    return encode(list(types), list(values))


def event_topic(signature: str) -> bytes:
    return keccak(text=signature)


def checksum(address: str) -> str:
    return to_checksum_address(address)


def same_address(a: str, b: str) -> bool:
    return bool(a) and bool(b) and a.lower() == b.lower()
