"""
ERC-20 transfer calldata for agents.

A token transfer is submitted as an intent to the token contract with value "0" and this
calldata in `data`.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from eth_abi import encode
from web3 import Web3

from common.errors import InvalidIntent
from core.chains import normalize_chain


@dataclass(frozen=True)
class TokenInfo:
    symbol: str
    address: str
    decimals: int


KNOWN_TOKENS: Dict[str, Dict[str, TokenInfo]] = {
    "base": {
        "usdc": TokenInfo("USDC", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6),
        "dai": TokenInfo("DAI", "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb", 18),
        "weth": TokenInfo("WETH", "0x4200000000000000000000000000000000000006", 18),
        "usdt": TokenInfo("USDT", "0xfde4C96c8593536E31F229EA8f37b2ADa2699bb2", 6),
    },
    "ethereum": {
        "usdc": TokenInfo("USDC", "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6),
        "usdt": TokenInfo("USDT", "0xdAC17F958D2ee523a2206206994597C13D831ec7", 6),
        "dai": TokenInfo("DAI", "0x6B175474E89094C44Da98b954EedeAC495271d0F", 18),
        "weth": TokenInfo("WETH", "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2", 18),
    },
}

TRANSFER_SELECTOR = bytes(Web3.keccak(text="transfer(address,uint256)")[:4])


def resolve_token(chain: str, token: str) -> TokenInfo:
    chain_tokens = KNOWN_TOKENS.get(normalize_chain(chain))
    if not chain_tokens:
        raise InvalidIntent(
            f"No token registry for chain: {chain}.",
            {"chain": chain, "supported_chains": sorted(KNOWN_TOKENS)},
        )
    info = chain_tokens.get((token or "").strip().lower())
    if info is None:
        raise InvalidIntent(
            f"Unknown token: {token} on {chain}.",
            {"token": token, "supported": sorted(chain_tokens)},
        )
    return info


def to_base_units(amount: str, decimals: int) -> int:
    try:
        d = Decimal(str(amount).strip())
    except InvalidOperation:
        raise InvalidIntent(f"Invalid token amount: {amount}", {"amount": amount})
    if not d.is_finite() or d < 0:
        raise InvalidIntent(f"Invalid token amount: {amount}", {"amount": amount})
    scaled = d.scaleb(decimals)
    if scaled != scaled.to_integral_value():
        raise InvalidIntent(
            f"Amount {amount} has more than {decimals} decimal places.",
            {"amount": amount, "decimals": decimals},
        )
    return int(scaled)


def encode_token_transfer(*, chain: str, token: str, to: str, amount: str) -> Dict[str, Any]:
    info = resolve_token(chain, token)
    if not Web3.is_address(to):
        raise InvalidIntent(f"Invalid recipient address: {to}. Must be a 0x-prefixed address.", {"to": to})
    amount_units = to_base_units(amount, info.decimals)
    calldata = TRANSFER_SELECTOR + encode(["address", "uint256"], [Web3.to_checksum_address(to), amount_units])
    return {
        "token_contract": info.address,
        "token_symbol": info.symbol,
        "decimals": info.decimals,
        "recipient": to,
        "amount": str(amount),
        "amount_base_units": str(amount_units),
        "calldata": "0x" + calldata.hex(),
    }
