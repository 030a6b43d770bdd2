from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, Optional

from web3 import Web3

from common.errors import InvalidIntent


@dataclass(frozen=True)
class ChainInfo:
    name: str
    chain_id: int
    rpc_url: str
    explorer: str
    native_symbol: str = "ETH"


# Public endpoints for dev/demo. Production deployments set CHAIN_RPC_<CHAIN>.
CHAINS: Dict[str, ChainInfo] = {
    "ethereum": ChainInfo("ethereum", 1, "https://eth.llamarpc.com", "https://etherscan.io"),
    "base": ChainInfo("base", 8453, "https://mainnet.base.org", "https://basescan.org"),
    "sepolia": ChainInfo("sepolia", 11155111, "https://ethereum-sepolia-rpc.publicnode.com", "https://sepolia.etherscan.io"),
    "base-sepolia": ChainInfo("base-sepolia", 84532, "https://sepolia.base.org", "https://sepolia.basescan.org"),
    "optimism": ChainInfo("optimism", 10, "https://mainnet.optimism.io", "https://optimistic.etherscan.io"),
    "arbitrum": ChainInfo("arbitrum", 42161, "https://arb1.arbitrum.io/rpc", "https://arbiscan.io"),
}


def normalize_chain(chain: str) -> str:
    return (chain or "").strip().lower()


def get_chain(chain: str) -> ChainInfo:
    info = CHAINS.get(normalize_chain(chain))
    if info is None:
        raise InvalidIntent(
            f"Chain '{chain}' is not supported.",
            {"chain": chain, "supported": sorted(CHAINS)},
        )
    return info


def rpc_url_for(chain: str) -> str:
    info = get_chain(chain)
    env_key = "CHAIN_RPC_" + info.name.upper().replace("-", "_")
    return (os.getenv(env_key) or "").strip() or info.rpc_url


def get_web3(chain: str, *, timeout: Optional[float] = None) -> Web3:
    """Get a Web3 instance for the specified chain."""
    kwargs = {"timeout": timeout} if timeout else {}
    return Web3(Web3.HTTPProvider(rpc_url_for(chain), request_kwargs=kwargs))


def explorer_url(chain: str, tx_hash: Optional[str]) -> Optional[str]:
    """`{explorer}/tx/{hash}`; None until a hash exists."""
    if not tx_hash:
        return None
    info = CHAINS.get(normalize_chain(chain))
    base = info.explorer if info else CHAINS["base"].explorer
    return f"{base}/tx/{tx_hash}"
