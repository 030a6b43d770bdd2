import pytest
from eth_abi import decode

from common.errors import InvalidIntent
from core.tokens import TRANSFER_SELECTOR, encode_token_transfer

DEAD = "0x000000000000000000000000000000000000dEaD"


def test_usdc_transfer_calldata():
    out = encode_token_transfer(chain="base", token="USDC", to=DEAD, amount="1.5")
    assert out["token_contract"] == "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    assert out["amount_base_units"] == "1500000"
    raw = bytes.fromhex(out["calldata"][2:])
    assert raw[:4] == TRANSFER_SELECTOR
    assert raw[:4].hex() == "a9059cbb"
    to, amount = decode(["address", "uint256"], raw[4:])
    assert to.lower() == DEAD.lower()
    assert amount == 1_500_000


@pytest.mark.parametrize(
    "kwargs",
    [
        {"chain": "base", "token": "shib", "to": DEAD, "amount": "1"},
        {"chain": "sepolia", "token": "usdc", "to": DEAD, "amount": "1"},
        {"chain": "base", "token": "usdc", "to": "0x123", "amount": "1"},
        {"chain": "base", "token": "usdc", "to": DEAD, "amount": "0.0000001"},
        {"chain": "base", "token": "usdc", "to": DEAD, "amount": "-1"},
        {"chain": "base", "token": "usdc", "to": DEAD, "amount": "abc"},
    ],
)
def test_rejects_bad_inputs(kwargs):
    with pytest.raises(InvalidIntent):
        encode_token_transfer(**kwargs)
