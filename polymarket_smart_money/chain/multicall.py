from __future__ import annotations

import logging
from typing import Sequence

from eth_abi import decode, encode
from eth_abi.exceptions import EncodingError
from web3 import Web3

from polymarket_smart_money.errors import VerificationError

MULTICALL3_ADDRESS = "0xcA11bde05977b3631167028862bE2a173976CA11"
CTF_ADDRESS = "0x4D97DCd97eC945f40cF65F87097ACe5EA0476045"

MULTICALL3_ABI = [
    {
        "inputs": [
            {"internalType": "bool", "name": "requireSuccess", "type": "bool"},
            {
                "components": [
                    {"internalType": "address", "name": "target", "type": "address"},
                    {"internalType": "bytes", "name": "callData", "type": "bytes"},
                ],
                "internalType": "struct Multicall3.Call[]",
                "name": "calls",
                "type": "tuple[]",
            },
        ],
        "name": "tryAggregate",
        "outputs": [
            {
                "components": [
                    {"internalType": "bool", "name": "success", "type": "bool"},
                    {"internalType": "bytes", "name": "returnData", "type": "bytes"},
                ],
                "internalType": "struct Multicall3.Result[]",
                "name": "returnData",
                "type": "tuple[]",
            }
        ],
        "stateMutability": "payable",
        "type": "function",
    }
]

BALANCE_OF_SELECTOR = Web3.keccak(text="balanceOf(address,uint256)")[:4]

logger = logging.getLogger(__name__)


def balance_of_calldata(owner: str, token_id: int) -> bytes:
    return BALANCE_OF_SELECTOR + encode(
        ["address", "uint256"],
        [Web3.to_checksum_address(owner), token_id],
    )


def decode_balance(success: bool, return_data: bytes) -> int | None:
    if not success or len(return_data) < 32:
        return None
    return decode(["uint256"], return_data)[0]


class MulticallBalanceClient:
    """CTF ``balanceOf`` lookups batched through Multicall3 ``tryAggregate``.

    ``balances`` returns one entry per ``(owner, token_id)`` pair: the raw
    balance, or ``None`` when the pair could not be encoded or its sub-call
    failed. A failure of the whole aggregate raises :class:`VerificationError`.
    """

    def __init__(
        self,
        rpc_url: str,
        timeout_s: int = 30,
        web3: Web3 | None = None,
    ) -> None:
        self.web3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_s}))
        self.multicall = self.web3.eth.contract(
            address=Web3.to_checksum_address(MULTICALL3_ADDRESS),
            abi=MULTICALL3_ABI,
        )
        self.ctf_address = Web3.to_checksum_address(CTF_ADDRESS)

    def balances(self, pairs: Sequence[tuple[str, int]]) -> list[int | None]:
        balances: list[int | None] = [None] * len(pairs)
        calls = []
        slots = []
        for slot, (owner, token_id) in enumerate(pairs):
            try:
                calldata = balance_of_calldata(owner, token_id)
            except (ValueError, TypeError, EncodingError) as exc:
                logger.warning("Cannot encode balanceOf(%s, %s): %s", owner, token_id, exc)
                continue
            calls.append((self.ctf_address, calldata))
            slots.append(slot)
        if not calls:
            return balances

        try:
            results = self.multicall.functions.tryAggregate(False, calls).call()
        except Exception as exc:  # noqa: BLE001
            raise VerificationError(f"tryAggregate over {len(calls)} calls failed: {exc}") from exc
        if len(results) != len(calls):
            raise VerificationError(f"tryAggregate returned {len(results)} results for {len(calls)} calls")
        for slot, (success, return_data) in zip(slots, results):
            balances[slot] = decode_balance(success, bytes(return_data))
        return balances
