from __future__ import annotations

import threading
from types import SimpleNamespace

import pytest
from eth_abi import decode, encode
from pydantic import ValidationError

from polymarket_smart_money.chain.multicall import MulticallBalanceClient, balance_of_calldata, decode_balance
from polymarket_smart_money.chain.positions import PositionStatus, parse_token_id, verify_positions
from polymarket_smart_money.errors import VerificationError
from polymarket_smart_money.models import LeaderboardEntry
from polymarket_smart_money.scoring.smart import score_market

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40


class FakeBalances:
    def __init__(self, balances=None, failing_pairs=(), failing_tokens=()):
        self.balances_by_pair = balances or {}
        self.failing_pairs = set(failing_pairs)
        self.failing_tokens = set(failing_tokens)
        self.calls = []
        self._lock = threading.Lock()

    def balances(self, pairs):
        with self._lock:
            self.calls.append(list(pairs))
        if any(token in self.failing_tokens for _, token in pairs):
            raise VerificationError("aggregate reverted")
        return [
            None if (owner, token) in self.failing_pairs else self.balances_by_pair.get((owner, token), 0)
            for owner, token in pairs
        ]


def _market(market_id, tokens, volume=10_000):
    return {"market_id": market_id, "outcome_token_ids": tokens, "volume": volume}


def test_parse_token_id():
    assert parse_token_id("123") == 123
    assert parse_token_id(" 42 ") == 42
    assert parse_token_id("abc") is None
    assert parse_token_id(None) is None
    assert parse_token_id("-1") is None
    assert parse_token_id(str(2**256)) is None
    assert parse_token_id(str(2**256 - 1)) == 2**256 - 1


def test_one_failed_pair_does_not_hide_the_rest():
    source = FakeBalances(
        balances={(ALICE, 2): 3_000_000, (BOB, 3): 1_500_000},
        failing_pairs={(ALICE, 1), (BOB, 1)},
    )
    result = verify_positions([_market("m1", ["1", "2"]), _market("m2", ["3", "4"])], [ALICE, BOB], source)

    m1 = result.positions["m1"]
    assert m1[ALICE].status == PositionStatus.HELD
    assert m1[ALICE].shares == pytest.approx(3.0)
    assert m1[BOB].status == PositionStatus.UNKNOWN
    assert result.positions["m2"][BOB].status == PositionStatus.HELD
    assert result.positions["m2"][ALICE].status == PositionStatus.NONE
    assert result.failed_groups == 0

    trader = {"tier": "S", "rarity_score": 800, "display_name": None, "profile_picture": None}
    holders = [{**trader, **holder} for holder in result.holders("m1")]
    score = score_market(_market("m1", ["1", "2"]), holders)
    assert score["smart_count"] == 1
    assert score["top_smart_traders"][0]["address"] == ALICE


def test_failed_aggregate_marks_only_its_group_unknown():
    source = FakeBalances(balances={(ALICE, 1): 1_000_000}, failing_tokens={3})
    result = verify_positions(
        [_market("m1", ["1"]), _market("m2", ["3"]), _market("m3", ["5"])],
        [ALICE, BOB],
        source,
        group_size=1,
    )

    assert result.groups == 3
    assert result.failed_groups == 1
    assert {check.status for check in result.positions["m2"].values()} == {PositionStatus.UNKNOWN}
    assert result.positions["m1"][ALICE].status == PositionStatus.HELD
    assert result.positions["m3"][BOB].status == PositionStatus.NONE
    assert result.holders("m2") == []


def test_groups_issue_one_aggregate_each():
    source = FakeBalances()
    markets = [_market(f"m{index}", [str(index * 2), str(index * 2 + 1)]) for index in range(12)]
    result = verify_positions(markets, [ALICE, BOB.upper().replace("0X", "0x")], source, group_size=5)

    assert result.groups == 3
    assert len(source.calls) == 3
    assert sorted(len(call) for call in source.calls) == [8, 20, 20]
    assert result.count(PositionStatus.NONE) == 24


def test_unparsable_token_is_unknown_without_a_call():
    source = FakeBalances()
    result = verify_positions([_market("m1", ["not-a-number"])], [ALICE], source)
    assert result.positions["m1"][ALICE].status == PositionStatus.UNKNOWN
    assert source.calls == []


def test_no_traders_or_markets_is_a_no_op():
    source = FakeBalances()
    assert verify_positions([], [ALICE], source).positions == {}
    assert verify_positions([_market("m1", ["1"])], [], source).positions == {}
    assert source.calls == []
    with pytest.raises(ValueError):
        verify_positions([_market("m1", ["1"])], [ALICE], source, group_size=0)


def test_balance_of_calldata_layout():
    calldata = balance_of_calldata(ALICE, 7)
    assert calldata[:4].hex() == "00fdd58e"
    assert len(calldata) == 4 + 64
    assert int.from_bytes(calldata[-32:], "big") == 7


def test_decode_balance():
    assert decode_balance(True, encode(["uint256"], [42])) == 42
    assert decode_balance(False, encode(["uint256"], [42])) is None
    assert decode_balance(True, b"") is None


class FakeMulticall:
    def __init__(self, balances_by_owner):
        self.balances_by_owner = balances_by_owner
        self.sent = []
        self.functions = SimpleNamespace(tryAggregate=self._try_aggregate)

    def _try_aggregate(self, require_success, calls):
        self.sent.append(calls)
        results = []
        for _, calldata in calls:
            owner, _token_id = decode(["address", "uint256"], calldata[4:])
            results.append((True, encode(["uint256"], [self.balances_by_owner.get(owner.lower(), 0)])))
        return SimpleNamespace(call=lambda: results)


def _multicall_client(multicall):
    web3 = SimpleNamespace(eth=SimpleNamespace(contract=lambda address, abi: multicall))
    return MulticallBalanceClient("http://localhost:8545", web3=web3)


def test_malformed_pairs_are_unknown_without_sinking_the_aggregate():
    multicall = FakeMulticall({ALICE: 2_000_000})
    client = _multicall_client(multicall)

    assert client.balances([(ALICE, 1), ("0xabc", 1), (BOB, 2**256)]) == [2_000_000, None, None]
    assert len(multicall.sent[0]) == 1

    result = verify_positions(
        [_market("m1", ["1"]), _market("m2", [str(2**256)])],
        [ALICE, "0xabc"],
        client,
    )
    assert result.failed_groups == 0
    assert result.positions["m1"][ALICE].status == PositionStatus.HELD
    assert result.positions["m1"][ALICE].shares == pytest.approx(2.0)
    assert result.positions["m1"]["0xabc"].status == PositionStatus.UNKNOWN
    assert result.positions["m2"][ALICE].status == PositionStatus.UNKNOWN


def test_nothing_encodable_skips_the_aggregate():
    multicall = FakeMulticall({})
    assert _multicall_client(multicall).balances([("0xabc", 1)]) == [None]
    assert multicall.sent == []


def test_short_wallet_addresses_are_rejected_at_parse_time():
    with pytest.raises(ValidationError):
        LeaderboardEntry.model_validate({"proxyWallet": "0xabc", "pnl": 1})
    entry = LeaderboardEntry.model_validate({"proxyWallet": ALICE.upper().replace("0X", "0x")})
    assert entry.address == ALICE
