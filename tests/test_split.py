import asyncio

import pytest

from settlement.split import DirectSplitter, SplitResult, SplitTransfer, compute_split

from .conftest import ETHER, FEE_WALLET, STABLE, TREASURY


@pytest.mark.parametrize("bps_treasury", [0, 1, 2500, 9000, 9999, 10000])
@pytest.mark.parametrize("amount", [0, 1, 7, 999, 1001, 123_456_789, 2**200 + 3])
def test_split_parts_always_add_up(amount, bps_treasury):
    treasury_amount, fee_amount = compute_split(amount, bps_treasury, 10000 - bps_treasury)
    assert treasury_amount + fee_amount == amount
    assert treasury_amount == amount * bps_treasury // 10000
    assert fee_amount >= 0


def test_split_rounding_is_not_lost():
    assert compute_split(1001, 9000, 1000) == (900, 101)


@pytest.mark.parametrize("bps", [(9000, 999), (10001, -1), (-1, 10001)])
def test_split_rejects_bad_bps(bps):
    with pytest.raises(ValueError):
        compute_split(100, *bps)


def test_split_rejects_negative_amount():
    with pytest.raises(ValueError):
        compute_split(-1, 9000, 1000)


def test_direct_split_sends_both_shares(chain, keyring):
    signer = keyring.derive_signer(1)
    chain.fund(signer.address, ETHER)
    chain.mint(STABLE, signer.address, 1_000_000)

    result = asyncio.run(DirectSplitter(chain).split(
        signer.account, STABLE, 1_000_000, TREASURY, FEE_WALLET, 9000, 1000,
    ))

    assert chain.balance_of(STABLE, TREASURY) == 900_000
    assert chain.balance_of(STABLE, FEE_WALLET) == 100_000
    assert chain.balance_of(STABLE, signer.address) == 0
    assert result.treasury_amount == 900_000 and result.fee_amount == 100_000
    hashes = result.tx_hashes()
    assert hashes["treasury"] and hashes["fee"] and hashes["treasury"] != hashes["fee"]
    assert [s.tx.label for s in chain.sent_from(signer.address)] == ["treasury share", "fee share"]


def test_direct_split_skips_zero_share(chain, keyring):
    signer = keyring.derive_signer(1)
    chain.fund(signer.address, ETHER)
    chain.mint(STABLE, signer.address, 500)

    result = asyncio.run(DirectSplitter(chain).split(signer.account, STABLE, 500, TREASURY, FEE_WALLET, 10000, 0))

    assert result.fee.tx_hash is None
    assert len(chain.sent) == 1
    assert chain.balance_of(STABLE, TREASURY) == 500


def test_direct_split_sends_only_pending_transfers(chain, keyring):
    signer = keyring.derive_signer(1)
    chain.fund(signer.address, ETHER)
    chain.mint(STABLE, signer.address, 100_000)
    partial = SplitResult(SplitTransfer(TREASURY, 900_000, "0x" + "ab" * 32), SplitTransfer(FEE_WALLET, 100_000))
    recorded = []

    result = asyncio.run(DirectSplitter(chain).execute(
        signer.account, STABLE, partial, lambda side, tx_hash: recorded.append((side, tx_hash)),
    ))

    assert [s.tx.label for s in chain.sent_from(signer.address)] == ["fee share"]
    assert recorded == [("fee", chain.sent[0].tx_hash)]
    assert result.tx_hashes() == {"treasury": "0x" + "ab" * 32, "fee": chain.sent[0].tx_hash}
    assert chain.balance_of(STABLE, FEE_WALLET) == 100_000
    assert result.pending() == []
