import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import select

from settlement.errors import SettlementError, TransactionReverted
from settlement.gas import gas_cost
from settlement.jobs import STATUS_FAILED, STATUS_SETTLED, STATUS_UNRESOLVED, DepositJobStore
from settlement.ledger import to_units
from settlement.models import AuditLog, LedgerEntry, User
from settlement.notify import DEPOSIT_FAILED, DEPOSIT_SETTLED, DEPOSIT_UNRESOLVED, Notifier
from settlement.processor import DepositProcessor
from settlement.queue import SwapJob
from settlement.swap import OneShotContractStrategy, SwapRouter, V2PairDirectStrategy, apply_slippage, constant_product_out

from .conftest import ETHER, FEE_WALLET, STABLE, TREASURY

INDEX = 7
WETH_RESERVE = 500 * ETHER
STABLE_RESERVE = 1_000_000 * 10**6


def micro(value):
    # sqlite round-trips Numeric through float
    return Decimal(value).quantize(Decimal("0.000001"))


@pytest.fixture
def signer(keyring):
    return keyring.derive_signer(INDEX)


@pytest.fixture
def store(session_factory):
    return DepositJobStore(session_factory)


@pytest.fixture
def user_id(session_factory, signer):
    with session_factory() as session:
        user = User(tg_id=1001, username="alice", deposit_address=signer.address, derivation_index=INDEX)
        session.add(user)
        session.commit()
        return user.id


def make_processor(chain, keyring, session_factory, store, strategies=None, **overrides):
    options = dict(
        store=store,
        notifier=Notifier(session_factory, chat_id=""),
        treasury=TREASURY,
        fee_wallet=FEE_WALLET,
        fee_bps=1000,
        split_mode="direct",
        sponsorship=False,
        slippage_bps=50,
    )
    options.update(overrides)
    router = SwapRouter(strategies or [V2PairDirectStrategy()])
    return DepositProcessor({chain.key: chain}, keyring, session_factory, router, **options)


def claim_deposit(store, signer, amount=ETHER, destination=None):
    job = SwapJob(
        deposit_id="0x" + "01" * 32,
        chain_key="eth_sepolia",
        destination=destination or signer.address,
        derivation_index=INDEX,
        amount_raw=amount,
        tx_hash="0x" + "01" * 32,
        block_number=99,
    )
    assert store.claim(job)
    return job


def audit_rows(session_factory, category):
    with session_factory() as session:
        return session.execute(select(AuditLog).where(AuditLog.category == category)).scalars().all()


def test_deposit_is_swapped_split_and_credited(chain, keyring, session_factory, store, signer, user_id):
    chain.fund(signer.address, ETHER)
    chain.add_v2_pair(WETH_RESERVE, STABLE_RESERVE)
    job = claim_deposit(store, signer)

    outcome = asyncio.run(make_processor(chain, keyring, session_factory, store).process(job))

    reserved = gas_cost(265_000 + 130_000, chain.fee)
    stable_out = apply_slippage(constant_product_out(ETHER - reserved, WETH_RESERVE, STABLE_RESERVE), 50)
    treasury_share = stable_out * 9000 // 10000
    assert outcome["status"] == "settled"
    assert outcome["strategy"] == "v2_direct"
    assert outcome["amount_in"] == str(ETHER - reserved)
    assert outcome["stable_out"] == str(stable_out)
    assert chain.balance_of(STABLE, TREASURY) == treasury_share
    assert chain.balance_of(STABLE, FEE_WALLET) == stable_out - treasury_share
    assert chain.balance_of(STABLE, signer.address) == 0

    with session_factory() as session:
        assert micro(session.get(User, user_id).balance) == to_units(treasury_share, 6)
        (entry,) = session.execute(select(LedgerEntry)).scalars().all()
        assert entry.user_id == user_id
        assert outcome["swap_tx"] in entry.description

    (audit,) = audit_rows(session_factory, DEPOSIT_SETTLED)
    assert audit.reference == job.identity
    assert audit.data["swap_tx"] == outcome["swap_tx"]
    assert audit.data["split_txs"] == outcome["split_txs"]

    row = store.get(job.identity)
    assert row.status == STATUS_SETTLED
    assert row.attempts == 1
    assert micro(row.credited_amount) == to_units(treasury_share, 6)
    assert row.split_txs == outcome["split_txs"]


def test_swap_revert_marks_job_failed_without_credit(chain, keyring, session_factory, store, signer, user_id):
    chain.fund(signer.address, ETHER)
    chain.add_v2_pair(WETH_RESERVE, STABLE_RESERVE)
    chain.revert_labels = {"pair swap"}
    job = claim_deposit(store, signer)

    with pytest.raises(TransactionReverted):
        asyncio.run(make_processor(chain, keyring, session_factory, store).process(job))

    row = store.get(job.identity)
    assert row.status == STATUS_FAILED
    assert row.error.startswith("TransactionReverted")
    assert len(audit_rows(session_factory, DEPOSIT_FAILED)) == 1
    assert audit_rows(session_factory, DEPOSIT_SETTLED) == []
    with session_factory() as session:
        assert micro(session.get(User, user_id).balance) == 0


def test_wrong_derivation_index_is_refused(chain, keyring, session_factory, store, signer):
    job = claim_deposit(store, signer, destination=keyring.address_for(INDEX + 1))

    with pytest.raises(SettlementError):
        asyncio.run(make_processor(chain, keyring, session_factory, store).process(job))
    assert chain.sent == []
    assert store.get(job.identity).status == STATUS_FAILED


def test_unknown_depositor_is_left_unresolved(chain, keyring, session_factory, store, signer):
    chain.fund(signer.address, ETHER)
    chain.add_v2_pair(WETH_RESERVE, STABLE_RESERVE)
    job = claim_deposit(store, signer)

    outcome = asyncio.run(make_processor(chain, keyring, session_factory, store).process(job))

    assert outcome["status"] == "unresolved"
    assert chain.balance_of(STABLE, TREASURY) > 0
    row = store.get(job.identity)
    assert row.status == STATUS_UNRESOLVED
    assert row.swap_tx == outcome["swap_tx"]
    assert len(audit_rows(session_factory, DEPOSIT_UNRESOLVED)) == 1
    with session_factory() as session:
        assert session.execute(select(LedgerEntry)).scalars().all() == []


def test_sponsored_deposit_is_topped_up_and_swept(chain, keyring, session_factory, store, signer, user_id):
    sponsor = keyring.derive_signer(99).account
    chain.fund(sponsor.address, ETHER)
    chain.fund(signer.address, 10**15)
    chain.add_v2_pair(WETH_RESERVE, STABLE_RESERVE)
    job = claim_deposit(store, signer, amount=10**15)

    processor = make_processor(chain, keyring, session_factory, store, sponsor=sponsor, sponsorship=True)
    outcome = asyncio.run(processor.process(job))

    budget = gas_cost(325_000 + 130_000, chain.fee)
    top_up = chain.sent[0]
    assert top_up.tx.label == "gas top-up"
    assert top_up.sender == sponsor.address.lower()
    assert top_up.tx.value == budget - 10**15

    residual = budget - int(outcome["amount_in"]) - 395_000 * chain.fee.max_fee_per_gas
    assert outcome["status"] == "settled"
    assert outcome["sweep"]["status"] == "submitted"
    assert outcome["sweep"]["amount"] == str(residual - 21_000 * chain.fee.max_fee_per_gas)
    assert chain.native[signer.address.lower()] == 0
    assert chain.sent[-1].tx.to == sponsor.address


def test_sponsorship_requires_sponsor_key(chain, keyring, session_factory, store):
    with pytest.raises(SettlementError):
        make_processor(chain, keyring, session_factory, store, sponsorship=True)
    with pytest.raises(SettlementError):
        make_processor(chain, keyring, session_factory, store, split_mode="gasless")


def test_gasless_split_is_relayed_by_sponsor(chain, keyring, session_factory, store, signer, user_id):
    sponsor = keyring.derive_signer(99).account
    chain.fund(sponsor.address, ETHER)
    chain.fund(signer.address, ETHER)
    chain.add_v2_pair(WETH_RESERVE, STABLE_RESERVE)
    job = claim_deposit(store, signer)

    processor = make_processor(chain, keyring, session_factory, store, sponsor=sponsor, split_mode="gasless")
    outcome = asyncio.run(processor.process(job))

    assert outcome["split_mode"] == "gasless"
    assert [s.tx.label for s in chain.sent_from(signer.address)] == ["wrap", "transfer to pair", "pair swap"]
    assert [s.tx.label for s in chain.sent_from(sponsor.address)] == ["relayed transfer", "relayed transfer"]
    assert chain.balance_of(STABLE, signer.address) == 0
    assert store.get(job.identity).status == STATUS_SETTLED


def test_oneshot_output_is_split_on_chain(chain, keyring, session_factory, store, signer, user_id):
    chain.fund(signer.address, ETHER)
    chain.oneshot_out = 2000 * 10**6
    job = claim_deposit(store, signer)

    processor = make_processor(chain, keyring, session_factory, store, strategies=[OneShotContractStrategy()])
    outcome = asyncio.run(processor.process(job))

    assert outcome["split_mode"] == "oneshot"
    assert outcome["split_txs"] == {"treasury": outcome["swap_tx"], "fee": outcome["swap_tx"]}
    assert outcome["credited"] == str(to_units(1800 * 10**6, 6))
    assert chain.balance_of(STABLE, TREASURY) == 1800 * 10**6
    with session_factory() as session:
        assert micro(session.get(User, user_id).balance) == Decimal("1800")


def test_unresolved_deposit_is_credited_on_redrive_without_touching_chain(chain, keyring, session_factory, store,
                                                                          signer):
    chain.fund(signer.address, ETHER)
    chain.add_v2_pair(WETH_RESERVE, STABLE_RESERVE)
    job = claim_deposit(store, signer)
    processor = make_processor(chain, keyring, session_factory, store)

    first = asyncio.run(processor.process(job))
    assert first["status"] == "unresolved"
    sent = len(chain.sent)

    with session_factory() as session:
        user = User(tg_id=1002, username="late", deposit_address=signer.address, derivation_index=INDEX)
        session.add(user)
        session.commit()
        user_id = user.id
    retried = store.requeue(job.identity)
    outcome = asyncio.run(processor.process(retried))

    assert len(chain.sent) == sent
    assert outcome["status"] == "settled"
    assert outcome["swap_tx"] == first["swap_tx"]
    assert outcome["split_txs"] == first["split_txs"]
    treasury_share = int(first["stable_out"]) * 9000 // 10000
    with session_factory() as session:
        assert micro(session.get(User, user_id).balance) == to_units(treasury_share, 6)
        assert len(session.execute(select(LedgerEntry)).scalars().all()) == 1
    row = store.get(job.identity)
    assert row.status == STATUS_SETTLED
    assert row.attempts == 2


def test_failed_split_resumes_with_the_missing_transfer(chain, keyring, session_factory, store, signer, user_id):
    sponsor = keyring.derive_signer(99).account
    chain.fund(sponsor.address, ETHER)
    chain.fund(signer.address, ETHER)
    chain.add_v2_pair(WETH_RESERVE, STABLE_RESERVE)
    chain.revert_labels = {"fee share"}
    job = claim_deposit(store, signer)

    with pytest.raises(TransactionReverted):
        asyncio.run(make_processor(chain, keyring, session_factory, store).process(job))
    progress = store.get(job.identity).progress
    assert progress["split_txs"]["treasury"]
    assert "fee" not in progress["split_txs"]
    stable_out = int(progress["stable_out"])
    treasury_share = stable_out * 9000 // 10000

    chain.revert_labels = set()
    sent = len(chain.sent)
    processor = make_processor(chain, keyring, session_factory, store, sponsor=sponsor, sponsorship=True)
    outcome = asyncio.run(processor.process(store.requeue(job.identity)))

    labels = [s.tx.label for s in chain.sent[sent:]]
    assert labels[:2] == ["gas top-up", "fee share"]
    assert "pair swap" not in labels and "treasury share" not in labels
    assert outcome["status"] == "settled"
    assert outcome["split_txs"]["treasury"] == progress["split_txs"]["treasury"]
    assert chain.balance_of(STABLE, TREASURY) == treasury_share
    assert chain.balance_of(STABLE, FEE_WALLET) == stable_out - treasury_share
    with session_factory() as session:
        assert micro(session.get(User, user_id).balance) == to_units(treasury_share, 6)
