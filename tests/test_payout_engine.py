from ledger_store import InMemoryLedgerStore
from models import AffiliateBalance, PayoutInstruction
from payout_engine import RecordingPayoutExecutor, evaluate_payout, payout_for_balance


def test_below_threshold_no_payout():
    balance = AffiliateBalance("A", pending_balance=4999, lifetime_earned=4999)
    assert payout_for_balance(balance, 5000, "ev_1") is None


def test_exactly_threshold_triggers():
    balance = AffiliateBalance("A", pending_balance=5000, lifetime_earned=5000)
    instruction = payout_for_balance(balance, 5000, "ev_1")
    assert instruction == PayoutInstruction("A", 5000, "ev_1", "stripe")


def test_sweep_pays_full_balance_not_increment():
    """
    48.00 pending + a 4.00 commission -> one payout of 52.00.
    """
    store = InMemoryLedgerStore()
    store.increment_balance("A", 4800)
    store.increment_balance("A", 400)

    instruction = evaluate_payout(store, "A", 5000, "ev_9", provider="paypal")

    assert instruction.amount == 5200
    assert instruction.triggered_by == "ev_9"
    assert instruction.provider == "paypal"


def test_zero_balance_never_triggers_even_with_zero_threshold():
    balance = AffiliateBalance("A")
    assert payout_for_balance(balance, 0, "ev_1") is None


def test_recording_executor_drains_once():
    executor = RecordingPayoutExecutor()
    executor.submit(PayoutInstruction("A", 5200, "ev_1"))
    executor.submit(PayoutInstruction("B", 6000, "ev_2"))

    assert len(executor.pending()) == 2
    drained = executor.drain()
    assert [p.affiliate_id for p in drained] == ["A", "B"]
    assert executor.drain() == []
