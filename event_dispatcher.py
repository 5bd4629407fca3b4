from dataclasses import replace
from typing import Any, Dict, List, Optional

import structlog

from billing_events import classify, parse_billing_event
from commission_engine import compute_commissions
from config import CommissionConfig
from errors import BalanceInvariantError, MalformedEventError
from ledger_store import LedgerStore
from models import (
    AffiliateBalance,
    BillingEvent,
    CommissionEntry,
    EventKind,
    PayoutInstruction,
    SubscriptionStatus,
    format_minor_units,
)
from payout_engine import PayoutExecutor, evaluate_payout
from referral_engine import HierarchyResolver

logger = structlog.get_logger(__name__)


def _result(status: str, event: Optional[BillingEvent] = None, **extra) -> Dict[str, Any]:
    result = {
        "status": status,
        "event_id": event.event_id if event else None,
        "subscription_id": event.subscription_id if event else None,
        "entries": [],
        "duplicates": 0,
        "payouts": [],
    }
    result.update(extra)
    return result


class EventDispatcher:
    """
    routes classified billing events through the commission pipeline:

      resolve chain -> compute entries -> commit each entry (idempotent)
      -> evaluate payout per credited affiliate -> hand off instructions

    per-subscription state:
      created                   -> active, initial commission run
      recurring while active    -> recurring commission run
      cancelled                 -> cancelled, accrual suspended
      reactivated               -> active again, no backfill

    holds only immutable config and collaborators, so one instance can serve
    concurrent deliveries.
    """

    def __init__(
        self,
        config: CommissionConfig,
        store: LedgerStore,
        resolver: HierarchyResolver,
        executor: PayoutExecutor,
    ):
        self.config = config
        self.store = store
        self.resolver = resolver
        self.executor = executor

    # ---------
    # entry points
    # ---------

    def handle_payload(self, payload: Any) -> Dict[str, Any]:
        """
        raw webhook body -> dispatch result.
        unrecognized and malformed payloads are acknowledged no-ops.
        """
        event_type = payload.get("event_type") if isinstance(payload, dict) else None
        kind = classify(event_type)
        if kind is None:
            logger.info("webhook_event_ignored", event_type=event_type)
            return _result("ignored", event_type=event_type)

        try:
            event = parse_billing_event(payload, kind)
        except MalformedEventError as e:
            logger.warning("webhook_event_malformed", event_type=event_type, error=str(e))
            return _result("malformed", event_type=event_type, error=str(e))

        return self.dispatch(event)

    def dispatch(self, event: BillingEvent) -> Dict[str, Any]:
        log = logger.bind(
            event_id=event.event_id,
            event_type=event.event_type,
            subscription_id=event.subscription_id,
        )
        log.info("billing_event_received", kind=event.kind.value)

        if event.kind is EventKind.SUBSCRIPTION_CANCELLED:
            self._ensure_known(event, log)
            self.store.set_accrual_suspended(event.subscription_id, True)
            log.info("subscription_accrual_suspended")
            return _result("cancelled", event)

        if event.kind is EventKind.SUBSCRIPTION_REACTIVATED:
            self._ensure_known(event, log)
            self.store.set_accrual_suspended(event.subscription_id, False)
            log.info("subscription_accrual_resumed")
            return _result("reactivated", event)

        if not event.affiliate_id:
            log.info("billing_event_without_affiliate")
            return _result("no_affiliate", event)

        if self._ensure_known(event, log):
            if event.kind is EventKind.RECURRING_CHARGE:
                event = replace(event, kind=EventKind.SUBSCRIPTION_CREATED)
        elif self.store.get_subscription_status(event.subscription_id) is SubscriptionStatus.CANCELLED:
            self.store.suppress_event(event.subscription_id, event.event_id)
            log.info("commission_skipped_subscription_cancelled")
            return _result("suspended", event)
        elif self.store.is_event_suppressed(event.event_id):
            # first delivered during the cancelled window; no backfill
            log.info("commission_skipped_event_suppressed")
            return _result("suspended", event)

        return self._run_commissions(event, log)

    def confirm_payout(self, affiliate_id: str, amount: int, triggered_by: Optional[str] = None) -> AffiliateBalance:
        """
        the payout executor reports a completed disbursement.
        an amount above the pending balance is a ledger bug and is escalated.
        """
        try:
            balance = self.store.mark_paid_out(affiliate_id, amount)
        except BalanceInvariantError as e:
            logger.critical(
                "payout_balance_invariant_violated",
                affiliate_id=affiliate_id,
                amount=format_minor_units(amount),
                triggered_by=triggered_by,
                error=str(e),
            )
            raise

        logger.info(
            "payout_confirmed",
            affiliate_id=affiliate_id,
            amount=format_minor_units(amount),
            triggered_by=triggered_by,
            pending_balance=format_minor_units(balance.pending_balance),
        )
        return balance

    # ---------
    # internals
    # ---------

    def _ensure_known(self, event: BillingEvent, log) -> bool:
        created = self.store.ensure_subscription(event.subscription_id)
        if created and event.kind is not EventKind.SUBSCRIPTION_CREATED:
            log.warning("subscription_unknown_treated_as_created", kind=event.kind.value)
        return created

    def _run_commissions(self, event: BillingEvent, log) -> Dict[str, Any]:
        chain = self.resolver.resolve(event.affiliate_id)
        if not chain:
            log.info("affiliate_hierarchy_empty", affiliate_id=event.affiliate_id)
            return _result("no_hierarchy", event)

        entries = compute_commissions(event, chain, self.config.schedule)

        applied: List[CommissionEntry] = []
        payouts: List[PayoutInstruction] = []
        duplicates = 0

        # each affiliate commits on its own; an abort halfway leaves the
        # already-committed entries valid
        for entry in entries:
            balance = self.store.commit_entry(entry)
            if balance is None:
                duplicates += 1
                continue

            applied.append(entry)
            log.info(
                "commission_recorded",
                affiliate_id=entry.affiliate_id,
                depth=entry.depth,
                kind=entry.kind.value,
                amount=format_minor_units(entry.amount),
                pending_balance=format_minor_units(balance.pending_balance),
            )

            instruction = evaluate_payout(
                self.store,
                entry.affiliate_id,
                self.config.payout_threshold,
                triggered_by=event.event_id,
                provider=self.config.default_payout_provider,
            )
            if instruction is not None:
                self._submit(instruction, log)
                payouts.append(instruction)

        if duplicates:
            log.info("commission_duplicates_absorbed", count=duplicates)

        status = "duplicate" if entries and not applied else "applied"
        return _result(status, event, entries=applied, duplicates=duplicates, payouts=payouts)

    def _submit(self, instruction: PayoutInstruction, log) -> None:
        log.info(
            "payout_triggered",
            affiliate_id=instruction.affiliate_id,
            amount=format_minor_units(instruction.amount),
            provider=instruction.provider,
        )
        try:
            self.executor.submit(instruction)
        except Exception:
            # balance stays pending and re-triggers on the next accrual
            log.exception("payout_submit_failed", affiliate_id=instruction.affiliate_id)
