"""
Hypothesis Property-Based Tests for LedgerEngine.

Random sequences of reserve/settle/release/grant/sweep must never take a
balance negative and must keep the balance equal to the ledger sum.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from hypothesis import given, settings
from hypothesis import strategies as st

from novavid_billing.config import settings as app_settings
from novavid_billing.exceptions import InsufficientCreditsError
from novavid_billing.models.api import PlanTier
from novavid_billing.models.domain import Reservation
from novavid_billing.services.accounts import AccountService
from novavid_billing.services.ledger import LedgerEngine
from novavid_billing.services.memory_store import MemoryBillingStore

# ============================================================================
# Hypothesis Strategies
# ============================================================================

amounts = st.integers(min_value=1, max_value=150)

operations = st.one_of(
    st.tuples(st.just("reserve"), amounts),
    st.tuples(st.just("settle"), st.integers(min_value=0, max_value=20)),
    st.tuples(st.just("release"), st.integers(min_value=0, max_value=20)),
    st.tuples(st.just("grant"), amounts),
    st.tuples(st.just("sweep"), st.integers(min_value=0, max_value=1800)),
)


class Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


async def run_sequence(steps: list[tuple[str, int]], recharge: bool) -> list[tuple[int, int]]:
    """Apply steps and return (credits, ledger_total) after each one."""
    clock = Clock()
    config = app_settings.model_copy(update={"pro_auto_recharge_enabled": recharge})
    store = MemoryBillingStore()
    ledger = LedgerEngine(store, config=config, clock=clock)
    accounts = AccountService(store, ledger, config=config, clock=clock)
    await accounts.register("prop-user")
    if recharge:
        await accounts.set_plan_tier("prop-user", PlanTier.PRO, "property test")

    reservations: list[Reservation] = []
    observed: list[tuple[int, int]] = []

    for index, (op, value) in enumerate(steps):
        if op == "reserve":
            try:
                reservations.append(await ledger.reserve("prop-user", value, f"op-{index}"))
            except InsufficientCreditsError:
                pass
        elif op in ("settle", "release") and reservations:
            target = reservations[value % len(reservations)]
            if op == "settle":
                await ledger.settle(target)
            else:
                await ledger.release(target)
        elif op == "grant":
            await ledger.grant("prop-user", value, idempotency_key=f"grant-{index}")
        elif op == "sweep":
            clock.now += timedelta(seconds=value)
            await ledger.sweep_expired()

        report = await ledger.verify_ledger("prop-user")
        observed.append((report.credits, report.ledger_total))

    return observed


class TestLedgerInvariants:
    """Properties that hold for every operation sequence."""

    @given(st.lists(operations, min_size=1, max_size=25))
    @settings(max_examples=75, deadline=None)
    def test_balance_never_negative_and_matches_ledger(self, steps):
        """Balance equals the ledger sum and stays non-negative after every step."""
        observed = asyncio.run(run_sequence(steps, recharge=False))

        for credits, ledger_total in observed:
            assert credits >= 0
            assert credits == ledger_total

    @given(st.lists(operations, min_size=1, max_size=25))
    @settings(max_examples=50, deadline=None)
    def test_invariants_hold_with_auto_recharge(self, steps):
        """Pro auto-recharge writes a grant entry for every top-up."""
        observed = asyncio.run(run_sequence(steps, recharge=True))

        for credits, ledger_total in observed:
            assert credits >= 0
            assert credits == ledger_total

    @given(st.lists(amounts, min_size=1, max_size=10))
    @settings(max_examples=50, deadline=None)
    def test_release_everything_restores_balance(self, reserve_amounts):
        """Releasing every successful reservation restores the starting balance."""

        async def scenario() -> tuple[int, int]:
            store = MemoryBillingStore()
            ledger = LedgerEngine(store)
            accounts = AccountService(store, ledger)
            start = (await accounts.register("prop-user")).credits

            held: list[Reservation] = []
            for index, amount in enumerate(reserve_amounts):
                try:
                    held.append(await ledger.reserve("prop-user", amount, f"op-{index}"))
                except InsufficientCreditsError:
                    pass
            for reservation in held:
                await ledger.release(reservation)
            return start, (await ledger.verify_ledger("prop-user")).credits

        start, end = asyncio.run(scenario())
        assert end == start
