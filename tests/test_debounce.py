"""Tests for per-ticket debounce state."""

from datetime import timedelta

from zapflow.domain import debounce

TICKET = "ticket-1"
WINDOW = 10.0
LEASE = 120.0


def _register(db, now, ticket_id=TICKET):
    with db.txn() as cur:
        return debounce.register_message(cur, ticket_id, now=now, window_seconds=WINDOW)


def _claim(db, now, ticket_id=TICKET):
    with db.txn() as cur:
        return debounce.claim(cur, ticket_id, now=now, lease_seconds=LEASE)


class TestRegisterMessage:
    def test_first_message_asks_for_timer(self, fake_db, t0):
        decision = _register(fake_db, t0)

        assert decision.needs_timer is True
        assert decision.debounce_until == t0 + timedelta(seconds=WINDOW)
        assert fake_db.debounce_row(TICKET)["scheduled"] is True

    def test_burst_extends_deadline_without_new_timer(self, fake_db, t0):
        _register(fake_db, t0)
        second = _register(fake_db, t0 + timedelta(seconds=3))
        third = _register(fake_db, t0 + timedelta(seconds=7))

        assert second.needs_timer is False
        assert third.needs_timer is False
        assert third.debounce_until == t0 + timedelta(seconds=17)

    def test_deadline_never_moves_backwards(self, fake_db, t0):
        _register(fake_db, t0 + timedelta(seconds=5))
        late = _register(fake_db, t0)

        assert late.debounce_until == t0 + timedelta(seconds=15)
        assert fake_db.debounce_row(TICKET)["debounce_until"] == t0 + timedelta(seconds=15)

    def test_timer_requested_again_after_release(self, fake_db, t0):
        _register(fake_db, t0)
        expired = t0 + timedelta(seconds=WINDOW)
        claim = _claim(fake_db, expired)
        with fake_db.txn() as cur:
            debounce.release(cur, TICKET, claimed_until=claim.debounce_until, now=expired)

        decision = _register(fake_db, expired + timedelta(seconds=60))
        assert decision.needs_timer is True


class TestClaim:
    def test_unknown_ticket_is_noop(self, fake_db, t0):
        assert _claim(fake_db, t0).status == "noop"

    def test_before_deadline_reports_new_deadline(self, fake_db, t0):
        _register(fake_db, t0)
        _register(fake_db, t0 + timedelta(seconds=4))

        claim = _claim(fake_db, t0 + timedelta(seconds=WINDOW))

        assert claim.status == "not_expired_yet"
        assert claim.debounce_until == t0 + timedelta(seconds=14)
        assert fake_db.debounce_row(TICKET)["processing"] is False

    def test_claims_expired_window(self, fake_db, t0):
        _register(fake_db, t0)
        now = t0 + timedelta(seconds=WINDOW)

        claim = _claim(fake_db, now)

        assert claim.claimed
        assert claim.debounce_until == t0 + timedelta(seconds=WINDOW)
        row = fake_db.debounce_row(TICKET)
        assert row["processing"] is True
        assert row["claimed_at"] == now

    def test_second_claim_is_in_flight(self, fake_db, t0):
        _register(fake_db, t0)
        now = t0 + timedelta(seconds=WINDOW)
        assert _claim(fake_db, now).claimed

        assert _claim(fake_db, now + timedelta(seconds=1)).status == "in_flight"

    def test_stale_claim_is_taken_over(self, fake_db, t0):
        _register(fake_db, t0)
        first = t0 + timedelta(seconds=WINDOW)
        assert _claim(fake_db, first).claimed

        later = first + timedelta(seconds=LEASE + 1)
        takeover = _claim(fake_db, later)

        assert takeover.claimed
        assert fake_db.debounce_row(TICKET)["claimed_at"] == later

    def test_released_row_is_noop(self, fake_db, t0):
        _register(fake_db, t0)
        now = t0 + timedelta(seconds=WINDOW)
        claim = _claim(fake_db, now)
        with fake_db.txn() as cur:
            debounce.release(cur, TICKET, claimed_until=claim.debounce_until, now=now)

        assert _claim(fake_db, now).status == "noop"


class TestReleaseAndAbort:
    def test_release_without_new_messages(self, fake_db, t0):
        _register(fake_db, t0)
        now = t0 + timedelta(seconds=WINDOW)
        claim = _claim(fake_db, now)

        with fake_db.txn() as cur:
            released = debounce.release(cur, TICKET, claimed_until=claim.debounce_until, now=now)

        assert released.rescheduled is False
        row = fake_db.debounce_row(TICKET)
        assert row["processing"] is False
        assert row["scheduled"] is False
        assert row["claimed_at"] is None

    def test_release_reschedules_when_messages_arrived_mid_batch(self, fake_db, t0):
        _register(fake_db, t0)
        now = t0 + timedelta(seconds=WINDOW)
        claim = _claim(fake_db, now)

        mid = _register(fake_db, now + timedelta(seconds=2))
        assert mid.needs_timer is False

        with fake_db.txn() as cur:
            released = debounce.release(
                cur, TICKET, claimed_until=claim.debounce_until, now=now + timedelta(seconds=3)
            )

        assert released.rescheduled is True
        assert released.debounce_until == now + timedelta(seconds=2 + WINDOW)
        assert fake_db.debounce_row(TICKET)["scheduled"] is True

    def test_release_of_missing_row(self, fake_db, t0):
        with fake_db.txn() as cur:
            released = debounce.release(cur, "ghost", claimed_until=t0, now=t0)

        assert released.rescheduled is False
        assert released.debounce_until is None

    def test_abort_keeps_batch_scheduled_for_retry(self, fake_db, t0):
        _register(fake_db, t0)
        now = t0 + timedelta(seconds=WINDOW)
        _claim(fake_db, now)

        with fake_db.txn() as cur:
            debounce.abort(cur, TICKET, now=now)

        row = fake_db.debounce_row(TICKET)
        assert row["processing"] is False
        assert row["scheduled"] is True
        assert _claim(fake_db, now).claimed


class TestFindDue:
    def _due(self, db, now, limit=10):
        with db.txn() as cur:
            return debounce.find_due(cur, now=now, grace_seconds=30, lease_seconds=LEASE, limit=limit)

    def test_only_overdue_past_grace(self, fake_db, t0):
        _register(fake_db, t0, "old")
        _register(fake_db, t0 + timedelta(seconds=40), "recent")

        assert self._due(fake_db, t0 + timedelta(seconds=WINDOW + 31)) == ["old"]

    def test_ordered_by_deadline_and_limited(self, fake_db, t0):
        _register(fake_db, t0 + timedelta(seconds=2), "b")
        _register(fake_db, t0, "a")
        _register(fake_db, t0 + timedelta(seconds=4), "c")

        later = t0 + timedelta(minutes=5)
        assert self._due(fake_db, later) == ["a", "b", "c"]
        assert self._due(fake_db, later, limit=2) == ["a", "b"]

    def test_skips_fresh_claims_but_not_stale_ones(self, fake_db, t0):
        _register(fake_db, t0)
        claimed_at = t0 + timedelta(seconds=WINDOW)
        _claim(fake_db, claimed_at)

        assert self._due(fake_db, claimed_at + timedelta(seconds=60)) == []
        assert self._due(fake_db, claimed_at + timedelta(seconds=LEASE + 1)) == [TICKET]

    def test_skips_unscheduled_rows(self, fake_db, t0):
        _register(fake_db, t0)
        now = t0 + timedelta(seconds=WINDOW)
        claim = _claim(fake_db, now)
        with fake_db.txn() as cur:
            debounce.release(cur, TICKET, claimed_until=claim.debounce_until, now=now)

        assert self._due(fake_db, now + timedelta(minutes=5)) == []
