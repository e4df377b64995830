"""Reservation engine behaviour: lifecycle, contention, expiry and payment outcomes."""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
import random
import threading

import pytest
import requests

from conftest import SHOW_SEATS, assert_invariants
from errors import (
    AlreadyFinal, HoldExpired, HoldNotFound, InvalidRequest, InvalidSeats, PaymentDeclined,
    PaymentTimeout, SeatUnavailable, ShowAlreadyExists, ShowNotFound,
)
from payment import HttpPaymentCoordinator, SimulatedPaymentCoordinator
from reservation_engine import ReservationEngine


def seats_by_status(engine, show_id):
    status, error = engine.get_seat_status(show_id)
    assert error is None
    return {seat["seat_label"]: seat["status"] for seat in status["seats"]}, status


class ScriptedPayments(SimulatedPaymentCoordinator):
    """Runs a hook before each capture and can fail the first few attempts."""

    def __init__(self, before_capture=None, timeouts=0):
        super().__init__()
        self.before_capture = before_capture
        self.timeouts = timeouts
        self.attempts = 0

    def authorize_and_capture(self, amount, payment_details, idempotency_key=None):
        self.attempts += 1
        if self.before_capture:
            self.before_capture()
        if self.attempts <= self.timeouts:
            raise PaymentTimeout('gateway slow')
        return super().authorize_and_capture(amount, payment_details, idempotency_key)


class TestShowSetup:
    def test_initialize_show(self, engine, show_id):
        _, status = seats_by_status(engine, show_id)
        assert status["total_seats"] == 3
        assert status["available_seats"] == 3
        assert status["seat_price"] == "12.50"
        assert_invariants(engine, show_id)

    def test_initialize_twice_fails(self, engine, show_id):
        result, error = engine.initialize_show(show_id, ["Z1"])
        assert result is None
        assert isinstance(error, ShowAlreadyExists)

    def test_initialize_rejects_bad_seat_map(self, engine):
        _, error = engine.initialize_show("s", ["A1", "A1"])
        assert isinstance(error, InvalidSeats)
        _, error = engine.initialize_show("s", ["A1"], "free")
        assert isinstance(error, InvalidRequest)
        for price in ("NaN", "Infinity", "-1"):
            _, error = engine.initialize_show("s", ["A1"], price)
            assert isinstance(error, InvalidRequest)
        assert engine.get_seat_status("s")[0] is None

    def test_open_show_from_catalog(self, engine, catalog):
        catalog.add_show("matinee", ["B1", "B2"], Decimal("8.00"))
        result, error = engine.open_show("matinee")
        assert error is None
        assert result["total_seats"] == 2
        assert result["seat_price"] == "8.00"

    def test_open_unknown_show(self, engine):
        _, error = engine.open_show("nope")
        assert isinstance(error, ShowNotFound)
        assert error.http_status == 404


class TestRequestBooking:
    def test_hold_decrements_available(self, engine, show_id):
        hold, error = engine.request_booking(show_id, "alice", ["A1", "A2"])
        assert error is None
        assert hold["status"] == "active"
        assert hold["total_amount"] == "25.00"
        seats, status = seats_by_status(engine, show_id)
        assert status["available_seats"] == 1
        assert seats == {"A1": "held", "A2": "held", "A3": "free"}
        assert_invariants(engine, show_id)

    @pytest.mark.parametrize("labels", [[], ["A1", "A1"], ["A1", ""], "A1", None, ["A1", 7]])
    def test_malformed_labels_rejected(self, engine, show_id, labels):
        _, error = engine.request_booking(show_id, "alice", labels)
        assert isinstance(error, InvalidSeats)
        assert error.http_status == 400

    def test_foreign_labels_rejected(self, engine, show_id):
        _, error = engine.request_booking(show_id, "alice", ["A1", "Z9"])
        assert isinstance(error, InvalidSeats)
        assert error.details["unknown_seats"] == ["Z9"]
        assert seats_by_status(engine, show_id)[1]["available_seats"] == 3

    def test_unknown_show(self, engine):
        _, error = engine.request_booking("missing", "alice", ["A1"])
        assert isinstance(error, ShowNotFound)

    def test_blank_user_rejected(self, engine, show_id):
        _, error = engine.request_booking(show_id, "  ", ["A1"])
        assert isinstance(error, InvalidRequest)

    def test_partial_overlap_fails_whole_request(self, engine, show_id):
        engine.request_booking(show_id, "alice", ["A2"])
        result, error = engine.request_booking(show_id, "bob", ["A1", "A2"])
        assert result is None
        assert isinstance(error, SeatUnavailable)
        assert error.unavailable_seats == ["A2"]
        seats, status = seats_by_status(engine, show_id)
        assert seats["A1"] == "free"
        assert status["available_seats"] == 2
        assert_invariants(engine, show_id)

    def test_expired_hold_is_reclaimed_lazily(self, engine, show_id, clock):
        first, _ = engine.request_booking(show_id, "alice", ["A1"], hold_duration_seconds=60)
        clock.advance(61)
        second, error = engine.request_booking(show_id, "bob", ["A1"])
        assert error is None
        assert engine.get_hold(first["hold_id"])[0]["status"] == "expired"
        assert second["user_id"] == "bob"
        assert_invariants(engine, show_id)

    @pytest.mark.parametrize("duration", [0, -5, 10**15, 2.5])
    def test_out_of_range_hold_duration_rejected(self, engine, show_id, duration):
        _, error = engine.request_booking(show_id, "alice", ["A1"], hold_duration_seconds=duration)
        assert isinstance(error, InvalidRequest)
        assert seats_by_status(engine, show_id)[1]["available_seats"] == 3

    def test_version_bumps_on_every_mutation(self, engine, show_id):
        before = seats_by_status(engine, show_id)[1]["version"]
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        engine.confirm_booking(hold["hold_id"])
        after = seats_by_status(engine, show_id)[1]["version"]
        assert after == before + 2


class TestConfirmBooking:
    def test_scenario_hold_conflict_confirm_rebook(self, engine, show_id, payments):
        h1, error = engine.request_booking(show_id, "alice", ["A1", "A2"])
        assert error is None
        assert seats_by_status(engine, show_id)[1]["available_seats"] == 1

        _, error = engine.request_booking(show_id, "bob", ["A2", "A3"])
        assert isinstance(error, SeatUnavailable)

        booking, error = engine.confirm_booking(h1["hold_id"], {"token": "tok_visa"})
        assert error is None
        assert booking["status"] == "confirmed"
        assert booking["booking_id"] == h1["hold_id"]
        assert booking["transaction_id"] in payments.captures
        seats, status = seats_by_status(engine, show_id)
        assert seats["A1"] == seats["A2"] == "booked"
        assert status["available_seats"] == 1

        h3, error = engine.request_booking(show_id, "bob", ["A3"])
        assert error is None
        assert h3["seat_labels"] == ["A3"]
        assert_invariants(engine, show_id)

    def test_confirm_after_expiry_fails_and_frees_seats(self, engine, show_id, clock, payments):
        hold, _ = engine.request_booking(show_id, "alice", ["A1", "A2"])
        clock.advance(601)
        result, error = engine.confirm_booking(hold["hold_id"])
        assert result is None
        assert isinstance(error, HoldExpired)
        assert error.http_status == 410
        assert payments.captures == {}
        seats, status = seats_by_status(engine, show_id)
        assert seats["A1"] == seats["A2"] == "free"
        assert status["available_seats"] == 3
        assert_invariants(engine, show_id)

    def test_confirm_after_sweep_reports_expired(self, engine, show_id, clock):
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        clock.advance(601)
        assert engine.sweep_expired() == 1
        _, error = engine.confirm_booking(hold["hold_id"])
        assert isinstance(error, HoldExpired)

    def test_confirm_twice_is_already_final(self, engine, show_id):
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        engine.confirm_booking(hold["hold_id"])
        _, error = engine.confirm_booking(hold["hold_id"])
        assert isinstance(error, AlreadyFinal)

    @pytest.mark.parametrize("hold_id", ["not-a-uuid", "0b5e8a1e-3f1c-4d8e-9d51-7a0f2c7f3b11", None])
    def test_confirm_unknown_hold(self, engine, show_id, hold_id):
        _, error = engine.confirm_booking(hold_id)
        assert isinstance(error, HoldNotFound)

    def test_declined_payment_releases_hold(self, engine, show_id):
        hold, _ = engine.request_booking(show_id, "alice", ["A1", "A2"])
        result, error = engine.confirm_booking(hold["hold_id"], {"token": "tok_decline"})
        assert result is None
        assert isinstance(error, PaymentDeclined)
        assert engine.get_hold(hold["hold_id"])[0]["status"] == "released"
        assert seats_by_status(engine, show_id)[1]["available_seats"] == 3
        assert_invariants(engine, show_id)

    def test_payment_timeout_releases_hold(self, engine, show_id):
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        _, error = engine.confirm_booking(hold["hold_id"], {"token": "tok_timeout"})
        assert isinstance(error, PaymentTimeout)
        assert error.http_status == 504
        history, _ = engine.booking_history(hold["hold_id"])
        assert history[-1]["to_status"] == "released"
        assert history[-1]["reason"] == "payment_timeout"

    def test_unreadable_gateway_reply_releases_hold(self, db, catalog, settings, clock, show_id):
        reply = requests.Response()
        reply.status_code = 200
        reply._content = b"<html>oops</html>"

        class HtmlSession:
            def post(self, url, **kwargs):
                return reply

        payments = HttpPaymentCoordinator("https://pay.example", session=HtmlSession())
        engine = ReservationEngine(db, payments, catalog=catalog, settings=settings, clock=clock)
        hold, _ = engine.request_booking(show_id, "alice", ["A1", "A2"])
        result, error = engine.confirm_booking(hold["hold_id"], {"token": "tok_visa"})
        assert result is None
        assert isinstance(error, PaymentTimeout)
        assert engine.get_hold(hold["hold_id"])[0]["status"] == "released"
        assert seats_by_status(engine, show_id)[1]["available_seats"] == 3
        assert_invariants(engine, show_id)

    def test_payment_timeouts_are_retried(self, db, catalog, settings, clock, show_id):
        settings.payment_max_attempts = 3
        payments = ScriptedPayments(timeouts=2)
        engine = ReservationEngine(db, payments, catalog=catalog, settings=settings, clock=clock)
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        booking, error = engine.confirm_booking(hold["hold_id"])
        assert error is None
        assert booking["status"] == "confirmed"
        assert payments.attempts == 3

    def test_hold_expiring_during_payment_is_refunded(self, db, catalog, settings, clock, show_id):
        payments = ScriptedPayments(before_capture=lambda: clock.advance(601))
        engine = ReservationEngine(db, payments, catalog=catalog, settings=settings, clock=clock)
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        _, error = engine.confirm_booking(hold["hold_id"])
        assert isinstance(error, HoldExpired)
        assert payments.refunds == list(payments.captures)
        assert seats_by_status(engine, show_id)[1]["available_seats"] == 3
        assert_invariants(engine, show_id)

    def test_sweep_winning_race_against_confirm(self, db, catalog, settings, clock, show_id):
        holder = {}

        def sweep_first():
            clock.advance(601)
            assert holder["engine"].sweep_expired() == 1

        payments = ScriptedPayments(before_capture=sweep_first)
        engine = ReservationEngine(db, payments, catalog=catalog, settings=settings, clock=clock)
        holder["engine"] = engine
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        _, error = engine.confirm_booking(hold["hold_id"])
        assert isinstance(error, HoldExpired)
        assert len(payments.refunds) == 1
        assert engine.get_hold(hold["hold_id"])[0]["status"] == "expired"


class TestCancelBooking:
    def test_cancel_confirmed_booking_frees_seats_once(self, engine, show_id, payments):
        hold, _ = engine.request_booking(show_id, "alice", ["A1", "A2"])
        booking, _ = engine.confirm_booking(hold["hold_id"])

        cancelled, error = engine.cancel_booking(booking["booking_id"])
        assert error is None
        assert cancelled["status"] == "cancelled"
        assert cancelled["refund_status"] == "refunded"
        assert payments.refunds == [booking["transaction_id"]]
        seats, status = seats_by_status(engine, show_id)
        assert set(seats.values()) == {"free"}
        assert status["available_seats"] == 3
        assert_invariants(engine, show_id)

        _, error = engine.cancel_booking(booking["booking_id"])
        assert isinstance(error, AlreadyFinal)

    def test_cancel_active_hold_releases_it(self, engine, show_id):
        hold, _ = engine.request_booking(show_id, "alice", ["A3"])
        released, error = engine.cancel_booking(hold["hold_id"])
        assert error is None
        assert released["status"] == "released"
        assert seats_by_status(engine, show_id)[1]["available_seats"] == 3
        _, error = engine.cancel_booking(hold["hold_id"])
        assert isinstance(error, AlreadyFinal)

    def test_failed_refund_keeps_booking_cancelled(self, engine, show_id, payments):
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        booking, _ = engine.confirm_booking(hold["hold_id"])
        payments.failing_refunds.add(booking["transaction_id"])

        cancelled, error = engine.cancel_booking(booking["booking_id"])
        assert error is None
        assert cancelled["status"] == "cancelled"
        assert cancelled["refund_status"] == "failed"
        assert seats_by_status(engine, show_id)[0]["A1"] == "free"
        assert engine.get_booking(booking["booking_id"])[0]["status"] == "cancelled"

    def test_release_hold_refuses_confirmed_booking(self, engine, show_id):
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        engine.confirm_booking(hold["hold_id"])
        _, error = engine.release_hold(hold["hold_id"])
        assert isinstance(error, AlreadyFinal)
        assert seats_by_status(engine, show_id)[0]["A1"] == "booked"

    def test_cancel_unknown(self, engine, show_id):
        _, error = engine.cancel_booking("0b5e8a1e-3f1c-4d8e-9d51-7a0f2c7f3b11")
        assert isinstance(error, HoldNotFound)


class TestSweepExpired:
    def test_two_second_hold_is_swept(self, engine, show_id, clock):
        before = seats_by_status(engine, show_id)[1]["available_seats"]
        hold, _ = engine.request_booking(show_id, "alice", ["A1", "A3"], hold_duration_seconds=2)
        assert seats_by_status(engine, show_id)[1]["available_seats"] == before - 2

        clock.advance(1)
        assert engine.sweep_expired() == 0
        clock.advance(2)
        assert engine.sweep_expired() == 1

        assert engine.get_hold(hold["hold_id"])[0]["status"] == "expired"
        assert seats_by_status(engine, show_id)[1]["available_seats"] == before
        history, _ = engine.booking_history(hold["hold_id"])
        assert [event["to_status"] for event in history] == ["active", "expired"]
        assert_invariants(engine, show_id)

    def test_sweep_leaves_confirmed_and_fresh_holds(self, engine, show_id, clock):
        confirmed, _ = engine.request_booking(show_id, "alice", ["A1"], hold_duration_seconds=10)
        engine.confirm_booking(confirmed["hold_id"])
        engine.request_booking(show_id, "bob", ["A2"], hold_duration_seconds=1000)
        clock.advance(20)
        assert engine.sweep_expired() == 0
        seats, _ = seats_by_status(engine, show_id)
        assert seats == {"A1": "booked", "A2": "held", "A3": "free"}


class TestReads:
    def test_get_booking_only_returns_bookings(self, engine, show_id):
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        _, error = engine.get_booking(hold["hold_id"])
        assert isinstance(error, HoldNotFound)
        engine.confirm_booking(hold["hold_id"])
        booking, error = engine.get_booking(hold["hold_id"])
        assert error is None
        assert booking["seat_labels"] == ["A1"]

    def test_list_bookings_for_user(self, engine, show_id, clock):
        first, _ = engine.request_booking(show_id, "alice", ["A1"])
        engine.confirm_booking(first["hold_id"])
        clock.advance(5)
        second, _ = engine.request_booking(show_id, "alice", ["A2"])
        engine.confirm_booking(second["hold_id"])
        engine.request_booking(show_id, "alice", ["A3"])
        engine.request_booking(show_id, "bob", [])

        bookings, error = engine.list_bookings_for_user("alice")
        assert error is None
        assert [b["booking_id"] for b in bookings] == [second["hold_id"], first["hold_id"]]
        assert engine.list_bookings_for_user("bob") == ([], None)

    def test_booking_history_records_every_transition(self, engine, show_id):
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        engine.confirm_booking(hold["hold_id"])
        engine.cancel_booking(hold["hold_id"])
        history, _ = engine.booking_history(hold["hold_id"])
        assert [(e["from_status"], e["to_status"]) for e in history] == [
            (None, "active"),
            ("active", "confirmed"),
            ("confirmed", "cancelled"),
            ("cancelled", "cancelled"),
        ]
        assert history[-1]["reason"] == "refund completed"

    def test_reset_all(self, engine, show_id):
        hold, _ = engine.request_booking(show_id, "alice", ["A1"])
        engine.confirm_booking(hold["hold_id"])
        engine.request_booking(show_id, "bob", ["A2"])
        result, error = engine.reset_all()
        assert error is None
        assert result["holds_cleared"] == 2
        seats, status = seats_by_status(engine, show_id)
        assert set(seats.values()) == {"free"}
        assert status["available_seats"] == 3
        assert_invariants(engine, show_id)


class TestConcurrency:
    def test_same_seat_exactly_one_winner(self, engine, show_id):
        barrier = threading.Barrier(8)

        def attempt(user):
            barrier.wait()
            return engine.request_booking(show_id, user, ["A2"])

        with ThreadPoolExecutor(max_workers=8) as executor:
            outcomes = list(executor.map(attempt, [f"user{i}" for i in range(8)]))

        winners = [result for result, error in outcomes if error is None]
        losers = [error for result, error in outcomes if error is not None]
        assert len(winners) == 1
        assert all(isinstance(error, SeatUnavailable) for error in losers)
        assert seats_by_status(engine, show_id)[1]["available_seats"] == 2
        assert_invariants(engine, show_id)

    def test_overlapping_requests_serialize(self, engine, show_id):
        barrier = threading.Barrier(2)

        def attempt(labels):
            barrier.wait()
            return engine.request_booking(show_id, "u", labels)

        with ThreadPoolExecutor(max_workers=2) as executor:
            outcomes = list(executor.map(attempt, [["A1", "A2"], ["A2", "A3"]]))

        assert sum(1 for _, error in outcomes if error is None) == 1
        assert_invariants(engine, show_id)

    def test_other_shows_do_not_wait(self, engine, show_id):
        engine.initialize_show("other_show", ["B1"])
        lock = engine.locks.lock_for(show_id)
        lock.acquire()
        try:
            done = threading.Event()
            outcome = {}

            def book_other():
                outcome["value"] = engine.request_booking("other_show", "bob", ["B1"])
                done.set()

            worker = threading.Thread(target=book_other)
            worker.start()
            assert done.wait(10), "booking on another show blocked behind this show's lock"
            assert outcome["value"][1] is None
        finally:
            lock.release()
            worker.join()

    def test_random_contention_keeps_invariants(self, engine):
        seats = [f"{row}{num}" for row in "ABCD" for num in range(1, 6)]
        engine.initialize_show("busy_show", seats)
        rng = random.Random(7)
        plans = [(f"user{i}", rng.sample(seats, 2), rng.random() < 0.6) for i in range(40)]

        def user_flow(plan):
            user, chosen, book = plan
            hold, error = engine.request_booking("busy_show", user, chosen)
            if error:
                return "hold_failed"
            if not book:
                engine.release_hold(hold["hold_id"])
                return "abandoned"
            _, error = engine.confirm_booking(hold["hold_id"])
            return "booked" if error is None else "book_failed"

        with ThreadPoolExecutor(max_workers=10) as executor:
            results = list(executor.map(user_flow, plans))

        booked_seats = []
        for user, _, _ in plans:
            for booking in engine.list_bookings_for_user(user)[0]:
                booked_seats.extend(booking["seat_labels"])

        assert len(booked_seats) == len(set(booked_seats))
        assert len(booked_seats) == 2 * results.count("booked")
        state, status = seats_by_status(engine, "busy_show")
        assert sorted(label for label, s in state.items() if s == "booked") == sorted(booked_seats)
        assert status["held_seats"] == 0
        assert_invariants(engine, "busy_show")


def test_seed_layout_matches_fixture(engine, show_id):
    seats, _ = seats_by_status(engine, show_id)
    assert sorted(seats) == SHOW_SEATS
