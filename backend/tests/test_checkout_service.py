# Overview: Pytest coverage for checkout commit, idempotency and compensation.

import threading

import pytest

from storefront.models import CheckoutAttempt, DiscountUsage, Order, OrderLine, Payment, Product
from storefront.services.cart_service import CartStore
from storefront.services.checkout_service import (
    CheckoutOrchestrator,
    CommitCancelled,
    CommitFailure,
    CommitInProgress,
    compute_tax_cents,
)
from storefront.services.ledger_store import InsufficientStock, PaymentNotFound, PaymentStateError
from storefront.validation import ValidationError


def _stock(db_session, product_id):
    return db_session.query(Product.stock).filter_by(id=product_id).scalar()


def _snapshot(*items):
    cart = CartStore()
    for product, qty in items:
        cart.add(product, qty)
    return cart.snapshot()


def _cash(runtime, snapshot, staff, key="key-1", tendered=10_000_000, **kwargs):
    return runtime.orchestrator.commit(
        snapshot, "cash", tendered, idempotency_key=key, authorized_by=staff.id, **kwargs
    )


class TestHappyPath:
    def test_cash_sale_records_everything(self, runtime, db_session, make_product, staff):
        eggs = make_product("Eggs", price_cents=1000, stock=10)
        milk = make_product("Milk", price_cents=250, stock=10)

        receipt = _cash(runtime, _snapshot((eggs, 2), (milk, 4)), staff, tendered=5000)

        assert receipt.total_cents == 3000
        assert receipt.change_cents == 2000
        assert receipt.receipt_number == "R-000001"
        assert receipt.replayed is False
        assert _stock(db_session, eggs.id) == 8
        assert _stock(db_session, milk.id) == 6

        order = db_session.get(Order, receipt.order_id)
        assert order.status == "completed"
        assert order.total_cents == 3000
        assert db_session.query(OrderLine).filter_by(order_id=order.id).count() == 2

        payment = db_session.query(Payment).filter_by(order_id=order.id).one()
        assert payment.method == "cash"
        assert payment.tendered_cents == 5000
        assert payment.change_cents == 2000
        assert payment.authorized_by == staff.id

        attempt = db_session.query(CheckoutAttempt).filter_by(idempotency_key="key-1").one()
        assert attempt.status == "committed"
        assert attempt.order_id == order.id

    def test_discount_applied_and_usage_recorded(self, runtime, db_session, make_product,
                                                 make_campaign, make_customer, staff):
        product = make_product(price_cents=1000, stock=10)
        campaign, _ = make_campaign(product, "percentage", 20, maximum_usage_per_customer=1)
        customer = make_customer()

        receipt = _cash(runtime, _snapshot((product, 2)), staff, customer_id=customer.id)

        assert receipt.gross_cents == 2000
        assert receipt.discount_cents == 400
        assert receipt.total_cents == 1600
        assert receipt.lines[0].unit_price_cents == 800
        assert receipt.applied_discounts[0]["campaign_id"] == campaign.id

        usage = db_session.query(DiscountUsage).one()
        assert usage.customer_id == customer.id
        assert usage.order_id == receipt.order_id
        assert usage.discount_cents == 400

    def test_buy_x_get_y_splits_free_units(self, runtime, make_product, make_campaign, staff):
        product = make_product("Milk", price_cents=500, stock=20)
        make_campaign(product, "buy_x_get_y", buy_quantity=2, get_quantity=1)

        receipt = _cash(runtime, _snapshot((product, 6)), staff)

        charged, free = receipt.lines
        assert (charged.quantity, charged.unit_price_cents) == (4, 500)
        assert (free.quantity, free.unit_price_cents, free.discount_cents) == (2, 0, 500)
        assert free.description == "Milk (free)"
        assert receipt.total_cents == 2000
        for line in receipt.lines:
            assert line.unit_price_cents == line.list_price_cents - line.discount_cents

    def test_commit_uses_current_catalog_price(self, runtime, db_session, make_product, staff):
        product = make_product(price_cents=1000, stock=5)
        snapshot = _snapshot((product, 1))
        product.price_cents = 1200
        db_session.commit()

        receipt = _cash(runtime, snapshot, staff)

        assert receipt.total_cents == 1200

    def test_vat_added_on_discounted_subtotal(self, runtime, make_product, make_campaign, staff):
        product = make_product(price_cents=1000, stock=5)
        make_campaign(product, "percentage", 50)
        orchestrator = CheckoutOrchestrator(runtime.store, runtime.evaluator, vat_rate_bps=1600)

        receipt = orchestrator.commit(
            _snapshot((product, 1)), "card", idempotency_key="vat-1",
        )

        assert receipt.subtotal_cents == 500
        assert receipt.tax_cents == 80
        assert receipt.total_cents == 580

    def test_mpesa_with_reference(self, runtime, make_product):
        product = make_product(stock=5)
        receipt = runtime.orchestrator.commit(
            _snapshot((product, 1)), "mpesa", idempotency_key="m-1", payment_reference=" QJK12AB ",
        )
        assert receipt.payment_reference == "QJK12AB"
        assert receipt.change_cents == 0


class TestIdempotency:
    def test_double_submit_creates_one_order(self, runtime, db_session, make_product, staff):
        product = make_product(price_cents=1000, stock=10)
        snapshot = _snapshot((product, 2))

        first = _cash(runtime, snapshot, staff, key="dup")
        second = _cash(runtime, snapshot, staff, key="dup")

        assert second.replayed is True
        assert second.order_id == first.order_id
        assert second.receipt_number == first.receipt_number
        assert db_session.query(Order).count() == 1
        assert _stock(db_session, product.id) == 8

    def test_replay_ignores_changed_payload(self, runtime, db_session, make_product, staff):
        product = make_product(price_cents=1000, stock=10)
        first = _cash(runtime, _snapshot((product, 2)), staff, key="same")

        again = _cash(runtime, _snapshot((product, 5)), staff, key="same")

        assert again.total_cents == first.total_cents
        assert _stock(db_session, product.id) == 8

    def test_pending_attempt_blocks_concurrent_commit(self, runtime, make_product, staff):
        product = make_product(stock=10)
        runtime.store.claim_attempt("busy")

        with pytest.raises(CommitInProgress):
            _cash(runtime, _snapshot((product, 1)), staff, key="busy")

    @pytest.mark.parametrize("key", ["", "   ", None])
    def test_key_required(self, runtime, make_product, staff, key):
        product = make_product(stock=10)
        with pytest.raises(ValidationError):
            _cash(runtime, _snapshot((product, 1)), staff, key=key)


class TestValidation:
    def test_empty_cart(self, runtime, staff):
        with pytest.raises(ValidationError):
            _cash(runtime, CartStore().snapshot(), staff)

    def test_cash_tendered_below_total(self, runtime, db_session, make_product, staff):
        product = make_product(price_cents=1000, stock=5)
        with pytest.raises(ValidationError) as exc:
            _cash(runtime, _snapshot((product, 2)), staff, tendered=1999)
        assert exc.value.details["total_cents"] == 2000
        assert _stock(db_session, product.id) == 5
        assert db_session.query(CheckoutAttempt).count() == 0

    def test_cash_requires_authorizer(self, runtime, make_product):
        product = make_product(stock=5)
        with pytest.raises(ValidationError):
            runtime.orchestrator.commit(_snapshot((product, 1)), "cash", 5000, idempotency_key="k")

    def test_mpesa_requires_reference(self, runtime, make_product):
        product = make_product(stock=5)
        with pytest.raises(ValidationError):
            runtime.orchestrator.commit(_snapshot((product, 1)), "mpesa", idempotency_key="k")

    def test_unknown_payment_method(self, runtime, make_product):
        product = make_product(stock=5)
        with pytest.raises(ValidationError):
            runtime.orchestrator.commit(_snapshot((product, 1)), "cheque", idempotency_key="k")

    def test_inactive_product(self, runtime, db_session, make_product, staff):
        product = make_product(stock=5)
        snapshot = _snapshot((product, 1))
        product.is_active = False
        db_session.commit()

        with pytest.raises(ValidationError):
            _cash(runtime, snapshot, staff)

    def test_cancel_before_reserving(self, runtime, db_session, make_product, staff):
        product = make_product(stock=5)
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(CommitCancelled):
            _cash(runtime, _snapshot((product, 1)), staff, cancel_event=cancel)

        assert _stock(db_session, product.id) == 5
        assert db_session.query(CheckoutAttempt).count() == 0


class TestCompensation:
    def test_insufficient_stock_releases_earlier_lines(self, runtime, db_session, make_product, staff):
        plenty = make_product("Plenty", stock=5)
        scarce = make_product("Scarce", stock=1)
        snapshot = _snapshot((plenty, 3), (scarce, 1))
        scarce.stock = 0
        db_session.commit()

        with pytest.raises(InsufficientStock) as exc:
            _cash(runtime, snapshot, staff, key="short")

        assert exc.value.details["product_id"] == scarce.id
        assert _stock(db_session, plenty.id) == 5
        assert _stock(db_session, scarce.id) == 0
        assert db_session.query(Order).count() == 0
        attempt = db_session.query(CheckoutAttempt).filter_by(idempotency_key="short").one()
        assert attempt.status == "failed"

    def test_failed_key_can_be_retried(self, runtime, db_session, make_product, staff):
        product = make_product(stock=2)
        snapshot = _snapshot((product, 2))
        product.stock = 1
        db_session.commit()

        with pytest.raises(InsufficientStock):
            _cash(runtime, snapshot, staff, key="retry")

        product.stock = 2
        db_session.commit()
        receipt = _cash(runtime, snapshot, staff, key="retry")

        assert receipt.replayed is False
        assert _stock(db_session, product.id) == 0
        attempt = db_session.query(CheckoutAttempt).filter_by(idempotency_key="retry").one()
        assert attempt.status == "committed"

    def test_recording_failure_cancels_order_and_releases_stock(self, runtime, db_session, make_product,
                                                               staff, monkeypatch):
        product = make_product(stock=5)

        def boom(**kwargs):
            raise RuntimeError("payment table locked")

        monkeypatch.setattr(runtime.store, "create_payment", boom)

        with pytest.raises(CommitFailure) as exc:
            _cash(runtime, _snapshot((product, 2)), staff, key="rec")

        assert exc.value.partial is True
        assert exc.value.needs_reconciliation is False
        assert _stock(db_session, product.id) == 5
        order = db_session.query(Order).one()
        assert order.status == "cancelled"
        attempt = db_session.query(CheckoutAttempt).filter_by(idempotency_key="rec").one()
        assert attempt.status == "failed"
        assert attempt.error["phase"] == "recording"

    def test_failed_compensation_needs_reconciliation(self, runtime, db_session, make_product,
                                                      staff, monkeypatch):
        product = make_product(stock=5)

        def boom(*args, **kwargs):
            raise RuntimeError("database gone")

        monkeypatch.setattr(runtime.store, "create_payment", boom)
        monkeypatch.setattr(runtime.store, "release_stock", boom)

        with pytest.raises(CommitFailure) as exc:
            _cash(runtime, _snapshot((product, 2)), staff, key="stuck")

        assert exc.value.needs_reconciliation is True
        assert exc.value.details["unreleased"] == [{"product_id": product.id, "quantity": 2, "variant_id": None}]

        monkeypatch.undo()
        with pytest.raises(CommitFailure) as again:
            _cash(runtime, _snapshot((product, 1)), staff, key="stuck")
        assert again.value.needs_reconciliation is True
        assert _stock(db_session, product.id) == 3

    def test_status_failure_voids_completed_payment(self, runtime, db_session, make_product,
                                                    staff, monkeypatch):
        product = make_product(price_cents=1000, stock=5)
        update_status = runtime.store.update_order_status

        def lose_completion(order_id, status):
            if status == "completed":
                raise RuntimeError("status update lost")
            return update_status(order_id, status)

        monkeypatch.setattr(runtime.store, "update_order_status", lose_completion)

        with pytest.raises(CommitFailure) as exc:
            _cash(runtime, _snapshot((product, 2)), staff, key="void")

        assert exc.value.needs_reconciliation is False
        order = db_session.query(Order).one()
        payment = db_session.query(Payment).one()
        assert order.status == "cancelled"
        assert payment.status == "failed"
        assert _stock(db_session, product.id) == 5

    def test_payment_left_open_needs_reconciliation(self, runtime, db_session, make_product,
                                                    staff, monkeypatch):
        product = make_product(stock=5)

        def boom(*args, **kwargs):
            raise RuntimeError("database gone")

        update_status = runtime.store.update_order_status

        def lose_completion(order_id, status):
            if status == "completed":
                raise RuntimeError("status update lost")
            return update_status(order_id, status)

        monkeypatch.setattr(runtime.store, "update_order_status", lose_completion)
        monkeypatch.setattr(runtime.store, "update_payment_status", boom)

        with pytest.raises(CommitFailure) as exc:
            _cash(runtime, _snapshot((product, 1)), staff, key="open-pay")

        assert exc.value.needs_reconciliation is True
        assert exc.value.details["payment_left_open"] is True
        assert exc.value.details["unreleased"] == []
        assert _stock(db_session, product.id) == 5

    def test_undone_commit_sends_no_staff_alerts(self, runtime, db_session, make_product, staff):
        runtime.watcher.subscribe()
        last_one = make_product("Last-one", stock=1)
        gone = make_product("Gone", stock=1)
        snapshot = _snapshot((last_one, 1), (gone, 1))
        gone.stock = 0
        db_session.commit()

        with pytest.raises(InsufficientStock):
            _cash(runtime, snapshot, staff, key="quiet-fail")

        assert _stock(db_session, last_one.id) == 1
        assert runtime.notifications.notifications == []

    def test_recording_failure_sends_no_new_order(self, runtime, make_product, staff, monkeypatch):
        runtime.watcher.subscribe()
        product = make_product(stock=1)

        def boom(**kwargs):
            raise RuntimeError("payment table locked")

        monkeypatch.setattr(runtime.store, "create_payment", boom)

        with pytest.raises(CommitFailure):
            _cash(runtime, _snapshot((product, 1)), staff, key="quiet-rec")

        assert runtime.notifications.notifications == []


class TestFinalizing:
    def test_usage_failure_degrades_but_keeps_sale(self, runtime, db_session, make_product,
                                                   make_campaign, staff, monkeypatch):
        product = make_product(price_cents=1000, stock=5)
        make_campaign(product, "percentage", 10)

        def boom(**kwargs):
            raise RuntimeError("usage table unavailable")

        monkeypatch.setattr(runtime.store, "record_discount_usage", boom)

        receipt = _cash(runtime, _snapshot((product, 1)), staff, key="deg")

        assert receipt.degraded is True
        assert receipt.warnings
        assert receipt.total_cents == 900
        assert db_session.get(Order, receipt.order_id).status == "completed"
        attempt = db_session.query(CheckoutAttempt).filter_by(idempotency_key="deg").one()
        assert attempt.status == "degraded"

    def test_ceiling_race_is_refused_at_insert(self, runtime, db_session, make_product,
                                               make_campaign, staff, monkeypatch):
        product = make_product(price_cents=1000, stock=5)
        make_campaign(product, "percentage", 10, maximum_total_usage=1)
        _cash(runtime, _snapshot((product, 1)), staff, key="first")

        # Simulate a terminal whose pre-check ran before the first sale landed.
        monkeypatch.setattr(runtime.guard, "is_usage_allowed", lambda *a, **kw: True)
        receipt = _cash(runtime, _snapshot((product, 1)), staff, key="second")

        assert receipt.degraded is True
        assert db_session.query(DiscountUsage).count() == 1


class TestOnlineMpesa:
    def _order_online(self, runtime, snapshot, key="web-1", reference="ws_CO_1", **kwargs):
        return runtime.orchestrator.commit(
            snapshot, "mpesa", idempotency_key=key, payment_reference=reference, channel="online", **kwargs
        )

    def test_commit_waits_for_confirmation(self, runtime, db_session, make_product):
        product = make_product(price_cents=1000, stock=5)

        receipt = self._order_online(runtime, _snapshot((product, 2)))

        assert receipt.order_status == "pending"
        assert receipt.payment_status == "pending"
        assert db_session.get(Order, receipt.order_id).status == "pending"
        assert db_session.query(Payment).one().status == "pending"
        assert _stock(db_session, product.id) == 3

    def test_pos_mpesa_settles_immediately(self, runtime, db_session, make_product):
        product = make_product(stock=5)
        receipt = runtime.orchestrator.commit(
            _snapshot((product, 1)), "mpesa", idempotency_key="till", payment_reference="QJK12AB",
        )
        assert receipt.order_status == "completed"
        assert db_session.query(Payment).one().status == "completed"

    def test_successful_result_moves_order_to_processing(self, runtime, db_session, make_product):
        product = make_product(stock=5)
        receipt = self._order_online(runtime, _snapshot((product, 1)))

        order = runtime.orchestrator.confirm_payment("ws_CO_1", True, result_code="0", result_desc="Success")

        assert order.status == "processing"
        payment = db_session.query(Payment).one()
        assert payment.status == "completed"
        assert payment.result_code == "0"
        replay = self._order_online(runtime, _snapshot((product, 1)))
        assert replay.order_id == receipt.order_id
        assert replay.payment_status == "completed"
        assert replay.order_status == "processing"

    def test_failed_result_undoes_sale(self, runtime, db_session, make_product, make_campaign, make_customer):
        product = make_product(price_cents=1000, stock=5)
        make_campaign(product, "percentage", 10, maximum_usage_per_customer=1)
        customer = make_customer()
        self._order_online(runtime, _snapshot((product, 2)), customer_id=customer.id)
        assert db_session.query(DiscountUsage).count() == 1

        order = runtime.orchestrator.confirm_payment(
            "ws_CO_1", False, result_code="1032", result_desc="Request cancelled by user",
        )

        assert order.status == "cancelled"
        assert db_session.query(Payment).one().status == "failed"
        assert db_session.query(DiscountUsage).count() == 0
        assert _stock(db_session, product.id) == 5
        attempt = db_session.query(CheckoutAttempt).filter_by(idempotency_key="web-1").one()
        assert attempt.status == "failed"
        assert attempt.error["type"] == "PaymentDeclined"

        retry = self._order_online(runtime, _snapshot((product, 2)), reference="ws_CO_2", customer_id=customer.id)
        assert retry.replayed is False
        assert retry.discount_cents == 200

    def test_redelivered_result_changes_nothing(self, runtime, db_session, make_product):
        product = make_product(stock=5)
        self._order_online(runtime, _snapshot((product, 1)))
        runtime.orchestrator.confirm_payment("ws_CO_1", True, result_code="0")

        order = runtime.orchestrator.confirm_payment("ws_CO_1", True, result_code="0")

        assert order.status == "processing"
        with pytest.raises(PaymentStateError):
            runtime.orchestrator.confirm_payment("ws_CO_1", False, result_code="1")
        assert _stock(db_session, product.id) == 4

    def test_unknown_reference(self, runtime):
        with pytest.raises(PaymentNotFound):
            runtime.orchestrator.confirm_payment("ws_CO_missing", True)
        with pytest.raises(ValidationError):
            runtime.orchestrator.confirm_payment("  ", True)


def test_compute_tax_cents_rounds_half_up():
    assert compute_tax_cents(1000, 0) == 0
    assert compute_tax_cents(1000, 1600) == 160
    assert compute_tax_cents(3, 1650) == 0
    assert compute_tax_cents(10, 1650) == 2
