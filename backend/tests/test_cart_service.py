# Overview: Pytest coverage for cart staging behavior.

from types import SimpleNamespace

import pytest

from storefront.services.cart_service import CartStockLimitError, CartStore
from storefront.validation import ValidationError


def _product(pid=1, name="Milk", price_cents=1000, stock=5):
    return SimpleNamespace(id=pid, name=name, price_cents=price_cents, stock=stock)


def _variant(vid=10, product_id=1, label="500ml", price_cents=600, stock=2):
    return SimpleNamespace(id=vid, product_id=product_id, label=label, price_cents=price_cents, stock=stock)


class TestAdd:
    def test_add_within_stock_updates_totals(self):
        cart = CartStore()
        cart.add(_product(stock=5), 3)

        assert len(cart.lines) == 1
        assert cart.lines[0].quantity == 3
        assert cart.total_cents == 3000
        assert cart.item_count == 3

    def test_add_merges_same_product(self):
        cart = CartStore()
        product = _product(stock=5)
        cart.add(product, 2)
        line = cart.add(product, 2)

        assert len(cart.lines) == 1
        assert line.quantity == 4

    def test_add_over_stock_is_rejected_and_cart_unchanged(self):
        cart = CartStore()
        product = _product(stock=5)
        cart.add(product, 4)

        with pytest.raises(CartStockLimitError) as exc:
            cart.add(product, 2)

        assert exc.value.requested == 6
        assert exc.value.available == 5
        assert cart.lines[0].quantity == 4
        assert cart.total_cents == 4000

    def test_first_add_over_stock_leaves_cart_empty(self):
        cart = CartStore()
        with pytest.raises(CartStockLimitError):
            cart.add(_product(stock=1), 2)
        assert cart.is_empty

    @pytest.mark.parametrize("qty", [0, -1])
    def test_add_rejects_non_positive_quantity(self, qty):
        cart = CartStore()
        with pytest.raises(ValidationError):
            cart.add(_product(), qty)
        assert cart.is_empty

    def test_variant_uses_its_own_price_and_stock(self):
        cart = CartStore()
        product = _product(stock=50)
        variant = _variant(stock=2, price_cents=600)

        line = cart.add(product, 2, variant)
        assert line.unit_price_cents == 600
        assert line.description == "Milk (500ml)"

        with pytest.raises(CartStockLimitError):
            cart.add(product, 1, variant)

    def test_variant_and_base_product_are_separate_lines(self):
        cart = CartStore()
        product = _product(stock=50)
        cart.add(product, 1)
        cart.add(product, 1, _variant())

        assert len(cart.lines) == 2
        assert cart.total_cents == 1600

    def test_variant_of_other_product_is_rejected(self):
        cart = CartStore()
        with pytest.raises(ValidationError):
            cart.add(_product(pid=1), 1, _variant(product_id=2))


class TestSetQuantity:
    def test_delta_within_range(self):
        cart = CartStore()
        cart.add(_product(stock=5), 2)

        line = cart.set_quantity(1, 2)
        assert line.quantity == 4

        line = cart.set_quantity(1, -3)
        assert line.quantity == 1

    def test_delta_past_stock_is_noop(self):
        cart = CartStore()
        cart.add(_product(stock=5), 4)

        line = cart.set_quantity(1, 2)
        assert line.quantity == 4
        assert cart.total_cents == 4000

    def test_delta_below_one_is_noop(self):
        cart = CartStore()
        cart.add(_product(), 1)

        line = cart.set_quantity(1, -1)
        assert line.quantity == 1
        assert not cart.is_empty

    def test_missing_line_returns_none(self):
        assert CartStore().set_quantity(99, 1) is None


class TestRemoveAndClear:
    def test_remove(self):
        cart = CartStore()
        cart.add(_product(pid=1), 1)
        cart.add(_product(pid=2, name="Eggs"), 1)

        assert cart.remove(1) is True
        assert [line.product_id for line in cart.lines] == [2]
        assert cart.remove(1) is False

    def test_clear(self):
        cart = CartStore()
        cart.add(_product(pid=1), 1)
        cart.add(_product(pid=2), 1)
        cart.clear()

        assert cart.is_empty
        assert cart.total_cents == 0


def test_snapshot_is_not_affected_by_later_edits():
    cart = CartStore()
    cart.add(_product(stock=5), 2)
    snapshot = cart.snapshot()

    cart.set_quantity(1, 1)
    cart.add(_product(pid=2, name="Eggs"), 1)
    cart.clear()

    assert len(snapshot.lines) == 1
    assert snapshot.lines[0].quantity == 2
    assert snapshot.total_cents == 2000
