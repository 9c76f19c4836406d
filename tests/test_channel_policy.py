from decimal import Decimal

import pytest

from order_engine.services.orders import channel_policy
from order_engine.services.orders.entities import Channel, Order, OrderItem

from .conftest import item


def make_order(channel: Channel, **fields) -> Order:
    return Order(id="order-test", channel=channel, items=[item()], **fields)


class TestRules:
    def test_only_delivery_and_takeaway_pay_up_front(self):
        assert channel_policy.rules_for(Channel.DELIVERY).payment_upfront_required
        assert channel_policy.rules_for(Channel.TAKEAWAY).payment_upfront_required
        assert not channel_policy.rules_for(Channel.LOCAL).payment_upfront_required

    def test_every_channel_has_rules(self):
        assert set(channel_policy.CHANNEL_RULES) == set(Channel)


class TestValidate:
    def test_local_needs_nothing(self):
        assert channel_policy.validate(make_order(Channel.LOCAL)) == []

    def test_delivery_without_phone_names_the_field(self):
        violations = channel_policy.validate(make_order(Channel.DELIVERY, customer_name="Ana"))

        assert [v.field for v in violations] == ["customerPhone"]
        assert violations[0].message == "channel 'delivery' requires customerPhone"

    def test_delivery_reports_every_missing_field(self):
        violations = channel_policy.validate(make_order(Channel.DELIVERY))
        assert {v.field for v in violations} == {"customerName", "customerPhone"}

    def test_whitespace_counts_as_blank(self):
        violations = channel_policy.validate(make_order(Channel.TAKEAWAY, customer_name="   "))
        assert [v.field for v in violations] == ["customerName"]

    def test_takeaway_with_name_is_valid(self):
        assert channel_policy.validate(make_order(Channel.TAKEAWAY, customer_name="Jorge")) == []


class TestValidateItems:
    def test_valid_items_pass(self):
        assert channel_policy.validate_items([item(), item(price="0.00")]) == []

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
    def test_bad_quantity(self, quantity):
        bad = OrderItem(name="Agua", price=Decimal("3.00"), quantity=quantity, category="bebidas")
        violations = channel_policy.validate_items([bad])
        assert [v.field for v in violations] == ["items[0].quantity"]

    def test_negative_price(self):
        violations = channel_policy.validate_items([item(price="-1.00")])
        assert [v.field for v in violations] == ["items[0].price"]

    def test_index_offset_for_appended_items(self):
        violations = channel_policy.validate_items([item(name="")], start_index=3)
        assert [v.field for v in violations] == ["items[3].name"]

    def test_empty_order_has_no_items_violation(self):
        order = Order(id="order-empty", channel=Channel.LOCAL)
        assert [v.field for v in channel_policy.validate_has_items(order)] == ["items"]


class TestApplyDefaults:
    def test_local_with_table_gets_mesa_name(self):
        order = make_order(Channel.LOCAL, table_number="4")
        channel_policy.apply_defaults(order, "Cliente Local")
        assert order.customer_name == "Mesa 4"

    def test_local_without_table_gets_placeholder(self):
        order = make_order(Channel.LOCAL)
        channel_policy.apply_defaults(order, "Cliente Local")
        assert order.customer_name == "Cliente Local"

    def test_given_name_is_kept(self):
        order = make_order(Channel.LOCAL, customer_name="Rosa", table_number="2")
        channel_policy.apply_defaults(order, "Cliente Local")
        assert order.customer_name == "Rosa"

    def test_other_channels_are_untouched(self):
        order = make_order(Channel.TAKEAWAY)
        channel_policy.apply_defaults(order, "Cliente Local")
        assert order.customer_name is None

    def test_default_name_follows_new_table(self):
        before = make_order(Channel.LOCAL, customer_name="Mesa 3", table_number="3")
        after = make_order(Channel.LOCAL, customer_name="Mesa 3", table_number="5")
        channel_policy.apply_defaults(after, "Cliente Local", previous=before)
        assert after.customer_name == "Mesa 5"

    def test_chosen_name_survives_table_change(self):
        before = make_order(Channel.LOCAL, customer_name="Rosa", table_number="3")
        after = make_order(Channel.LOCAL, customer_name="Rosa", table_number="5")
        channel_policy.apply_defaults(after, "Cliente Local", previous=before)
        assert after.customer_name == "Rosa"

    def test_placeholder_becomes_table_name(self):
        before = make_order(Channel.LOCAL, customer_name="Cliente Local")
        after = make_order(Channel.LOCAL, customer_name="Cliente Local", table_number="2")
        channel_policy.apply_defaults(after, "Cliente Local", previous=before)
        assert after.customer_name == "Mesa 2"
