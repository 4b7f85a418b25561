from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import restobot.models  # noqa: F401
from restobot.core.database import Base
from restobot.fsm import states
from restobot.fsm.engine import parse_reservation_date, process_event
from restobot.fsm.events import (
    CreateReservation,
    InboundEvent,
    OptionInput,
    SendButtons,
    SendList,
    SendText,
    StartCheckout,
)
from restobot.models.conversation import Conversation
from restobot.models.menu_item import MenuItem
from restobot.models.order import Order
from tests.fixtures_data import CUSTOMER_PHONE, DELIVERY_DETAILS, MENU_ITEMS, NOW


def _build_db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    db = testing_session_local()
    for data in MENU_ITEMS:
        db.add(MenuItem(**data))
    db.commit()
    return db


def _conversation(db, step=states.WELCOME, cart=None, scratch=None):
    conversation = Conversation(
        customer_id=CUSTOMER_PHONE,
        step=step,
        cart=cart or [],
        scratch=scratch or {},
    )
    db.add(conversation)
    db.commit()
    return conversation


def _send(db, conversation, text=None, option=None, now=NOW):
    result = process_event(
        db,
        conversation,
        InboundEvent(customer_id=CUSTOMER_PHONE, text=text, selected_option_id=option),
        now=now,
    )
    db.commit()
    return result


def _bodies(result):
    return "\n".join(message.body for message in result.messages)


def _option_ids(message):
    if isinstance(message, SendButtons):
        return [option.id for option in message.options]
    if isinstance(message, SendList):
        return [row.id for section in message.sections for row in section.rows]
    return []


def test_greeting_shows_main_menu_buttons():
    db = _build_db()
    conversation = _conversation(db)

    result = _send(db, conversation, text="Hi")

    assert conversation.step == states.MAIN_MENU
    assert isinstance(result.messages[0], SendButtons)
    assert _option_ids(result.messages[0]) == ["browse_menu", "reserve_table", "my_orders"]
    assert result.commands == []


def test_browsing_lists_available_categories_in_menu_order_and_items():
    db = _build_db()
    conversation = _conversation(db, step=states.MAIN_MENU)

    categories = _send(db, conversation, option="browse_menu")

    assert conversation.step == states.BROWSING_CATEGORY
    assert _option_ids(categories.messages[0]) == ["cat_starters", "cat_main_course"]

    items = _send(db, conversation, option="cat_starters")

    assert conversation.step == states.BROWSING_ITEMS
    assert conversation.scratch["category"] == "Starters"
    assert _option_ids(items.messages[0]) == ["item_2", "item_1"]


def test_viewing_and_adding_item_snapshots_price_into_cart():
    db = _build_db()
    conversation = _conversation(db, step=states.BROWSING_ITEMS, scratch={"category": "Starters"})

    detail = _send(db, conversation, option="item_1")
    assert conversation.step == states.VIEWING_ITEM
    assert "Paneer Tikka" in detail.messages[0].body
    assert "add_1_1" in _option_ids(detail.messages[0])

    added = _send(db, conversation, option="add_1_1")

    assert conversation.step == states.MAIN_MENU
    assert conversation.cart == [
        {"item_id": 1, "name": "Paneer Tikka", "quantity": 1, "unit_price_cents": 25000}
    ]
    assert "Cart total: ₹250" in added.messages[0].body


def test_cart_keeps_price_from_when_item_was_added():
    db = _build_db()
    conversation = _conversation(db, step=states.VIEWING_ITEM, scratch={"viewing_item_id": 1})
    _send(db, conversation, text="add")

    item = db.query(MenuItem).filter(MenuItem.id == 1).first()
    item.price_cents = 30000
    db.commit()

    result = _send(db, conversation, option="view_cart")

    assert conversation.step == states.CART_MANAGEMENT
    assert "Total: ₹250*" in result.messages[0].body
    assert "₹300" not in result.messages[0].body


def test_checkout_with_empty_cart_reprompts_without_changing_step():
    db = _build_db()
    conversation = _conversation(db, step=states.MAIN_MENU)

    result = _send(db, conversation, option="checkout")

    assert conversation.step == states.MAIN_MENU
    assert "cart is empty" in _bodies(result)
    assert result.commands == []


def test_checkout_skips_lines_for_deleted_menu_items():
    db = _build_db()
    cart = [{"item_id": 999, "name": "Ghost Dish", "quantity": 1, "unit_price_cents": 1000}]
    conversation = _conversation(db, step=states.MAIN_MENU, cart=cart)

    result = _send(db, conversation, option="checkout")

    assert conversation.step == states.MAIN_MENU
    assert "cart is empty" in _bodies(result)


def test_delivery_checkout_collects_every_field_with_validation():
    db = _build_db()
    cart = [{"item_id": 1, "name": "Paneer Tikka", "quantity": 2, "unit_price_cents": 25000}]
    conversation = _conversation(db, step=states.MAIN_MENU, cart=cart)

    _send(db, conversation, option="checkout")
    assert conversation.step == states.AWAITING_NAME

    rejected = _send(db, conversation, text="A")
    assert conversation.step == states.AWAITING_NAME
    assert "valid name" in _bodies(rejected)

    _send(db, conversation, text=DELIVERY_DETAILS["name"])
    assert conversation.step == states.AWAITING_ORDER_TYPE

    _send(db, conversation, option="delivery")
    assert conversation.step == states.AWAITING_ADDRESS

    _send(db, conversation, text="abc")
    assert conversation.step == states.AWAITING_ADDRESS

    _send(db, conversation, text=DELIVERY_DETAILS["address"])
    _send(db, conversation, text=DELIVERY_DETAILS["city"])
    _send(db, conversation, text=DELIVERY_DETAILS["state"])
    assert conversation.step == states.AWAITING_PINCODE

    short = _send(db, conversation, text="5600")
    assert conversation.step == states.AWAITING_PINCODE
    assert short.commands == []

    done = _send(db, conversation, text=DELIVERY_DETAILS["pincode"])

    assert done.commands == [StartCheckout()]
    assert conversation.scratch["order_type"] == "delivery"
    assert conversation.scratch["pincode"] == "560038"
    assert conversation.scratch["name"] == "Asha Rao"


def test_takeaway_skips_address_and_clears_stale_address_fields():
    db = _build_db()
    cart = [{"item_id": 1, "name": "Paneer Tikka", "quantity": 1, "unit_price_cents": 25000}]
    scratch = {"name": "Asha", "address": "old street", "city": "Old City"}
    conversation = _conversation(db, step=states.AWAITING_ORDER_TYPE, cart=cart, scratch=scratch)

    result = _send(db, conversation, text="Take away")

    assert result.commands == [StartCheckout()]
    assert conversation.scratch["order_type"] == "takeaway"
    assert "address" not in conversation.scratch
    assert "city" not in conversation.scratch


def test_unknown_order_type_reprompts_with_buttons():
    db = _build_db()
    conversation = _conversation(db, step=states.AWAITING_ORDER_TYPE, scratch={"name": "Asha"})

    result = _send(db, conversation, text="by drone")

    assert conversation.step == states.AWAITING_ORDER_TYPE
    assert _option_ids(result.messages[0]) == ["delivery", "takeaway", "dine_in"]


def test_parse_reservation_date_rejects_impossible_dates():
    assert parse_reservation_date("31/13/2024") is None
    assert parse_reservation_date("30/02/2026") is None
    assert parse_reservation_date("2026-01-25") is None
    assert parse_reservation_date("25/01/2027").isoformat() == "2027-01-25"


def test_reservation_flow_validates_date_and_party_size():
    db = _build_db()
    conversation = _conversation(db, step=states.MAIN_MENU)

    _send(db, conversation, text="I want to book a table")
    assert conversation.step == states.RESERVATION_NAME

    _send(db, conversation, text="Asha")
    assert conversation.step == states.RESERVATION_DATE

    invalid = _send(db, conversation, text="31/13/2024")
    assert conversation.step == states.RESERVATION_DATE
    assert "Invalid date" in _bodies(invalid)

    past = _send(db, conversation, text="01/01/2026")
    assert conversation.step == states.RESERVATION_DATE
    assert "already passed" in _bodies(past)

    _send(db, conversation, text="25/01/2027")
    assert conversation.step == states.RESERVATION_TIME
    assert conversation.scratch["reservation_date"] == "2027-01-25"

    _send(db, conversation, text="7:30 PM")
    assert conversation.step == states.RESERVATION_PARTY_SIZE

    for bad in ("0", "21", "four"):
        _send(db, conversation, text=bad)
        assert conversation.step == states.RESERVATION_PARTY_SIZE

    _send(db, conversation, text="4")
    assert conversation.step == states.RESERVATION_SPECIAL_REQUESTS
    assert conversation.scratch["party_size"] == 4

    done = _send(db, conversation, text="None")

    assert done.commands == [CreateReservation()]
    assert conversation.scratch["special_requests"] == ""


def test_reservation_date_today_in_local_timezone_is_accepted():
    db = _build_db()
    conversation = _conversation(db, step=states.RESERVATION_DATE, scratch={"reservation_name": "Asha"})

    _send(db, conversation, text="10/03/2026")

    assert conversation.step == states.RESERVATION_TIME


def test_unknown_step_is_reset_to_main_menu():
    db = _build_db()
    conversation = _conversation(db, step="legacy_state")

    result = _send(db, conversation, text="qwerty")

    assert conversation.step == states.MAIN_MENU
    assert "didn't understand" in _bodies(result)


def test_status_keyword_takes_precedence_over_order_keyword():
    db = _build_db()
    db.add(Order(id=7, customer_id=CUSTOMER_PHONE, customer_name="Asha", total_cents=25000, status="preparing"))
    db.commit()
    conversation = _conversation(db, step=states.MAIN_MENU)

    status = _send(db, conversation, text="order status")
    assert "*Order #7*" in status.messages[0].body
    assert "Being Prepared" in status.messages[0].body

    listing = _send(db, conversation, text="my orders")
    assert "Your Recent Orders" in listing.messages[0].body


def test_payment_pending_free_text_repeats_payment_link():
    db = _build_db()
    db.add(
        Order(
            id=11,
            customer_id=CUSTOMER_PHONE,
            customer_name="Asha",
            total_cents=25000,
            status="payment_pending",
            payment_status="pending",
            payment_provider_ref="plink_1",
            payment_link_url="https://rzp.io/i/abc",
        )
    )
    db.commit()
    conversation = Conversation(customer_id=CUSTOMER_PHONE, step=states.PAYMENT_PENDING, cart=[], scratch={})
    conversation.active_order_id = 11
    db.add(conversation)
    db.commit()

    result = _send(db, conversation, text="did it go through?")

    assert conversation.step == states.PAYMENT_PENDING
    assert "https://rzp.io/i/abc" in result.messages[0].body


def test_help_is_available_from_any_step():
    db = _build_db()
    conversation = _conversation(db, step=states.AWAITING_CITY, scratch={"address": "12 MG Road"})

    result = _send(db, conversation, text="help")

    assert conversation.step == states.AWAITING_CITY
    assert isinstance(result.messages[0], SendText)
    assert "Help & Commands" in result.messages[0].body


def test_selected_option_wins_over_text():
    db = _build_db()
    cart = [{"item_id": 1, "name": "Paneer Tikka", "quantity": 1, "unit_price_cents": 25000}]
    conversation = _conversation(db, step=states.MAIN_MENU, cart=cart)

    event = InboundEvent(customer_id=CUSTOMER_PHONE, text="hi", selected_option_id=" View_Cart ")
    result = _send(db, conversation, text="hi", option=" View_Cart ")

    assert event.to_input() == OptionInput("view_cart")
    assert conversation.step == states.CART_MANAGEMENT
    assert "Welcome" not in _bodies(result)
    assert _option_ids(result.messages[-1]) == ["checkout", "browse_menu", "clear_cart"]
