from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable

from sqlalchemy.orm import Session

from restobot.core.config import RESTAURANT_NAME, SUPPORT_EMAIL
from restobot.core.time_utils import format_local, local_today
from restobot.fsm import states
from restobot.fsm.events import (
    CreateReservation,
    EngineResult,
    InboundEvent,
    ListRow,
    OptionInput,
    OutboundMessage,
    SendText,
    StartCheckout,
    TextInput,
    UserInput,
    buttons,
    single_section_list,
)
from restobot.models.conversation import Conversation
from restobot.models.menu_item import MenuItem
from restobot.models.order import (
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PAYMENT_PENDING,
    PAYMENT_PENDING,
    Order,
)
from restobot.models.reservation import Reservation
from restobot.services import catalog
from restobot.services.whatsapp_templates import (
    FULFILLMENT_LABELS,
    ORDER_STATUS_DISPLAY,
    RESERVATION_STATUS_DISPLAY,
    format_amount,
    format_item_lines,
    order_status_label,
)

logger = logging.getLogger(__name__)

NAME_MIN_LENGTH = 2
ADDRESS_MIN_LENGTH = 5
CITY_MIN_LENGTH = 2
STATE_MIN_LENGTH = 2
PINCODE_MIN_LENGTH = 5
TIME_MIN_LENGTH = 4
MIN_PARTY_SIZE = 1
MAX_PARTY_SIZE = 20
MAX_ITEM_QUANTITY = 20
RECENT_LIMIT = 5

GREETINGS = frozenset({"hi", "hii", "hello", "hey", "start"})
DATE_PATTERN = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
PARTY_SIZE_PATTERN = re.compile(r"^[0-9]{1,3}$")
CATEGORY_OPTION = re.compile(r"^cat_([a-z0-9_]+)$")
ITEM_OPTION = re.compile(r"^item_(\d+)$")
ADD_OPTION = re.compile(r"^add_(\d+)(?:_(\d+))?$")

ORDER_TYPE_OPTIONS = {"delivery": "delivery", "takeaway": "takeaway", "dine_in": "dine-in"}
ORDER_TYPE_WORDS = {
    "delivery": "delivery",
    "takeaway": "takeaway",
    "take away": "takeaway",
    "pickup": "takeaway",
    "dine in": "dine-in",
    "dine-in": "dine-in",
    "dine_in": "dine-in",
    "dinein": "dine-in",
}
CHECKOUT_FIELDS = ("name", "order_type", "address", "city", "state", "pincode")
ADDRESS_FIELDS = ("address", "city", "state", "pincode")


@dataclass
class _Turn:
    db: Session
    conversation: Conversation
    now: datetime
    result: EngineResult

    @property
    def step(self) -> str:
        return self.conversation.step

    @property
    def scratch(self) -> dict:
        return dict(self.conversation.scratch or {})

    @property
    def cart(self) -> list[dict]:
        return list(self.conversation.cart or [])

    def goto(self, step: str) -> None:
        self.conversation.step = step

    def say(self, message: OutboundMessage) -> None:
        self.result.messages.append(message)

    def run(self, command) -> None:
        self.result.commands.append(command)

    def remember(self, **values) -> None:
        # JSON columns only notice reassignment
        scratch = self.scratch
        scratch.update(values)
        self.conversation.scratch = scratch

    def forget(self, *keys: str) -> None:
        scratch = self.scratch
        for key in keys:
            scratch.pop(key, None)
        self.conversation.scratch = scratch


Handler = Callable[[_Turn, UserInput], None]
Matcher = Callable[[UserInput], bool]


def parse_reservation_date(text: str) -> date | None:
    match = DATE_PATTERN.match((text or "").strip())
    if not match:
        return None
    day, month, year = (int(part) for part in match.groups())
    try:
        return date(year, month, day)
    except ValueError:
        return None


# --- matchers ------------------------------------------------------------


def _option(*option_ids: str) -> Matcher:
    wanted = frozenset(option_ids)
    return lambda user_input: isinstance(user_input, OptionInput) and user_input.option_id in wanted


def _option_pattern(pattern: re.Pattern) -> Matcher:
    return lambda user_input: isinstance(user_input, OptionInput) and pattern.match(user_input.option_id) is not None


def _words(*words: str) -> Matcher:
    wanted = frozenset(words)
    return lambda user_input: isinstance(user_input, TextInput) and user_input.normalized in wanted


def _contains(*fragments: str) -> Matcher:
    return lambda user_input: isinstance(user_input, TextInput) and any(
        fragment in user_input.normalized for fragment in fragments
    )


def _any_text(user_input: UserInput) -> bool:
    return isinstance(user_input, TextInput) and bool(user_input.text)


# --- shared views --------------------------------------------------------


def _main_menu_buttons(body: str):
    return buttons(
        body,
        ("browse_menu", "🍕 Browse Menu"),
        ("reserve_table", "🪑 Reserve Table"),
        ("my_orders", "📦 My Orders"),
    )


def _to_hub(turn: _Turn) -> None:
    if turn.step != states.PAYMENT_PENDING:
        turn.goto(states.MAIN_MENU)


def _show_welcome(turn: _Turn, _input: UserInput) -> None:
    turn.goto(states.MAIN_MENU)
    turn.say(_main_menu_buttons(f"🍽️ *Welcome to {RESTAURANT_NAME}!*\n\nWhat would you like to do today?"))


def _show_main_menu(turn: _Turn, _input: UserInput) -> None:
    _to_hub(turn)
    turn.say(_main_menu_buttons("What would you like to do?"))


def _show_help(turn: _Turn, _input: UserInput) -> None:
    turn.say(
        SendText(
            "ℹ️ *Help & Commands*\n\n"
            "• Type \"menu\" to browse our menu\n"
            "• Type \"cart\" to view your cart\n"
            "• Type \"orders\" to see your orders\n"
            "• Type \"status\" to track your latest order\n"
            "• Type \"reservation\" to book a table\n"
            "• Type \"help\" for this message\n\n"
            f"Need assistance? Contact us at {SUPPORT_EMAIL}"
        )
    )


def _not_understood(turn: _Turn, _input: UserInput) -> None:
    turn.goto(states.MAIN_MENU)
    turn.say(_main_menu_buttons("🤔 Sorry, I didn't understand that. Please pick an option below or type \"help\"."))


# --- menu browsing -------------------------------------------------------


def _show_categories(turn: _Turn, _input: UserInput) -> None:
    categories = catalog.list_available_categories(turn.db)
    if not categories:
        _to_hub(turn)
        turn.say(SendText("😔 Our menu is not available right now. Please try again later."))
        return

    turn.goto(states.BROWSING_CATEGORY)
    rows = [ListRow(f"cat_{catalog.category_slug(category)}", category, f"View {category}") for category in categories]
    turn.say(single_section_list("🍽️ Select a category:", "View Categories", "Menu Categories", rows))


def _items_list(category: str, items: list[MenuItem]):
    rows = [
        ListRow(f"item_{item.id}", item.name, f"{'🟢' if item.is_veg else '🔴'} {format_amount(item.price_cents)}")
        for item in items
    ]
    return single_section_list(f"{category} Menu:", "Select Item", category, rows)


def _show_category_items(turn: _Turn, user_input: UserInput) -> None:
    slug = CATEGORY_OPTION.match(user_input.option_id).group(1)
    category = catalog.resolve_category(turn.db, slug)
    items = catalog.list_category_items(turn.db, category) if category else []
    if not items:
        turn.say(SendText("No items available in this category."))
        _show_categories(turn, user_input)
        return

    turn.remember(category=category)
    turn.goto(states.BROWSING_ITEMS)
    turn.say(_items_list(category, items))


def _reprompt_items(turn: _Turn, user_input: UserInput) -> None:
    category = turn.scratch.get("category")
    items = catalog.list_category_items(turn.db, category) if category else []
    if not items:
        _show_categories(turn, user_input)
        return
    turn.goto(states.BROWSING_ITEMS)
    turn.say(_items_list(category, items))


def _item_detail(item: MenuItem) -> str:
    parts = [f"*{item.name}* {'🟢 Veg' if item.is_veg else '🔴 Non-veg'}"]
    if item.description:
        parts.append(item.description)
    parts.append(f"💰 Price: {format_amount(item.price_cents)}")
    parts.append(f"⏱️ Preparation: ~{item.preparation_time_minutes} mins")
    return "\n\n".join(parts)


def _show_item(turn: _Turn, user_input: UserInput) -> None:
    item_id = int(ITEM_OPTION.match(user_input.option_id).group(1))
    item = catalog.get_menu_item(turn.db, item_id)
    if item is None or not item.is_available:
        turn.say(SendText("❌ Item not found or currently unavailable."))
        _reprompt_items(turn, user_input)
        return

    turn.remember(viewing_item_id=item.id)
    turn.goto(states.VIEWING_ITEM)
    turn.say(
        buttons(
            _item_detail(item),
            (f"add_{item.id}_1", "➕ Add to Cart"),
            ("view_cart", "🛒 View Cart"),
            ("browse_menu", "⬅️ Back to Menu"),
        )
    )


def _reprompt_item(turn: _Turn, user_input: UserInput) -> None:
    item = catalog.get_menu_item(turn.db, turn.scratch.get("viewing_item_id"))
    if item is None or not item.is_available:
        _show_categories(turn, user_input)
        return
    turn.say(
        buttons(
            "Tap *Add to Cart* or type \"add\" to add this item.",
            (f"add_{item.id}_1", "➕ Add to Cart"),
            ("browse_menu", "⬅️ Back to Menu"),
        )
    )


# --- cart ----------------------------------------------------------------


def _add_item(turn: _Turn, user_input: UserInput, item_id: int | None, quantity: int) -> None:
    item = catalog.get_menu_item(turn.db, item_id)
    if item is None or not item.is_available:
        turn.say(SendText("❌ Sorry, that item is no longer available."))
        _show_categories(turn, user_input)
        return

    line = {
        "item_id": item.id,
        "name": item.name,
        "quantity": quantity,
        "unit_price_cents": item.price_cents,
    }
    cart = turn.cart + [line]
    turn.conversation.cart = cart
    turn.forget("viewing_item_id")
    turn.goto(states.MAIN_MENU)
    total = catalog.cart_total(catalog.live_cart_lines(turn.db, cart))
    turn.say(
        buttons(
            f"✅ Added {quantity} × {item.name} to your cart!\n\nCart total: {format_amount(total)}",
            ("browse_menu", "🛍️ Continue Shopping"),
            ("view_cart", "🛒 View Cart"),
            ("checkout", "💳 Checkout"),
        )
    )


def _add_from_option(turn: _Turn, user_input: UserInput) -> None:
    match = ADD_OPTION.match(user_input.option_id)
    quantity = int(match.group(2) or 1)
    quantity = max(1, min(quantity, MAX_ITEM_QUANTITY))
    _add_item(turn, user_input, int(match.group(1)), quantity)


def _add_viewed_item(turn: _Turn, user_input: UserInput) -> None:
    _add_item(turn, user_input, turn.scratch.get("viewing_item_id"), 1)


def _cart_text(lines: list[dict]) -> str:
    parts = ["🛒 *Your Cart:*", ""]
    for line in lines:
        quantity = int(line.get("quantity") or 0)
        unit_price = int(line.get("unit_price_cents") or 0)
        parts.append(line.get("name", ""))
        parts.append(f"  Qty: {quantity} × {format_amount(unit_price)} = {format_amount(quantity * unit_price)}")
        parts.append("")
    parts.append(f"*Total: {format_amount(catalog.cart_total(lines))}*")
    return "\n".join(parts)


def _show_cart(turn: _Turn, user_input: UserInput) -> None:
    lines = catalog.live_cart_lines(turn.db, turn.cart)
    if not lines:
        turn.say(SendText("🛒 Your cart is empty!\n\nStart browsing our menu to add items."))
        _show_main_menu(turn, user_input)
        return

    turn.goto(states.CART_MANAGEMENT)
    turn.say(SendText(_cart_text(lines)))
    turn.say(
        buttons(
            "What would you like to do?",
            ("checkout", "💳 Checkout"),
            ("browse_menu", "🛍️ Continue Shopping"),
            ("clear_cart", "🗑️ Clear Cart"),
        )
    )


def _clear_cart(turn: _Turn, user_input: UserInput) -> None:
    turn.conversation.cart = []
    turn.say(SendText("🗑️ Cart cleared!"))
    _show_main_menu(turn, user_input)


# --- checkout ------------------------------------------------------------


def _begin_checkout(turn: _Turn, _input: UserInput) -> None:
    if not catalog.live_cart_lines(turn.db, turn.cart):
        turn.say(
            buttons(
                "🛒 Your cart is empty! Add some items before checking out.",
                ("browse_menu", "🍕 Browse Menu"),
                ("main_menu", "🏠 Main Menu"),
            )
        )
        return

    turn.forget(*CHECKOUT_FIELDS)
    turn.goto(states.AWAITING_NAME)
    turn.say(SendText("✅ Let's complete your order!\n\nPlease enter your full name:"))


def _order_type_buttons(body: str):
    return buttons(
        body,
        ("delivery", "🚚 Delivery"),
        ("takeaway", "🎒 Takeaway"),
        ("dine_in", "🍽️ Dine-in"),
    )


def _collect_name(turn: _Turn, user_input: UserInput) -> None:
    name = user_input.text.strip()
    if len(name) < NAME_MIN_LENGTH:
        turn.say(SendText("❌ Please enter a valid name (at least 2 characters)"))
        return
    turn.remember(name=name)
    turn.goto(states.AWAITING_ORDER_TYPE)
    turn.say(_order_type_buttons(f"Thanks {name}! How would you like to receive your order?"))


def _collect_order_type(turn: _Turn, user_input: UserInput) -> None:
    if isinstance(user_input, OptionInput):
        fulfillment_type = ORDER_TYPE_OPTIONS[user_input.option_id]
    else:
        fulfillment_type = ORDER_TYPE_WORDS[user_input.normalized]
    turn.remember(order_type=fulfillment_type)

    if fulfillment_type == "delivery":
        turn.goto(states.AWAITING_ADDRESS)
        turn.say(SendText("📍 Please enter your delivery address:"))
        return

    turn.forget(*ADDRESS_FIELDS)
    turn.run(StartCheckout())


def _text_field(field: str, min_length: int, error: str, next_step: str, next_prompt: str) -> Handler:
    def handler(turn: _Turn, user_input: UserInput) -> None:
        value = user_input.text.strip()
        if len(value) < min_length:
            turn.say(SendText(error))
            return
        turn.remember(**{field: value})
        turn.goto(next_step)
        turn.say(SendText(next_prompt))

    return handler


_collect_address = _text_field(
    "address", ADDRESS_MIN_LENGTH, "❌ Please enter a valid address", states.AWAITING_CITY, "🏙️ Enter your city:"
)
_collect_city = _text_field(
    "city", CITY_MIN_LENGTH, "❌ Please enter a valid city name", states.AWAITING_STATE, "🗺️ Enter your state:"
)
_collect_state = _text_field(
    "state", STATE_MIN_LENGTH, "❌ Please enter a valid state name", states.AWAITING_PINCODE, "📮 Enter your pincode:"
)


def _collect_pincode(turn: _Turn, user_input: UserInput) -> None:
    pincode = user_input.text.strip()
    if len(pincode) < PINCODE_MIN_LENGTH:
        turn.say(SendText("❌ Please enter a valid pincode"))
        return
    turn.remember(pincode=pincode)
    turn.run(StartCheckout())


# --- reservations --------------------------------------------------------


def _start_reservation(turn: _Turn, _input: UserInput) -> None:
    turn.forget(
        "reservation_name",
        "reservation_date",
        "reservation_time",
        "party_size",
        "special_requests",
    )
    turn.goto(states.RESERVATION_NAME)
    turn.say(SendText("🪑 *Table Reservation*\n\nPlease enter the name for the booking:"))


_collect_reservation_name = _text_field(
    "reservation_name",
    NAME_MIN_LENGTH,
    "❌ Please enter a valid name (at least 2 characters)",
    states.RESERVATION_DATE,
    "📅 Please enter your preferred date (DD/MM/YYYY):",
)


def _collect_reservation_date(turn: _Turn, user_input: UserInput) -> None:
    parsed = parse_reservation_date(user_input.text)
    if parsed is None:
        turn.say(SendText("❌ Invalid date. Please use DD/MM/YYYY (e.g., 25/12/2026)"))
        return
    if parsed < local_today(turn.now):
        turn.say(SendText("❌ That date has already passed. Please enter today's date or a future date."))
        return
    turn.remember(reservation_date=parsed.isoformat())
    turn.goto(states.RESERVATION_TIME)
    turn.say(SendText("⏰ Enter your preferred time (e.g., 7:30 PM):"))


_collect_reservation_time = _text_field(
    "reservation_time",
    TIME_MIN_LENGTH,
    "❌ Please enter a valid time (e.g., 7:30 PM or 19:30)",
    states.RESERVATION_PARTY_SIZE,
    f"👥 How many people? ({MIN_PARTY_SIZE}-{MAX_PARTY_SIZE})",
)


def _collect_party_size(turn: _Turn, user_input: UserInput) -> None:
    value = user_input.text.strip()
    party_size = int(value) if PARTY_SIZE_PATTERN.match(value) else 0
    if not MIN_PARTY_SIZE <= party_size <= MAX_PARTY_SIZE:
        turn.say(SendText(f"❌ Please enter a number of people between {MIN_PARTY_SIZE} and {MAX_PARTY_SIZE}."))
        return
    turn.remember(party_size=party_size)
    turn.goto(states.RESERVATION_SPECIAL_REQUESTS)
    turn.say(SendText("📝 Any special requests? (or type \"none\"):"))


def _collect_special_requests(turn: _Turn, user_input: UserInput) -> None:
    value = user_input.text.strip()
    turn.remember(special_requests="" if value.lower() == "none" else value)
    turn.run(CreateReservation())


# --- order and reservation lookups ---------------------------------------


def _recent_orders(turn: _Turn, limit: int) -> list[Order]:
    return (
        turn.db.query(Order)
        .filter(Order.customer_id == turn.conversation.customer_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(limit)
        .all()
    )


def _active_order(turn: _Turn) -> Order | None:
    if not turn.conversation.active_order_id:
        return None
    return turn.db.query(Order).filter(Order.id == turn.conversation.active_order_id).first()


def _no_orders(turn: _Turn, user_input: UserInput) -> None:
    turn.say(SendText("📦 You have no orders yet."))
    _show_main_menu(turn, user_input)


def _show_my_orders(turn: _Turn, user_input: UserInput) -> None:
    orders = _recent_orders(turn, RECENT_LIMIT)
    if not orders:
        _no_orders(turn, user_input)
        return

    lines = ["📦 *Your Recent Orders:*", ""]
    for index, order in enumerate(orders, start=1):
        lines.append(f"{index}. Order #{order.id}")
        lines.append(f"   Status: {order_status_label(order.status)}")
        lines.append(f"   Total: {format_amount(order.total_cents)}")
        lines.append(f"   Date: {format_local(order.created_at, '%d %b %Y')}")
        lines.append("")
    _to_hub(turn)
    turn.say(SendText("\n".join(lines).rstrip()))
    turn.say(
        buttons(
            "Need anything else?",
            ("order_status", "🔎 Track Latest"),
            ("browse_menu", "🍕 Browse Menu"),
            ("main_menu", "🏠 Main Menu"),
        )
    )


def _order_status_text(order: Order) -> str:
    emoji, label = ORDER_STATUS_DISPLAY.get(order.status, ("ℹ️", order.status))
    lines = [
        f"{emoji} *Order #{order.id}*",
        "",
        f"Status: *{label}*",
        "",
        format_item_lines((item.name, item.quantity, item.subtotal_cents) for item in order.order_items),
        "",
        f"💰 Total: {format_amount(order.total_cents)}",
        f"🛵 Type: {FULFILLMENT_LABELS.get(order.fulfillment_type, order.fulfillment_type)}",
        f"🕒 Placed: {format_local(order.created_at)}",
    ]
    if order.payment_verified_at:
        lines.append(f"💳 Paid: {format_local(order.payment_verified_at)}")
    if order.delivered_at:
        lines.append(f"📦 Delivered: {format_local(order.delivered_at)}")
    if order.status == ORDER_PAYMENT_PENDING and order.payment_status == PAYMENT_PENDING and order.payment_link_url:
        lines.append("")
        lines.append(f"🔗 Complete your payment: {order.payment_link_url}")
    return "\n".join(lines)


def _status_actions(order: Order):
    if order.status == ORDER_PAYMENT_PENDING:
        return buttons(
            "We'll update you as soon as the payment goes through.",
            ("order_status", "🔄 Refresh Status"),
            ("main_menu", "🏠 Main Menu"),
        )
    if order.status in {ORDER_DELIVERED, ORDER_CANCELLED}:
        return buttons(
            "Hungry again?",
            ("browse_menu", "🍕 Order Again"),
            ("my_orders", "📦 My Orders"),
        )
    return buttons(
        "We'll keep you posted on every update.",
        ("order_status", "🔄 Refresh Status"),
        ("my_orders", "📦 My Orders"),
        ("main_menu", "🏠 Main Menu"),
    )


def _show_order_status(turn: _Turn, user_input: UserInput) -> None:
    orders = _recent_orders(turn, 1)
    if not orders:
        _no_orders(turn, user_input)
        return
    order = orders[0]
    _to_hub(turn)
    turn.say(SendText(_order_status_text(order)))
    turn.say(_status_actions(order))


def _show_my_reservations(turn: _Turn, user_input: UserInput) -> None:
    reservations = (
        turn.db.query(Reservation)
        .filter(Reservation.customer_id == turn.conversation.customer_id)
        .order_by(Reservation.created_at.desc(), Reservation.id.desc())
        .limit(RECENT_LIMIT)
        .all()
    )
    _to_hub(turn)
    if not reservations:
        turn.say(buttons("🪑 You have no reservations yet.", ("reserve_table", "🪑 Reserve Table"), ("main_menu", "🏠 Main Menu")))
        return

    lines = ["🪑 *Your Reservations:*", ""]
    for index, reservation in enumerate(reservations, start=1):
        lines.append(f"{index}. #{reservation.id} on {reservation.date.strftime('%d %b %Y')} at {reservation.time}")
        lines.append(f"   Guests: {reservation.party_size}")
        lines.append(f"   Status: {RESERVATION_STATUS_DISPLAY.get(reservation.status, reservation.status)}")
        if reservation.table_assignment:
            lines.append(f"   Table: {reservation.table_assignment}")
        lines.append("")
    turn.say(SendText("\n".join(lines).rstrip()))
    turn.say(buttons("Anything else?", ("reserve_table", "🪑 New Reservation"), ("main_menu", "🏠 Main Menu")))


def _payment_reminder(turn: _Turn, user_input: UserInput) -> None:
    order = _active_order(turn)
    if order is None:
        _not_understood(turn, user_input)
        return
    if order.payment_status != PAYMENT_PENDING or order.status != ORDER_PAYMENT_PENDING:
        turn.goto(states.MAIN_MENU)
        turn.say(SendText(_order_status_text(order)))
        turn.say(_status_actions(order))
        return
    if not order.payment_link_url:
        turn.goto(states.MAIN_MENU)
        turn.say(_main_menu_buttons("⚠️ We couldn't create a payment link for your last order. Please checkout again."))
        return
    turn.say(
        SendText(
            f"⏳ Your order #{order.id} is waiting for payment of {format_amount(order.total_cents)}.\n\n"
            f"🔗 Pay here: {order.payment_link_url}\n\n"
            "Type \"status\" to check your order."
        )
    )


# --- re-prompts ----------------------------------------------------------

_STEP_PROMPTS = {
    states.AWAITING_NAME: "Please enter your full name:",
    states.AWAITING_ADDRESS: "📍 Please enter your delivery address:",
    states.AWAITING_CITY: "🏙️ Enter your city:",
    states.AWAITING_STATE: "🗺️ Enter your state:",
    states.AWAITING_PINCODE: "📮 Enter your pincode:",
    states.RESERVATION_NAME: "Please enter the name for the booking:",
    states.RESERVATION_DATE: "📅 Please enter your preferred date (DD/MM/YYYY):",
    states.RESERVATION_TIME: "⏰ Enter your preferred time (e.g., 7:30 PM):",
    states.RESERVATION_PARTY_SIZE: f"👥 How many people? ({MIN_PARTY_SIZE}-{MAX_PARTY_SIZE})",
    states.RESERVATION_SPECIAL_REQUESTS: "📝 Any special requests? (or type \"none\"):",
}


def _reprompt_step(turn: _Turn, _input: UserInput) -> None:
    turn.say(SendText(_STEP_PROMPTS[turn.step]))


def _reprompt_order_type(turn: _Turn, _input: UserInput) -> None:
    turn.say(_order_type_buttons("Please choose how you'd like to receive your order:"))


# --- routing tables ------------------------------------------------------

_GLOBAL_RULES: tuple[tuple[Matcher, Handler], ...] = (
    (_words(*GREETINGS), _show_welcome),
    (_words("help"), _show_help),
    (_option("main_menu"), _show_main_menu),
    (_option("browse_menu", "continue_shopping"), _show_categories),
    (_option("view_cart"), _show_cart),
    (_option("checkout"), _begin_checkout),
    (_option("clear_cart"), _clear_cart),
    (_option("my_orders"), _show_my_orders),
    (_option("order_status"), _show_order_status),
    (_option("my_reservations"), _show_my_reservations),
    (_option("reserve_table", "reservation"), _start_reservation),
)

# "status" before "order" so "order status" tracks instead of listing
_HUB_RULES: tuple[tuple[Matcher, Handler], ...] = (
    (_contains("status", "track"), _show_order_status),
    (_contains("reserv", "book a table", "book table"), _start_reservation),
    (_contains("cart"), _show_cart),
    (_contains("checkout"), _begin_checkout),
    (_contains("order"), _show_my_orders),
    (_contains("menu", "food"), _show_categories),
)

_STATE_RULES: dict[str, tuple[tuple[Matcher, Handler], ...]] = {
    **{step: _HUB_RULES for step in states.HUB_STATES},
    states.BROWSING_CATEGORY: ((_option_pattern(CATEGORY_OPTION), _show_category_items),),
    states.BROWSING_ITEMS: (
        (_option_pattern(ITEM_OPTION), _show_item),
        (_option_pattern(CATEGORY_OPTION), _show_category_items),
    ),
    states.VIEWING_ITEM: (
        (_option_pattern(ADD_OPTION), _add_from_option),
        (_words("add", "add to cart"), _add_viewed_item),
        (_option_pattern(ITEM_OPTION), _show_item),
    ),
    states.CART_MANAGEMENT: (
        (_words("checkout"), _begin_checkout),
        (_words("clear", "clear cart"), _clear_cart),
    ),
    states.AWAITING_NAME: ((_any_text, _collect_name),),
    states.AWAITING_ORDER_TYPE: (
        (_option(*ORDER_TYPE_OPTIONS), _collect_order_type),
        (_words(*ORDER_TYPE_WORDS), _collect_order_type),
    ),
    states.AWAITING_ADDRESS: ((_any_text, _collect_address),),
    states.AWAITING_CITY: ((_any_text, _collect_city),),
    states.AWAITING_STATE: ((_any_text, _collect_state),),
    states.AWAITING_PINCODE: ((_any_text, _collect_pincode),),
    states.RESERVATION_NAME: ((_any_text, _collect_reservation_name),),
    states.RESERVATION_DATE: ((_any_text, _collect_reservation_date),),
    states.RESERVATION_TIME: ((_any_text, _collect_reservation_time),),
    states.RESERVATION_PARTY_SIZE: ((_any_text, _collect_party_size),),
    states.RESERVATION_SPECIAL_REQUESTS: ((_any_text, _collect_special_requests),),
}

_FALLBACKS: dict[str, Handler] = {
    states.WELCOME: _show_welcome,
    states.MAIN_MENU: _not_understood,
    states.PAYMENT_PENDING: _payment_reminder,
    states.BROWSING_CATEGORY: _show_categories,
    states.BROWSING_ITEMS: _reprompt_items,
    states.VIEWING_ITEM: _reprompt_item,
    states.CART_MANAGEMENT: _show_cart,
    states.AWAITING_ORDER_TYPE: _reprompt_order_type,
    **{step: _reprompt_step for step in _STEP_PROMPTS},
}


def resolve_handler(step: str, user_input: UserInput) -> Handler:
    for matches, handler in _GLOBAL_RULES:
        if matches(user_input):
            return handler
    for matches, handler in _STATE_RULES.get(step, ()):
        if matches(user_input):
            return handler
    return _FALLBACKS[step]


def process_event(db: Session, conversation: Conversation, event: InboundEvent, *, now: datetime) -> EngineResult:
    """Advance one conversation by one inbound event.

    Mutates ``conversation`` in place (step, cart, scratch) and returns the replies
    plus any commands the caller must carry out (checkout, reservation). Reads
    menu, orders and reservations through ``db`` but never commits.
    """
    if conversation.step not in states.ALL_STATES:
        logger.warning(
            "unknown conversation step %r customer=%s; resetting to %s",
            conversation.step,
            conversation.customer_id,
            states.MAIN_MENU,
        )
        conversation.step = states.MAIN_MENU

    user_input = event.to_input()
    turn = _Turn(db=db, conversation=conversation, now=now, result=EngineResult())
    handler = resolve_handler(conversation.step, user_input)
    handler(turn, user_input)
    return turn.result
