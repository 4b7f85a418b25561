WELCOME = "welcome"
MAIN_MENU = "main_menu"

BROWSING_CATEGORY = "browsing_category"
BROWSING_ITEMS = "browsing_items"
VIEWING_ITEM = "viewing_item"
CART_MANAGEMENT = "cart_management"

AWAITING_NAME = "awaiting_name"
AWAITING_ORDER_TYPE = "awaiting_order_type"
AWAITING_ADDRESS = "awaiting_address"
AWAITING_CITY = "awaiting_city"
AWAITING_STATE = "awaiting_state"
AWAITING_PINCODE = "awaiting_pincode"
PAYMENT_PENDING = "payment_pending"

RESERVATION_NAME = "reservation_name"
RESERVATION_DATE = "reservation_date"
RESERVATION_TIME = "reservation_time"
RESERVATION_PARTY_SIZE = "reservation_party_size"
RESERVATION_SPECIAL_REQUESTS = "reservation_special_requests"

INITIAL_STATE = WELCOME

# Top-level states where free-text keywords route into a sub-flow
HUB_STATES = frozenset({WELCOME, MAIN_MENU, PAYMENT_PENDING})

CHECKOUT_STATES = frozenset(
    {
        AWAITING_NAME,
        AWAITING_ORDER_TYPE,
        AWAITING_ADDRESS,
        AWAITING_CITY,
        AWAITING_STATE,
        AWAITING_PINCODE,
    }
)

RESERVATION_STATES = frozenset(
    {
        RESERVATION_NAME,
        RESERVATION_DATE,
        RESERVATION_TIME,
        RESERVATION_PARTY_SIZE,
        RESERVATION_SPECIAL_REQUESTS,
    }
)

ALL_STATES = frozenset(
    {
        WELCOME,
        MAIN_MENU,
        BROWSING_CATEGORY,
        BROWSING_ITEMS,
        VIEWING_ITEM,
        CART_MANAGEMENT,
        PAYMENT_PENDING,
    }
    | CHECKOUT_STATES
    | RESERVATION_STATES
)
