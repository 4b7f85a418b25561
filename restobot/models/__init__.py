from restobot.models.conversation import Conversation
from restobot.models.customer import Customer
from restobot.models.menu_item import MenuItem
from restobot.models.order import Order
from restobot.models.order_item import OrderItem
from restobot.models.processed_message import ProcessedMessage
from restobot.models.reservation import Reservation
from restobot.models.scheduled_task import ScheduledTask
from restobot.models.whatsapp_message_log import WhatsAppMessageLog
