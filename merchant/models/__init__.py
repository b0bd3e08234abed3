from .store import Store
from .catalog import Variant
from .inventory import InventoryLevel, InventoryLog
from .cart import Cart, CartItem
from .customer import Customer, CustomerAddress
from .discount import Discount, DiscountUsage
from .order import Order, OrderItem, Refund
from .payment_event import PaymentEvent
from .webhook import WebhookSubscription, WebhookDelivery

# This ensures all models are registered with SQLAlchemy
__all__ = [
    'Store',
    'Variant',
    'InventoryLevel',
    'InventoryLog',
    'Cart',
    'CartItem',
    'Customer',
    'CustomerAddress',
    'Discount',
    'DiscountUsage',
    'Order',
    'OrderItem',
    'Refund',
    'PaymentEvent',
    'WebhookSubscription',
    'WebhookDelivery',
]
