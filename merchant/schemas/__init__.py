from .base import BaseSchema
from .cart import CartRead, CheckoutRead
from .inventory import InventoryLevelRead, InventoryPage
from .order import OrderRead
from .webhook import DeliveryRead, SubscriptionDetail, SubscriptionRead
