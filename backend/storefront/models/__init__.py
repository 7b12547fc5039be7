from .catalog import Product, ProductVariant
from .customers import Customer
from .discounts import DiscountCampaign, DiscountRule, LegacyDiscount, DiscountUsage
from .orders import Order, OrderLine, Payment, CheckoutAttempt
from .documents import DocumentSequence
from .notifications import NotificationSnapshot

__all__ = [
    'Product', 'ProductVariant',
    'Customer',
    'DiscountCampaign', 'DiscountRule', 'LegacyDiscount', 'DiscountUsage',
    'Order', 'OrderLine', 'Payment', 'CheckoutAttempt',
    'DocumentSequence',
    'NotificationSnapshot',
]
