from .accounts import User, SessionToken
from .catalog import Product
from .carts import CartLine
from .orders import Order, OrderItem
from .refunds import RefundRequest, RefundRequestItem
from .ledger import TransactionLog
from .payments import PendingPayment

__all__ = [
    'User', 'SessionToken',
    'Product',
    'CartLine',
    'Order', 'OrderItem',
    'RefundRequest', 'RefundRequestItem',
    'TransactionLog',
    'PendingPayment',
]
