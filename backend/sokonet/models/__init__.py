from .tenancy import Business, User
from .catalog import Product, StockMovement
from .identity import QRToken
from .orders import Order, OrderLine
from .payments import Transaction, GatewayRegistration

__all__ = [
    'Business', 'User',
    'Product', 'StockMovement',
    'QRToken',
    'Order', 'OrderLine',
    'Transaction', 'GatewayRegistration',
]
