from .auth import User, SessionToken
from .catalog import Product, StockEntry
from .customers import Customer, CustomerDebtTransaction
from .sales import Sale, SaleItem, Payment
from .settings import ProjectConfig

__all__ = [
    'User', 'SessionToken',
    'Product', 'StockEntry',
    'Customer', 'CustomerDebtTransaction',
    'Sale', 'SaleItem', 'Payment',
    'ProjectConfig',
]
