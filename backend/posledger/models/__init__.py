from .tenancy import Store
from .auth import User
from .inventory import Product, StockMovement
from .sales import Sale, SaleItem, ReceiptSequence

__all__ = [
    'Store',
    'User',
    'Product', 'StockMovement',
    'Sale', 'SaleItem', 'ReceiptSequence',
]
