# Overview: Closed role and operation vocabularies for the stock capability table.

from enum import Enum


class StoreRole(str, Enum):
    """Roles a store user can hold."""
    OWNER = "owner"
    EMPLOYEE = "employee"


class StockOperation:
    """Operation codes checked against ROLE_CAPABILITIES."""
    RESTOCK = "RESTOCK"
    FILL_WAREHOUSE = "FILL_WAREHOUSE"
    ADJUST_WAREHOUSE = "ADJUST_WAREHOUSE"
    ADJUST_SALES = "ADJUST_SALES"
    UPDATE_SALES_FLOOR = "UPDATE_SALES_FLOOR"
    VIEW_STOCK = "VIEW_STOCK"
    MANAGE_PRODUCTS = "MANAGE_PRODUCTS"
    PROCESS_SALE = "PROCESS_SALE"
    CONFIRM_SALE = "CONFIRM_SALE"
    CANCEL_SALE = "CANCEL_SALE"
    REFUND_SALE = "REFUND_SALE"
    PROCESS_RETURN = "PROCESS_RETURN"
    VIEW_REPORTS = "VIEW_REPORTS"


class OperationCategory:
    """Grouping for listing operations."""
    INVENTORY = "INVENTORY"
    SALES = "SALES"
    RETURNS = "RETURNS"
    REPORTS = "REPORTS"
