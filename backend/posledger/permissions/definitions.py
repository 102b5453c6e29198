# Overview: Operation definitions and the role -> capability table.
# Each operation is defined as: (code, name, description, category)

from .categories import OperationCategory, StockOperation, StoreRole


# -- INVENTORY --

INVENTORY_OPERATIONS = [
    (
        StockOperation.RESTOCK,
        "Restock Sales Floor",
        "Move units from the warehouse to the sales floor",
        OperationCategory.INVENTORY,
    ),
    (
        StockOperation.FILL_WAREHOUSE,
        "Fill Warehouse",
        "Add incoming units to warehouse stock",
        OperationCategory.INVENTORY,
    ),
    (
        StockOperation.ADJUST_WAREHOUSE,
        "Adjust Warehouse",
        "Increase, decrease or set warehouse stock with a reason",
        OperationCategory.INVENTORY,
    ),
    (
        StockOperation.ADJUST_SALES,
        "Adjust Sales Floor",
        "Increase, decrease or set sales floor stock with a reason",
        OperationCategory.INVENTORY,
    ),
    (
        StockOperation.UPDATE_SALES_FLOOR,
        "Update Sales Floor",
        "Set sales floor stock to a target, transferring the difference from/to the warehouse",
        OperationCategory.INVENTORY,
    ),
    (
        StockOperation.VIEW_STOCK,
        "View Stock",
        "View balances, movement history and low-stock alerts",
        OperationCategory.INVENTORY,
    ),
    (
        StockOperation.MANAGE_PRODUCTS,
        "Manage Products",
        "Register and deactivate products",
        OperationCategory.INVENTORY,
    ),
]


# -- SALES --

SALES_OPERATIONS = [
    (
        StockOperation.PROCESS_SALE,
        "Process Sale",
        "Create a sale, deducting sales floor stock when paid immediately",
        OperationCategory.SALES,
    ),
    (
        StockOperation.CONFIRM_SALE,
        "Confirm Sale",
        "Complete a pending sale after external payment confirmation",
        OperationCategory.SALES,
    ),
    (
        StockOperation.CANCEL_SALE,
        "Cancel Sale",
        "Cancel a pending sale",
        OperationCategory.SALES,
    ),
    (
        StockOperation.REFUND_SALE,
        "Refund Sale",
        "Refund a completed sale in full, restoring unreturned stock",
        OperationCategory.SALES,
    ),
]


# -- RETURNS --

RETURN_OPERATIONS = [
    (
        StockOperation.PROCESS_RETURN,
        "Process Return",
        "Return items of a completed sale as customer mistake or defective",
        OperationCategory.RETURNS,
    ),
]


# -- REPORTS --

REPORT_OPERATIONS = [
    (
        StockOperation.VIEW_REPORTS,
        "View Reports",
        "View returned and defective product reports",
        OperationCategory.REPORTS,
    ),
]


OPERATION_DEFINITIONS = (
    INVENTORY_OPERATIONS
    + SALES_OPERATIONS
    + RETURN_OPERATIONS
    + REPORT_OPERATIONS
)


ROLE_CAPABILITIES = {
    StoreRole.OWNER: frozenset(op[0] for op in OPERATION_DEFINITIONS),
    StoreRole.EMPLOYEE: frozenset({
        StockOperation.RESTOCK,
        StockOperation.UPDATE_SALES_FLOOR,
        StockOperation.VIEW_STOCK,
        StockOperation.PROCESS_SALE,
        StockOperation.CONFIRM_SALE,
        StockOperation.CANCEL_SALE,
        StockOperation.REFUND_SALE,
        StockOperation.PROCESS_RETURN,
    }),
}
