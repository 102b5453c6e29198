# Overview: Role capability package.
# Re-exports the public API used by the services.

from .categories import OperationCategory, StockOperation, StoreRole
from .definitions import (
    OPERATION_DEFINITIONS,
    INVENTORY_OPERATIONS,
    SALES_OPERATIONS,
    RETURN_OPERATIONS,
    REPORT_OPERATIONS,
    ROLE_CAPABILITIES,
)
from .helpers import (
    Actor,
    coerce_role,
    get_all_operation_codes,
    get_operation_definition,
    require_capability,
    role_can,
)

__all__ = [
    "OperationCategory",
    "StockOperation",
    "StoreRole",
    "OPERATION_DEFINITIONS",
    "INVENTORY_OPERATIONS",
    "SALES_OPERATIONS",
    "RETURN_OPERATIONS",
    "REPORT_OPERATIONS",
    "ROLE_CAPABILITIES",
    "Actor",
    "coerce_role",
    "get_all_operation_codes",
    "get_operation_definition",
    "require_capability",
    "role_can",
]
