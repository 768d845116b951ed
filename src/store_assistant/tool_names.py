from __future__ import annotations

from enum import StrEnum


class ToolName(StrEnum):
    QUERY_PRODUCTS = "query_products"
    QUERY_CATEGORIES = "query_categories"
    QUERY_CUSTOMERS = "query_customers"
    QUERY_ORDERS = "query_orders"
    QUERY_PROMOTIONS = "query_promotions"
    QUERY_SUPPLIERS = "query_suppliers"
    GET_STATISTICS = "get_statistics"
    GET_REPORTS = "get_reports"
    GET_INVENTORY_STATUS = "get_inventory_status"

    @classmethod
    def parse(cls, raw: str) -> ToolName | None:
        try:
            return cls(raw)
        except ValueError:
            return None

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]


_DISPLAY_NAMES = {
    ToolName.QUERY_PRODUCTS: "sản phẩm",
    ToolName.QUERY_CATEGORIES: "danh mục",
    ToolName.QUERY_CUSTOMERS: "khách hàng",
    ToolName.QUERY_ORDERS: "đơn hàng",
    ToolName.QUERY_PROMOTIONS: "khuyến mãi",
    ToolName.QUERY_SUPPLIERS: "nhà cung cấp",
    ToolName.GET_STATISTICS: "thống kê",
    ToolName.GET_REPORTS: "báo cáo",
    ToolName.GET_INVENTORY_STATUS: "tồn kho",
}


def display_name(raw: str) -> str:
    name = ToolName.parse(raw)
    return name.display_name if name is not None else raw
