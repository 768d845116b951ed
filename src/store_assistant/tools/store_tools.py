import json
from typing import Any

from loguru import logger

from store_assistant.tool import Tool
from store_assistant.tool_names import ToolName
from store_assistant.tools.store_backend import StoreBackend


def _string(description: str, enum: list[str] | None = None) -> dict[str, Any]:
    prop: dict[str, Any] = {"type": "string", "description": description}
    if enum:
        prop["enum"] = enum
    return prop


def _integer(description: str) -> dict[str, Any]:
    return {"type": "integer", "description": description}


def _number(description: str) -> dict[str, Any]:
    return {"type": "number", "description": description}


def _boolean(description: str) -> dict[str, Any]:
    return {"type": "boolean", "description": description}


def _paging(default_limit: int = 20, max_limit: int = 50) -> dict[str, Any]:
    return {
        "page": _integer("Trang (mặc định 1)"),
        "limit": _integer(f"Số kết quả mỗi trang (mặc định {default_limit}, tối đa {max_limit})"),
    }


def _object(properties: dict[str, Any]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": []}


_DEFINITIONS: dict[ToolName, tuple[str, dict[str, Any]]] = {
    ToolName.QUERY_PRODUCTS: (
        "Tìm kiếm và lọc sản phẩm theo nhiều tiêu chí. Hỗ trợ pagination.",
        _object({
            "keyword": _string("Từ khóa tìm theo tên hoặc mã vạch"),
            "category_id": _integer("Lọc theo danh mục"),
            "supplier_id": _integer("Lọc theo nhà cung cấp"),
            "min_price": _number("Giá tối thiểu"),
            "max_price": _number("Giá tối đa"),
            "in_stock": _boolean("Chỉ lấy sản phẩm còn hàng"),
            "is_active": _boolean("Lọc theo trạng thái kinh doanh"),
            **_paging(),
            "sort_by": _string("Sắp xếp", ["price_asc", "price_desc", "name_asc", "name_desc"]),
        }),
    ),
    ToolName.QUERY_CATEGORIES: (
        "Lấy danh sách danh mục sản phẩm",
        _object({
            "keyword": _string("Từ khóa tìm theo tên danh mục"),
            "is_active": _boolean("Lọc theo trạng thái"),
            **_paging(),
        }),
    ),
    ToolName.QUERY_CUSTOMERS: (
        "Tìm kiếm khách hàng theo tên, SĐT, email",
        _object({
            "keyword": _string("Tên, số điện thoại hoặc email"),
            "is_active": _boolean("Lọc theo trạng thái"),
            **_paging(),
        }),
    ),
    ToolName.QUERY_ORDERS: (
        "Tìm kiếm đơn hàng. Xem chi tiết bằng order_id.",
        _object({
            "order_id": _integer("Mã đơn hàng cần xem chi tiết"),
            "status": _string("Trạng thái đơn hàng", ["pending", "completed", "cancelled"]),
            "date_from": _string("Từ ngày (yyyy-MM-dd)"),
            "date_to": _string("Đến ngày (yyyy-MM-dd)"),
            "keyword": _string("Tên hoặc SĐT khách hàng"),
            **_paging(),
        }),
    ),
    ToolName.QUERY_PROMOTIONS: (
        "Tìm kiếm khuyến mãi. Kiểm tra mã cụ thể bằng code.",
        _object({
            "keyword": _string("Từ khóa tìm theo tên hoặc mô tả"),
            "code": _string("Mã khuyến mãi cần kiểm tra"),
            "status": _string("Trạng thái", ["active", "inactive", "expired"]),
            "type": _string("Loại giảm giá", ["percent", "fixed"]),
            **_paging(),
        }),
    ),
    ToolName.QUERY_SUPPLIERS: (
        "Lấy danh sách nhà cung cấp",
        _object({
            "keyword": _string("Tên, SĐT hoặc email nhà cung cấp"),
            **_paging(),
        }),
    ),
    ToolName.GET_STATISTICS: (
        "Lấy thống kê: tổng quan, doanh thu, bán chạy, tồn kho thấp",
        _object({
            "type": _string("Loại thống kê", ["overview", "revenue", "best_sellers", "low_stock", "order_stats"]),
            "days": _integer("Số ngày gần nhất (mặc định 7)"),
            "limit": _integer("Số kết quả tối đa"),
            "threshold": _integer("Ngưỡng tồn kho thấp"),
        }),
    ),
    ToolName.GET_REPORTS: (
        "Lấy báo cáo chi tiết theo khoảng thời gian",
        _object({
            "type": _string("Loại báo cáo", ["sales_summary", "top_products", "top_customers", "revenue_by_day"]),
            "date_from": _string("Từ ngày (yyyy-MM-dd)"),
            "date_to": _string("Đến ngày (yyyy-MM-dd)"),
            "limit": _integer("Số kết quả tối đa"),
        }),
    ),
    ToolName.GET_INVENTORY_STATUS: (
        "Kiểm tra tình trạng tồn kho tổng quan",
        _object({
            "threshold": _integer("Ngưỡng tồn kho thấp (mặc định 10)"),
            "category_id": _integer("Lọc theo danh mục"),
        }),
    ),
}


class StoreQueryTool:
    """Read-only store lookup answered by the store application's backend."""

    def __init__(self, name: ToolName, description: str, input_schema: dict[str, Any], backend: StoreBackend):
        self._name = name
        self._description = description
        self._input_schema = input_schema
        self._backend = backend

    @property
    def name(self) -> ToolName:
        return self._name

    @property
    def description(self) -> str:
        return self._description

    @property
    def input_schema(self) -> dict[str, Any]:
        return self._input_schema

    async def execute(self, tool_input: dict[str, Any]) -> str:
        result = await self._backend.query(str(self._name), tool_input)
        if result is None:
            logger.debug(f"{self._name} returned no data")
            return json.dumps({"data": []})
        if isinstance(result, str):
            return result
        return json.dumps(result, ensure_ascii=False, default=str)


def build_store_tools(backend: StoreBackend) -> list[Tool]:
    return [
        StoreQueryTool(name, description, schema, backend)
        for name, (description, schema) in _DEFINITIONS.items()
    ]
