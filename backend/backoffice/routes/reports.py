from flask import Blueprint, current_app, jsonify, request

from ..decorators import require_actor
from ..services import reporting_service
from ..services.valuation_service import default_tax_rate
from ..numbers import decimal_str


reports_bp = Blueprint("reports", __name__, url_prefix="/api/reports")


def _id_list(*names: str) -> list[int] | None:
    """Accept ?warehouse_ids=1,2 or repeated ?warehouse_ids=1&warehouse_ids=2."""
    raw: list[str] = []
    for name in names:
        for value in request.args.getlist(name):
            raw.extend(part for part in value.split(",") if part.strip())
    if not raw:
        return None
    try:
        return [int(part) for part in raw]
    except ValueError:
        raise reporting_service.ReportError(f"{names[0]} must be a comma separated list of ids")


def _arg(*names: str):
    for name in names:
        value = request.args.get(name)
        if value:
            return value
    return None


@reports_bp.get("/stock-extract")
@require_actor
def stock_extract_report():
    """
    Stock extract for a date range.

    Query params:
    - start_date / startDate, end_date / endDate (required; end day inclusive)
    - warehouse_ids / warehouseIds: comma separated, optional
    - category_ids / categoryIds: comma separated, optional (matches a category or its sub categories)
    - report_type / reportType: quantity | amount | amount_with_vat (default quantity)
    """
    try:
        report = reporting_service.stock_extract(
            start_date=_arg("start_date", "startDate"),
            end_date=_arg("end_date", "endDate"),
            warehouse_ids=_id_list("warehouse_ids", "warehouseIds"),
            category_ids=_id_list("category_ids", "categoryIds"),
            report_type=_arg("report_type", "reportType") or "quantity",
        )
    except reporting_service.ReportError as exc:
        return jsonify({"error": str(exc)}), 400
    except Exception:
        current_app.logger.exception("Failed to build stock extract")
        return jsonify({"error": "Internal server error"}), 500

    report["default_tax_rate_percent"] = decimal_str(default_tax_rate())
    return jsonify(report), 200
