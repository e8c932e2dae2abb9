"""
Export endpoints.

    GET /api/v1/export/<entity>.csv
    GET /api/v1/export/<entity>.xlsx

    entity: npd | sp2d | rka-accounts

CSV query params:
    columns          comma-separated column keys (default: all)
    delimiter        , | ; | tab (also: comma, semicolon)
    date_format      id | iso | timestamp
    number_format    id | en
    currency_format  symbol | code | none
    include_headers  true | false

Filters: status, tahun (npd); npd_id (sp2d); fiscal_year (rka-accounts).

All queries are scoped to the caller's organization. No temp files:
content is returned in-memory.
"""

import logging

from flask import Blueprint, Response, g, request, send_file

from npd_tracker.middleware.permission_required import login_required
from npd_tracker.services import export_service

logger = logging.getLogger(__name__)

export_bp = Blueprint("export_bp", __name__, url_prefix="/api/v1")

_FILTER_KEYS = ("status", "tahun", "npd_id", "fiscal_year")


@export_bp.route("/export/<entity>.<any(csv, xlsx):ext>", methods=["GET"])
@login_required
def export_entity(entity: str, ext: str):
    """Download ``entity`` as CSV (UTF-8 with BOM) or a styled workbook."""
    user = g.current_user
    filters = {k: request.args[k] for k in _FILTER_KEYS if request.args.get(k)}
    options = export_service.build_options(request.args)
    columns = export_service.select_columns(entity, options["columns"])
    rows = export_service.collect_rows(user, entity, filters)
    filename = export_service.export_filename(entity, ext)

    logger.info("Export %s.%s: %d rows for user %s", entity, ext, len(rows), user.id)

    if ext == "csv":
        return Response(
            export_service.to_csv(rows, columns, options),
            mimetype="text/csv; charset=utf-8",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )

    buf = export_service.to_xlsx(rows, columns, export_service.ENTITY_TITLES.get(entity, entity))
    return send_file(
        buf,
        mimetype="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        as_attachment=True,
        download_name=filename,
    )
