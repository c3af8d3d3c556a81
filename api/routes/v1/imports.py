"""
api/routes/v1/imports.py -- Nessus scan import routes.

Routes (registered before the vulnerability router):
  POST  /vulnerabilities/import/nessus          -- parse and reconcile a CSV export
  POST  /vulnerabilities/import/nessus/preview  -- parse only, return counts

Both accept multipart/form-data with a single .csv file. Size is capped by
Settings.max_upload_bytes. Import creates missing assets, vulnerabilities and
findings and refreshes last_seen on known findings; it never changes a status.
"""

import logging

from fastapi import APIRouter, HTTPException, Request, UploadFile

from api.limiter import import_limit, limiter
from api.models import ErrorDetail, ImportPreviewResponse, ImportResponse
from cmdb.ingest import ScanRecord, parse_nessus_csv, summarize
from cmdb.store import CMDBStore
from core.config import get_settings

logger = logging.getLogger("vulntrack.api")

router = APIRouter(prefix="/vulnerabilities/import")


async def _read_records(file: UploadFile) -> list[ScanRecord]:
    """Size-check, decode and parse an uploaded Nessus CSV."""
    if not (file.filename or "").lower().endswith(".csv"):
        raise HTTPException(
            status_code=415,
            detail=ErrorDetail(
                code="unsupported_format",
                message="File must have a .csv extension.",
            ).model_dump(),
        )

    max_bytes = get_settings().max_upload_bytes
    # Read one byte past the limit; anything longer is rejected without buffering it all.
    raw = await file.read(max_bytes + 1)
    if len(raw) > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=ErrorDetail(
                code="file_too_large",
                message=f"Upload must be {max_bytes} bytes or smaller.",
            ).model_dump(),
        )

    content = raw.decode("utf-8-sig", errors="replace")
    return parse_nessus_csv(content)


@router.post("/nessus", response_model=ImportResponse)
@limiter.limit(import_limit)
async def import_nessus(request: Request, file: UploadFile, skip_duplicates: bool = True) -> ImportResponse:
    """Import a Nessus CSV plugin export.

    Query params:
      skip_duplicates -- when true (default), findings already on record are
                         counted as skipped; when false their last_seen is
                         refreshed.
    """
    records = await _read_records(file)
    cmdb: CMDBStore = request.app.state.cmdb
    result = cmdb.import_scan(records, skip_duplicates=skip_duplicates)
    if not records:
        result.errors.append("No importable rows found (informational rows are skipped).")
    logger.info("Nessus import %r: %d records", file.filename, len(records))
    return ImportResponse.from_result(len(records), result)


@router.post("/nessus/preview", response_model=ImportPreviewResponse)
@limiter.limit(import_limit)
async def preview_nessus(request: Request, file: UploadFile) -> ImportPreviewResponse:
    """Parse a Nessus CSV and report what an import would contain. Nothing is written."""
    records = await _read_records(file)
    return ImportPreviewResponse(**summarize(records))
