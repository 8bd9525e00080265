"""
Results API Endpoints

Handles the screening funnel summary and export of included literature
"""

from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import Response
from typing import Dict, List
from enum import Enum
from io import BytesIO
import pandas as pd
import logging

from ..core.screening_state import Record, ScreeningStatus, included_records
from ..db.record_store import RecordStore
from .dependencies import get_record_store, record_to_dict

logger = logging.getLogger(__name__)

router = APIRouter()

EXPORT_COLUMNS = [
    'id', 'entry_type', 'title', 'author', 'year', 'journal', 'doi', 'url',
    'keywords', 'abstract', 'source', 'title_notes', 'abstract_notes'
]


# ===== Enums =====

class ExportFormat(str, Enum):
    """Export format enumeration"""
    EXCEL = "excel"
    CSV = "csv"
    JSON = "json"


# ===== Helper Functions =====

def records_to_dataframe(records: List[Record]) -> pd.DataFrame:
    """
    Build an export table with the bibliographic columns first

    Extra imported fields follow in first-seen order.
    """
    rows = [record_to_dict(r) for r in records]
    df = pd.DataFrame(rows)
    if df.empty:
        return pd.DataFrame(columns=EXPORT_COLUMNS)

    extra_columns = [
        c for c in df.columns
        if c not in EXPORT_COLUMNS and c not in _INTERNAL_COLUMNS
    ]
    return df[EXPORT_COLUMNS + extra_columns].fillna('')


_INTERNAL_COLUMNS = {
    'dedup_status', 'title_status', 'abstract_status',
    'is_duplicate', 'duplicate_group_id', 'is_primary'
}


# ===== API Endpoints =====

@router.get("/summary")
async def get_results_summary(store: RecordStore = Depends(get_record_store)) -> Dict:
    """
    Screening funnel counts

    identified -> removed as duplicates -> title screened -> abstract screened -> included
    """
    stats = store.stats()
    title = stats['title']
    abstract = stats['abstract']

    return {
        'identified': stats['total'],
        'duplicates_removed': stats['deduplication'][ScreeningStatus.EXCLUDED.value],
        'title_screened': title['total'],
        'title_excluded': title[ScreeningStatus.EXCLUDED.value],
        'abstract_screened': abstract['total'],
        'abstract_excluded': abstract[ScreeningStatus.EXCLUDED.value],
        'included': abstract[ScreeningStatus.INCLUDED.value],
    }


@router.get("/export")
async def export_results(
    format: ExportFormat = ExportFormat.CSV,
    store: RecordStore = Depends(get_record_store)
):
    """
    Export included literature

    Formats:
    - CSV (UTF-8 with BOM, opens cleanly in Excel)
    - Excel (.xlsx via openpyxl)
    - JSON (list of records)
    """
    records = included_records(store.get_all())
    logger.info(f"📤 Exporting {len(records)} included records as {format.value}")

    df = records_to_dataframe(records)

    try:
        if format == ExportFormat.CSV:
            content = df.to_csv(index=False).encode('utf-8-sig')
            media_type = "text/csv"
            extension = "csv"
        elif format == ExportFormat.EXCEL:
            buffer = BytesIO()
            df.to_excel(buffer, index=False, engine='openpyxl', sheet_name='Included')
            content = buffer.getvalue()
            media_type = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
            extension = "xlsx"
        else:
            content = df.to_json(orient='records', force_ascii=False).encode('utf-8')
            media_type = "application/json"
            extension = "json"
    except Exception as e:
        logger.error(f"❌ Export failed: {e}")
        raise HTTPException(status_code=500, detail=f"Export failed: {str(e)}")

    return Response(
        content=content,
        media_type=media_type,
        headers={
            "Content-Disposition": f'attachment; filename="included_literature.{extension}"'
        }
    )
