"""
Entry Store Service.

Turns a parsed spreadsheet dataset into canonical ``SheetEntry`` rows and
covers the administrative entry operations (add, delete, reset).

The dataset comes from the ingestion collaborator already parsed:

    {"headers": ["Product Name", "CVE", ...],
     "rows":    [{"Product Name": "...", ...}, ["...", ...], ...]}

Rows may be dicts keyed by header or lists aligned with ``headers``.

Usage:
    from advisory_tracker.services.entry_service import create_entries_from_dataset

    result = create_entries_from_dataset(sheet_id=5, dataset=parsed)
    # {"sheet_id": 5, "created": 42, "skipped": 2, "entry_ids": [...]}
"""

import logging
from datetime import datetime

from sqlalchemy import func

from advisory_tracker.core.exceptions import ValidationError
from advisory_tracker.models import db
from advisory_tracker.models.assignment import DATE_FIELDS, RESPONSE_FIELDS, SheetResponse, YES_NO_FIELDS
from advisory_tracker.models.audit import write_entry_log
from advisory_tracker.models.sheet import CANONICAL_FIELDS, Sheet, SheetEntry
from advisory_tracker.services.edit_tracking import remove_tracking
from advisory_tracker.services.field_rules import clean_changes
from advisory_tracker.utils.helpers import get_or_raise, is_blank, normalize_yes_no, parse_date

logger = logging.getLogger(__name__)

# Spreadsheet header -> entry column. Several headers feed the same column;
# the first non-empty one in a row wins.
COLUMN_MAPPING = {
    # Identity
    "Product Name": "product_name",
    "Product Category": "product_category",
    "Vendor Name": "vendor_name",
    "OEM/Vendor": "oem_vendor",
    "Source": "source",
    "Risk Level": "risk_level",
    "CVE": "cve",
    # Deployment
    "Deployed in KE?": "deployed_in_ke",
    "Product Deployed in KE?": "deployed_in_ke",
    "Y/N": "deployed_in_ke",
    "Site": "site",
    "Status": "current_status",
    "Current Status": "current_status",
    # Vendor interaction
    "Vendor Contacted": "vendor_contacted",
    "Vendor Contacted (Y/N)": "vendor_contacted",
    "Date": "vendor_contact_date",
    # Patching
    "Patching": "patching",
    "Patching Est. Release Date": "patching_est_release_date",
    "Implementation Date": "implementation_date",
    "Implementation Time": "implementation_date",
    "Estimated Completion Date": "estimated_completion_date",
    "Est.Time": "estimated_time",
    "Est. Time": "estimated_time",
    "Estimated Time": "estimated_time",
    # Controls
    "Compensatory Controls Provided": "compensatory_controls_provided",
    "Compensatory Controls Provided (Y/N)": "compensatory_controls_provided",
    "Compensatory Controls Details": "compensatory_controls_details",
    "Comments": "comments",
}

# A data row containing any of these is a repeated header row.
_HEADER_MARKERS = {"y/n", "oem/vendor", "product name", "risk level", "cve", "source", "vendor contacted"}

# At least one of these must be present for a row to become an entry.
_IDENTITY_MINIMUM = ("product_name", "oem_vendor", "source")


def _parse_sheet_date(value):
    """Spreadsheet dates: slash dates are US month-first, the rest via parse_date."""
    if isinstance(value, str) and value.count("/") == 2:
        try:
            return datetime.strptime(value.strip(), "%m/%d/%Y").date()
        except ValueError:
            pass
    return parse_date(value)


def _row_as_dict(row, headers):
    if isinstance(row, dict):
        return {str(k).strip(): v for k, v in row.items() if k is not None}
    return {headers[i]: value for i, value in enumerate(row) if i < len(headers)}


def _looks_like_header(values):
    for value in values:
        if isinstance(value, str) and value.strip().lower() in _HEADER_MARKERS:
            return True
    return False


def map_row(raw: dict) -> dict:
    """Map one header-keyed row onto entry columns, normalizing values."""
    fields = {}
    for header, value in raw.items():
        column = COLUMN_MAPPING.get(header)
        if column is None or column in fields or is_blank(value):
            continue
        if column in YES_NO_FIELDS:
            value = normalize_yes_no(value)
            if value not in ("Y", "N"):
                # placeholders such as "N/A" or "Y/N"
                continue
        elif column in DATE_FIELDS:
            value = _parse_sheet_date(value)
            if value is None:
                continue
        else:
            value = str(value).strip()
        fields[column] = value
    return fields


def _next_row_number(sheet_id):
    current = (
        db.session.query(func.max(SheetEntry.row_number))
        .filter(SheetEntry.sheet_id == sheet_id)
        .scalar()
    )
    return (current or 0) + 1


def create_entries_from_dataset(sheet_id, dataset):
    """
    Bulk-create entries for a sheet from a parsed dataset.

    Repeated header rows and rows without any identity value are skipped.

    Raises:
        NotFoundError: unknown sheet.
        ValidationError: dataset has no rows.
    """
    sheet = get_or_raise(Sheet, sheet_id)
    dataset = dataset or {}
    headers = [str(h).strip() if h is not None else "" for h in dataset.get("headers") or []]
    rows = dataset.get("rows") or []
    if not rows:
        raise ValidationError("Dataset contains no rows", details={"sheet_id": sheet_id})

    row_number = _next_row_number(sheet.id)
    entries = []
    skipped = 0
    for index, row in enumerate(rows, start=1):
        raw = _row_as_dict(row, headers)
        if _looks_like_header(raw.values()):
            logger.debug("Skipping row %d of sheet %s: header row", index, sheet_id)
            skipped += 1
            continue
        fields = map_row(raw)
        if not any(fields.get(name) for name in _IDENTITY_MINIMUM):
            logger.debug("Skipping row %d of sheet %s: insufficient data", index, sheet_id)
            skipped += 1
            continue
        entries.append(SheetEntry(sheet_id=sheet.id, row_number=row_number, **fields))
        row_number += 1

    db.session.add_all(entries)
    db.session.commit()

    logger.info(
        "Imported %d entries into sheet %s (%d skipped)", len(entries), sheet_id, skipped,
        extra={"sheet_id": sheet_id},
    )
    return {
        "sheet_id": sheet.id,
        "created": len(entries),
        "skipped": skipped,
        "entry_ids": [e.id for e in entries],
    }


def add_entry(sheet_id, fields):
    """
    Add one entry to a sheet.

    Existing assignments get no response for it until ``backfill_responses``
    runs.
    """
    sheet = get_or_raise(Sheet, sheet_id)
    fields = fields or {}
    unknown = sorted(k for k in fields if k not in CANONICAL_FIELDS and k not in RESPONSE_FIELDS)
    if unknown:
        raise ValidationError("Unknown entry fields", details={"unknown_fields": unknown})

    values = {
        name: str(fields[name]).strip()
        for name in CANONICAL_FIELDS
        if not is_blank(fields.get(name))
    }
    if not any(values.get(name) for name in _IDENTITY_MINIMUM):
        raise ValidationError(
            "An entry needs a product name, OEM/vendor or source",
            details={"missing_fields": list(_IDENTITY_MINIMUM)},
        )
    values.update(clean_changes({k: v for k, v in fields.items() if k in RESPONSE_FIELDS}))

    entry = SheetEntry(sheet_id=sheet.id, row_number=_next_row_number(sheet.id), **values)
    db.session.add(entry)
    db.session.commit()
    if sheet.status == "distributed":
        logger.info("Entry %s added to distributed sheet %s; backfill pending", entry.id, sheet.id,
                    extra={"sheet_id": sheet.id, "entry_id": entry.id})
    return entry


def delete_entry(entry_id):
    """Delete an entry with its responses and tracking records."""
    entry = get_or_raise(SheetEntry, entry_id)
    sheet_id = entry.sheet_id
    responses = SheetResponse.query.filter_by(original_entry_id=entry.id).delete(synchronize_session="fetch")
    tracking = remove_tracking(sheet_id=sheet_id, entry_id=entry.id)
    db.session.delete(entry)
    db.session.commit()
    logger.info("Deleted entry %s (%d responses, %d tracking rows)", entry_id, responses, tracking,
                extra={"sheet_id": sheet_id, "entry_id": entry_id})
    return {"entry_id": entry_id, "responses_deleted": responses, "tracking_deleted": tracking}


def reset_entry(entry_id, admin_user_id=None):
    """
    Administrative reset: clear lock and completion, forget who edited it.

    Response values are left as they are.
    """
    entry = get_or_raise(SheetEntry, entry_id)
    previous = entry.lock_dict()
    entry.locked_by_user_id = None
    entry.locked_at = None
    entry.is_completed = False
    entry.completed_at = None
    tracking = remove_tracking(sheet_id=entry.sheet_id, entry_id=entry.id)
    write_entry_log(
        entry_id=entry.id, action="reset", user_id=admin_user_id,
        details="Entry reset by administrator",
        metadata={"previous": previous, "tracking_deleted": tracking},
    )
    db.session.commit()
    logger.info("Entry %s reset by %s", entry_id, admin_user_id,
                extra={"entry_id": entry_id, "user_id": admin_user_id})
    return entry


def list_entries(sheet_id, *, risk_level=None, completed=None):
    """Entries of a sheet in spreadsheet order."""
    get_or_raise(Sheet, sheet_id)
    q = SheetEntry.query.filter_by(sheet_id=sheet_id)
    if risk_level:
        q = q.filter(SheetEntry.risk_level == risk_level)
    if completed is not None:
        q = q.filter(SheetEntry.is_completed.is_(bool(completed)))
    return q.order_by(SheetEntry.row_number.asc(), SheetEntry.id.asc()).all()
