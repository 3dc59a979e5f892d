"""
Response field rules.

Two rule sets work on a team response's field values:

  * the conditional-requirement rules, used when an entry is completed;
  * the completion predicate, used to gate the submission of a whole sheet
    and to compute progress.

Both run over the full merged set of values (stored values overlaid with the
incoming payload) because teams fill the fields in any order.

Requirement rules:
    deployed_in_ke, vendor_contacted, current_status       always
    site, compensatory_controls_provided                   deployed_in_ke == 'Y'
    vendor_contact_date                                    vendor_contacted == 'Y'
    compensatory_controls_details                          compensatory_controls_provided == 'Y'
"""

from advisory_tracker.core.exceptions import ValidationError
from advisory_tracker.models.assignment import DATE_FIELDS, RESPONSE_FIELDS, YES_NO_FIELDS
from advisory_tracker.models.sheet import CANONICAL_FIELDS
from advisory_tracker.utils.helpers import is_blank, normalize_yes_no, parse_date

ALWAYS_REQUIRED = ("deployed_in_ke", "vendor_contacted", "current_status")

# (trigger field, trigger value) -> fields that become required
CONDITIONAL_REQUIREMENTS = {
    ("deployed_in_ke", "Y"): ("site", "compensatory_controls_provided"),
    ("vendor_contacted", "Y"): ("vendor_contact_date",),
    ("compensatory_controls_provided", "Y"): ("compensatory_controls_details",),
}


def clean_changes(changes: dict, *, strict: bool = True) -> dict:
    """
    Restrict ``changes`` to team-mutable fields and coerce their values.

    Yes/no fields are normalized to 'Y'/'N', date fields parsed, blank
    strings stored as NULL.

    Raises:
        ValidationError: with strict=True, when canonical or unknown fields
            are present, or a yes/no / date value cannot be understood.
    """
    changes = changes or {}
    canonical = sorted(k for k in changes if k in CANONICAL_FIELDS)
    unknown = sorted(k for k in changes if k not in RESPONSE_FIELDS and k not in CANONICAL_FIELDS)
    if strict and (canonical or unknown):
        raise ValidationError(
            "Only team-editable fields may be changed",
            details={"read_only_fields": canonical, "unknown_fields": unknown},
        )

    cleaned = {}
    invalid = {}
    for name in RESPONSE_FIELDS:
        if name not in changes:
            continue
        value = changes[name]
        if name in YES_NO_FIELDS:
            value = normalize_yes_no(value)
            if value not in (None, "Y", "N"):
                invalid[name] = "expected Y or N"
                continue
        elif name in DATE_FIELDS:
            if is_blank(value):
                value = None
            else:
                parsed = parse_date(value)
                if parsed is None:
                    invalid[name] = "invalid date"
                    continue
                value = parsed
        elif isinstance(value, str):
            value = value.strip() or None
        cleaned[name] = value

    if strict and invalid:
        raise ValidationError("Invalid field values", details={"invalid_fields": invalid})
    return cleaned


def missing_required_fields(values: dict) -> list[str]:
    """Return the required-but-blank field names for a merged value set."""
    missing = [name for name in ALWAYS_REQUIRED if is_blank(values.get(name))]
    for (trigger, expected), required in CONDITIONAL_REQUIREMENTS.items():
        if values.get(trigger) != expected:
            continue
        for name in required:
            if is_blank(values.get(name)) and name not in missing:
                missing.append(name)
    return missing


def is_response_complete(values: dict) -> bool:
    """
    Completion predicate for a single response.

    current_status set AND vendor_contacted set AND
    (deployed_in_ke == 'N' OR (deployed_in_ke == 'Y' AND compensatory_controls_provided set))
    """
    if is_blank(values.get("current_status")) or is_blank(values.get("vendor_contacted")):
        return False
    deployed = values.get("deployed_in_ke")
    if deployed == "N":
        return True
    if deployed == "Y":
        return not is_blank(values.get("compensatory_controls_provided"))
    return False
