"""
Reconciliation Engine - Merge generator patches and user edits into the record

Responsibilities:
- merge(): overlay a generator PartialRecord onto the current record
- changed_fields(): reduce a collaborator patch to what it actually changed
- apply_section_edit(): authoritative replacement of one section from the form
- completion(): percentage of mandatory fields filled
- seed_reporter_from_identity(): one-time pre-population from the profile
- describe_completeness(): filled/empty analysis for the generator prompt

Design principles:
- Pure functions: no I/O, no logging, inputs never mutated
- Never delete: a set field changes only when the patch names that exact field
- Identity-derived fields are read-dominant under merge()
- Results are always complete-shape ReportRecords

Merge rules:
    object sections        key-wise overlay (identity-derived keys: keep current if filled)
    concomitant_products   replaced iff the patch defines it
    product_available      replaced iff the patch defines it (None is a definition)
"""

import logging
from dataclasses import replace
from typing import Any, Dict, List, Mapping, Optional

from aers.contracts import (
    UNSET,
    Identity,
    PartialRecord,
    ReportRecord,
)
from aers.core.record_schema import (
    OBJECT_SECTIONS,
    SECTION_CLASSES,
    SECTION_KEYS,
    FieldKind,
    coerce_field_value,
    field_specs,
    identity_derived_fields,
    is_filled,
    mandatory_field_paths,
    parse_concomitant_products,
    parse_product_available,
)
from aers.errors import MalformedPatchError

logger = logging.getLogger(__name__)

# Reporter field <- identity profile key
IDENTITY_PROFILE_MAP = {
    'first_name': 'first_name',
    'last_name': 'last_name',
    'phone': 'phone',
    'address': 'address',
    'city': 'city',
    'state': 'state',
    'zip_code': 'zip_code',
    'country': 'country',
    'reported_to_manufacturer': 'reported_to_manufacturer_preference',
    'permission_to_share_identity': 'permission_to_share_identity_preference',
}


# ========================
# Merge
# ========================

def _merge_section(section: str, current_value: Any, overlay: Any) -> Any:
    if overlay is UNSET:
        return current_value

    protected = identity_derived_fields(section)
    updates = {}
    for name, value in overlay.items():
        if name in protected and is_filled(getattr(current_value, name)):
            continue
        updates[name] = value

    return replace(current_value, **updates) if updates else current_value


def merge(current: ReportRecord, patch: PartialRecord) -> ReportRecord:
    """
    Merge a generator patch into the current record.

    Args:
        current: Current complete record
        patch: Validated partial record (see record_schema.parse_partial_record)

    Returns:
        ReportRecord: New complete record; current is not modified

    Raises:
        TypeError: If arguments have the wrong type

    Examples:
        >>> merge(record, PartialRecord()) == record
        True

        >>> merged = merge(record, PartialRecord(adverse_event={'description_narrative': 'Rash'}))
        >>> merged.adverse_event.description_narrative
        'Rash'
    """
    if not isinstance(current, ReportRecord):
        raise TypeError(f"current must be ReportRecord, got {type(current).__name__}")
    if not isinstance(patch, PartialRecord):
        raise TypeError(f"patch must be PartialRecord, got {type(patch).__name__}")

    merged_sections = {
        section: _merge_section(section, getattr(current, section), getattr(patch, section))
        for section in OBJECT_SECTIONS
    }

    concomitant = (
        current.concomitant_products
        if patch.concomitant_products is UNSET
        else patch.concomitant_products
    )
    product_available = (
        current.product_available
        if patch.product_available is UNSET
        else patch.product_available
    )

    return ReportRecord(
        concomitant_products=concomitant,
        product_available=product_available,
        **merged_sections,
    )


def changed_fields(base: ReportRecord, patch: PartialRecord) -> PartialRecord:
    """
    Reduce a patch to the entries that differ from base.

    Collaborator patches restate the whole record they were given. Diffing
    against that request-time record keeps only what the collaborator
    actually changed, so edits made to the live record while the call was
    in flight are not overwritten by echoed values.

    Examples:
        >>> patch = PartialRecord(adverse_event={'description_narrative': 'Rash', 'outcomes': ()})
        >>> changed_fields(ReportRecord(), patch).adverse_event
        {'description_narrative': 'Rash'}
    """
    if not isinstance(base, ReportRecord):
        raise TypeError(f"base must be ReportRecord, got {type(base).__name__}")
    if not isinstance(patch, PartialRecord):
        raise TypeError(f"patch must be PartialRecord, got {type(patch).__name__}")

    values: Dict[str, Any] = {}
    for section in OBJECT_SECTIONS:
        overlay = getattr(patch, section)
        if overlay is UNSET:
            continue
        current_value = getattr(base, section)
        diff = {
            name: value for name, value in overlay.items()
            if getattr(current_value, name) != value
        }
        if diff:
            values[section] = diff

    for name in ('concomitant_products', 'product_available'):
        value = getattr(patch, name)
        if value is not UNSET and value != getattr(base, name):
            values[name] = value

    return PartialRecord(**values)


# ========================
# Direct Edits
# ========================

def parse_delimited_list(text: Optional[str], delimiter: str = ',') -> List[str]:
    """
    Split comma-separated free text into a list.

    Contract: items are trimmed, empty items dropped, order preserved.

    Examples:
        >>> parse_delimited_list(' Asian, , White ,')
        ['Asian', 'White']
        >>> parse_delimited_list('')
        []
    """
    if not text:
        return []
    return [item.strip() for item in text.split(delimiter) if item.strip()]


def _parse_form_number(section: str, name: str, kind: FieldKind, value: str) -> Any:
    text = value.strip()
    if not text:
        return None
    try:
        return int(text) if kind == FieldKind.INTEGER else float(text)
    except ValueError:
        raise MalformedPatchError(f"{section}.{name} must be a number, got {value!r}")


def _normalize_form_value(section: str, spec, value: Any) -> Any:
    """Map form input conventions (delimited text, blank inputs) to record values"""
    if spec.kind == FieldKind.TEXT_LIST:
        if value is None:
            return ()
        if isinstance(value, str):
            return tuple(parse_delimited_list(value))
        return value

    if isinstance(value, str):
        if spec.kind in (FieldKind.INTEGER, FieldKind.NUMBER):
            return _parse_form_number(section, spec.name, spec.kind, value)
        if value.strip() == '':
            return None
    return value


def _normalize_form_products(value: Any) -> Any:
    if value is None:
        return ()
    if isinstance(value, str):
        value = parse_delimited_list(value)
    if isinstance(value, (list, tuple)):
        return [{'name': item} if isinstance(item, str) else item for item in value]
    return value


def apply_section_edit(current: ReportRecord, section: str, new_value: Any) -> ReportRecord:
    """
    Replace one section with a direct user edit.

    Unlike merge(), this is an authoritative overwrite: identity-derived
    fields are replaced too, and fields absent from new_value are reset
    to their unset default.

    Form conventions:
    - list fields may arrive as comma-separated text (see parse_delimited_list)
    - blank text inputs become None
    - numeric fields may arrive as text
    - concomitant_products may arrive as comma-separated names

    Args:
        current: Current record
        section: One of SECTION_KEYS
        new_value: Mapping for object sections, list/text for
            concomitant_products, bool/None for product_available

    Returns:
        ReportRecord: New record with only that section changed

    Raises:
        ValueError: If section is unknown
        MalformedPatchError: If the edited values fail validation
    """
    if not isinstance(current, ReportRecord):
        raise TypeError(f"current must be ReportRecord, got {type(current).__name__}")
    if section not in SECTION_KEYS:
        raise ValueError(f"Unknown section: {section}")

    if section == 'concomitant_products':
        products = parse_concomitant_products(_normalize_form_products(new_value))
        return replace(current, concomitant_products=products)

    if section == 'product_available':
        return replace(current, product_available=parse_product_available(new_value))

    if not isinstance(new_value, Mapping):
        raise MalformedPatchError(
            f"{section} edit must be an object, got {type(new_value).__name__}"
        )

    specs = {spec.name: spec for spec in field_specs(section)}
    unknown = set(new_value.keys()) - set(specs.keys())
    if unknown:
        raise MalformedPatchError(f"{section} has unknown fields: {sorted(unknown)}")

    values = {}
    for name, raw in new_value.items():
        spec = specs[name]
        values[name] = coerce_field_value(section, spec, _normalize_form_value(section, spec, raw))

    return replace(current, **{section: SECTION_CLASSES[section](**values)})


# ========================
# Identity Seeding
# ========================

def seed_reporter_from_identity(current: ReportRecord, identity: Identity) -> ReportRecord:
    """
    Pre-populate reporter fields from a verified identity.

    Only empty fields are filled; anything already in the record wins.
    A profile value of the wrong type is skipped; the other fields are
    still filled.
    """
    profile = identity.profile or {}
    reporter = current.reporter_info
    specs = {spec.name: spec for spec in field_specs('reporter_info')}

    candidates: Dict[str, Any] = {
        field_name: profile.get(profile_key)
        for field_name, profile_key in IDENTITY_PROFILE_MAP.items()
    }
    candidates['email'] = identity.email

    updates = {}
    for name, value in candidates.items():
        if not is_filled(value) or is_filled(getattr(reporter, name)):
            continue
        try:
            updates[name] = coerce_field_value('reporter_info', specs[name], value)
        except MalformedPatchError as e:
            logger.warning(f"Profile value not used for reporter_info.{name}: {e}")

    if not updates:
        return current
    return replace(current, reporter_info=replace(reporter, **updates))


# ========================
# Completion
# ========================

def _value_at(record: ReportRecord, path: str) -> Any:
    value = record
    for part in path.split('.'):
        value = getattr(value, part)
    return value


def missing_mandatory_fields(record: ReportRecord) -> List[str]:
    """Dotted paths of mandatory fields that are not filled, in table order"""
    return [path for path in mandatory_field_paths() if not is_filled(_value_at(record, path))]


def completion(record: ReportRecord) -> int:
    """
    Percentage of mandatory fields filled, rounded half up.

    Reporter info is excluded (identity-derived, not user-authored).
    Monotonic: filling a previously empty field never lowers the result.

    Returns:
        int: 0-100
    """
    paths = mandatory_field_paths()
    filled = len(paths) - len(missing_mandatory_fields(record))
    return int(filled * 100 / len(paths) + 0.5)


def _format_value(value: Any) -> str:
    if isinstance(value, tuple):
        return f"[{', '.join(str(item) for item in value)}]"
    return str(value)


def describe_completeness(record: ReportRecord) -> str:
    """
    Summarize filled vs empty fields per section for the generator prompt.

    Example output:
        PATIENT INFO (2/11 fields filled): age=45, sex=Female
        ADVERSE EVENT: No fields filled yet
        ...
    """
    lines = []
    labels = {
        'patient_info': 'PATIENT INFO',
        'adverse_event': 'ADVERSE EVENT',
        'suspect_product': 'SUSPECT PRODUCT',
    }

    for section, label in labels.items():
        section_value = getattr(record, section)
        specs = field_specs(section)
        filled = [
            (spec.name, getattr(section_value, spec.name)) for spec in specs
            if is_filled(getattr(section_value, spec.name))
        ]
        if filled:
            details = ', '.join(f"{name}={_format_value(value)}" for name, value in filled)
            lines.append(f"{label} ({len(filled)}/{len(specs)} fields filled): {details}")
        else:
            lines.append(f"{label}: No fields filled yet")

    if record.concomitant_products:
        lines.append(f"CONCOMITANT PRODUCTS: {len(record.concomitant_products)} products listed")
    else:
        lines.append("CONCOMITANT PRODUCTS: None listed yet")

    reporter_filled = [
        spec.name for spec in field_specs('reporter_info')
        if is_filled(getattr(record.reporter_info, spec.name))
    ]
    if reporter_filled:
        lines.append(f"REPORTER INFO (AUTO-FILLED): {', '.join(reporter_filled)}")

    if record.product_available is not None:
        lines.append(f"PRODUCT AVAILABLE: {'Yes' if record.product_available else 'No'}")

    return '\n'.join(lines)
