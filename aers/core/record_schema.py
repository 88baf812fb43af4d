"""
Record Schema - Field table and validation for the adverse-event record

Responsibilities:
- Declare every record field once: kind, allowed values, provenance,
  whether it counts toward completion
- Validate and coerce raw JSON (collaborator output, form input) into
  typed section values
- Build PartialRecord patches and complete ReportRecords from JSON
- Serialize records back to JSON-safe dicts

Design principles:
- Data-driven: merge, completion, form parsing and prompts all read
  SECTION_FIELDS instead of hard-coding field names
- Reject, never coerce silently: unknown keys and wrong types raise
  MalformedPatchError
- No merge logic here (see aers.core.reconciliation)

Section keys (in export order):
    patient_info, adverse_event, suspect_product,
    concomitant_products, reporter_info, product_available
"""

from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from aers.contracts import (
    UNSET,
    AdverseEvent,
    ConcomitantProduct,
    PartialRecord,
    PatientInfo,
    ReporterInfo,
    ReportRecord,
    SuspectProduct,
)
from aers.errors import MalformedPatchError


class FieldKind(str, Enum):
    """Value kinds understood by the validator"""
    TEXT = "text"
    DATE = "date"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    CHOICE = "choice"
    TEXT_LIST = "text_list"


class Provenance(str, Enum):
    """
    Who may set a field.

    IDENTITY_DERIVED: seeded from the verified profile, read-dominant
        under merge (patch value accepted only when current is empty)
    GENERATOR_WRITABLE: set by accepted patches or direct user edits
    USER_OPTIONAL: may stay unset; the generator must not invent it
    """
    IDENTITY_DERIVED = "identity_derived"
    GENERATOR_WRITABLE = "generator_writable"
    USER_OPTIONAL = "user_optional"


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: FieldKind = FieldKind.TEXT
    provenance: Provenance = Provenance.GENERATOR_WRITABLE
    choices: Optional[Tuple[str, ...]] = None
    mandatory: bool = False


DATE_FORMAT = "%Y-%m-%d"

SEX_CHOICES = ("Male", "Female", "Unknown")
WEIGHT_UNIT_CHOICES = ("kg", "lbs")
ETHNICITY_CHOICES = ("Hispanic or Latino", "Not Hispanic or Latino", "Unknown")
RESTART_CHOICES = ("Yes", "No", "Didn't restart")

_ID = Provenance.IDENTITY_DERIVED
_OPT = Provenance.USER_OPTIONAL

SECTION_FIELDS: Dict[str, Tuple[FieldSpec, ...]] = {
    'patient_info': (
        FieldSpec('initials', mandatory=True),
        FieldSpec('age', FieldKind.INTEGER, mandatory=True),
        FieldSpec('dob', FieldKind.DATE, mandatory=True),
        FieldSpec('sex', FieldKind.CHOICE, choices=SEX_CHOICES, mandatory=True),
        FieldSpec('weight', FieldKind.NUMBER, mandatory=True),
        FieldSpec('weight_unit', FieldKind.CHOICE, choices=WEIGHT_UNIT_CHOICES),
        FieldSpec('race', FieldKind.TEXT_LIST, mandatory=True),
        FieldSpec('ethnicity', FieldKind.CHOICE, choices=ETHNICITY_CHOICES, mandatory=True),
        FieldSpec('allergies', mandatory=True),
        FieldSpec('medical_conditions', mandatory=True),
        FieldSpec('other_info'),
    ),
    'adverse_event': (
        FieldSpec('problem_type', FieldKind.TEXT_LIST, mandatory=True),
        FieldSpec('outcomes', FieldKind.TEXT_LIST, mandatory=True),
        FieldSpec('event_onset_date', FieldKind.DATE, mandatory=True),
        FieldSpec('description_narrative', mandatory=True),
        FieldSpec('relevant_tests'),
        FieldSpec('additional_comments'),
    ),
    'suspect_product': (
        FieldSpec('name', mandatory=True),
        FieldSpec('product_type', FieldKind.TEXT_LIST),
        FieldSpec('ndc_number'),
        FieldSpec('manufacturer', mandatory=True),
        FieldSpec('lot_number'),
        FieldSpec('expiration_date', FieldKind.DATE),
        FieldSpec('dose', mandatory=True),
        FieldSpec('quantity_taken'),
        FieldSpec('frequency'),
        FieldSpec('route', mandatory=True),
        FieldSpec('therapy_start_date', FieldKind.DATE, mandatory=True),
        FieldSpec('therapy_end_date', FieldKind.DATE),
        FieldSpec('therapy_ongoing', FieldKind.BOOLEAN),
        FieldSpec('reason_for_use', mandatory=True),
        FieldSpec('problem_resolved_after_stopping', FieldKind.BOOLEAN),
        FieldSpec('problem_returned_after_restarting', FieldKind.CHOICE, choices=RESTART_CHOICES),
    ),
    # Reporter info is identity-derived or user-authored, never mandatory
    'reporter_info': (
        FieldSpec('first_name', provenance=_ID),
        FieldSpec('last_name', provenance=_ID),
        FieldSpec('phone', provenance=_OPT),
        FieldSpec('email', provenance=_ID),
        FieldSpec('address', provenance=_OPT),
        FieldSpec('city', provenance=_OPT),
        FieldSpec('state', provenance=_OPT),
        FieldSpec('zip_code', provenance=_OPT),
        FieldSpec('country', provenance=_ID),
        FieldSpec('reported_to_manufacturer', FieldKind.BOOLEAN),
        FieldSpec('permission_to_share_identity', FieldKind.BOOLEAN),
    ),
}

SECTION_CLASSES = {
    'patient_info': PatientInfo,
    'adverse_event': AdverseEvent,
    'suspect_product': SuspectProduct,
    'reporter_info': ReporterInfo,
}

OBJECT_SECTIONS = ('patient_info', 'adverse_event', 'suspect_product', 'reporter_info')
TOP_LEVEL_FIELDS = ('concomitant_products', 'product_available')
SECTION_KEYS = (
    'patient_info', 'adverse_event', 'suspect_product',
    'concomitant_products', 'reporter_info', 'product_available',
)

# Top-level entries that count toward completion
MANDATORY_TOP_LEVEL = ('concomitant_products', 'product_available')


# ========================
# Lookups
# ========================

def field_specs(section: str) -> Tuple[FieldSpec, ...]:
    """
    Get field specs for an object section.

    Raises:
        ValueError: If section is not an object section
    """
    if section not in SECTION_FIELDS:
        raise ValueError(f"Unknown object section: {section}")
    return SECTION_FIELDS[section]


def identity_derived_fields(section: str) -> Tuple[str, ...]:
    return tuple(
        spec.name for spec in field_specs(section)
        if spec.provenance == Provenance.IDENTITY_DERIVED
    )


def mandatory_field_paths() -> List[str]:
    """
    Dotted paths of every field counted by completion().

    Returns:
        list: e.g. ['patient_info.initials', ..., 'concomitant_products', 'product_available']
    """
    paths = []
    for section in OBJECT_SECTIONS:
        for spec in SECTION_FIELDS[section]:
            if spec.mandatory:
                paths.append(f"{section}.{spec.name}")
    paths.extend(MANDATORY_TOP_LEVEL)
    return paths


def is_filled(value: Any) -> bool:
    """
    Filled = not None, not empty string, and non-empty for sequences.

    False counts as filled (an explicit "no" is an answer).
    """
    if value is None or value is UNSET:
        return False
    if isinstance(value, str):
        return value != ''
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    return True


# ========================
# Value Validation
# ========================

def coerce_field_value(section: str, spec: FieldSpec, value: Any) -> Any:
    """
    Validate one raw value against its spec.

    Args:
        section: Section name (for error messages)
        spec: Field spec
        value: Raw JSON value

    Returns:
        Typed value (lists become tuples)

    Raises:
        MalformedPatchError: If value has the wrong type or is not allowed
    """
    path = f"{section}.{spec.name}"

    if spec.kind == FieldKind.TEXT_LIST:
        if not isinstance(value, (list, tuple)):
            raise MalformedPatchError(
                f"{path} must be a list, got {type(value).__name__}"
            )
        for item in value:
            if not isinstance(item, str):
                raise MalformedPatchError(f"{path} items must be strings, got {item!r}")
        return tuple(value)

    if value is None:
        return None

    if spec.kind == FieldKind.TEXT:
        if not isinstance(value, str):
            raise MalformedPatchError(f"{path} must be a string, got {type(value).__name__}")
        return value

    if spec.kind == FieldKind.DATE:
        if not isinstance(value, str):
            raise MalformedPatchError(f"{path} must be a date string, got {type(value).__name__}")
        if value == '':
            return value
        try:
            datetime.strptime(value, DATE_FORMAT)
        except ValueError:
            raise MalformedPatchError(f"{path} must be YYYY-MM-DD, got {value!r}")
        return value

    if spec.kind == FieldKind.BOOLEAN:
        if not isinstance(value, bool):
            raise MalformedPatchError(f"{path} must be a boolean, got {value!r}")
        return value

    if spec.kind == FieldKind.INTEGER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedPatchError(f"{path} must be an integer, got {value!r}")
        if isinstance(value, float):
            if not value.is_integer():
                raise MalformedPatchError(f"{path} must be a whole number, got {value!r}")
            return int(value)
        return value

    if spec.kind == FieldKind.NUMBER:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise MalformedPatchError(f"{path} must be a number, got {value!r}")
        return value

    if spec.kind == FieldKind.CHOICE:
        if value not in spec.choices:
            raise MalformedPatchError(
                f"{path} must be one of {list(spec.choices)}, got {value!r}"
            )
        return value

    raise ValueError(f"Unhandled field kind: {spec.kind}")


def parse_section_patch(section: str, data: Any) -> Dict[str, Any]:
    """
    Validate an object-section patch.

    Args:
        section: Object section name
        data: Mapping of field name -> raw value (any subset of fields)

    Returns:
        dict: Validated field name -> typed value

    Raises:
        MalformedPatchError: If data is not a mapping, has unknown keys,
            or any value fails validation
    """
    if not isinstance(data, Mapping):
        raise MalformedPatchError(
            f"{section} must be an object, got {type(data).__name__}"
        )

    specs = {spec.name: spec for spec in field_specs(section)}
    unknown = set(data.keys()) - set(specs.keys())
    if unknown:
        raise MalformedPatchError(f"{section} has unknown fields: {sorted(unknown)}")

    return {
        name: coerce_field_value(section, specs[name], value)
        for name, value in data.items()
    }


def parse_concomitant_products(data: Any) -> Tuple[ConcomitantProduct, ...]:
    """
    Validate the concomitant product list.

    Raises:
        MalformedPatchError: If not a list of {name: non-empty string}
    """
    if not isinstance(data, (list, tuple)):
        raise MalformedPatchError(
            f"concomitant_products must be a list, got {type(data).__name__}"
        )

    products = []
    for item in data:
        if isinstance(item, ConcomitantProduct):
            products.append(item)
            continue
        if not isinstance(item, Mapping) or not isinstance(item.get('name'), str):
            raise MalformedPatchError(
                f"concomitant_products items must be objects with a 'name' string, got {item!r}"
            )
        if not item['name'].strip():
            raise MalformedPatchError("concomitant_products item has an empty name")
        products.append(ConcomitantProduct(name=item['name']))
    return tuple(products)


def parse_product_available(data: Any) -> Optional[bool]:
    if data is not None and not isinstance(data, bool):
        raise MalformedPatchError(f"product_available must be a boolean or null, got {data!r}")
    return data


def parse_partial_record(data: Any, require_complete: bool = False) -> PartialRecord:
    """
    Build a validated PartialRecord from raw JSON.

    Args:
        data: Raw patch dict
        require_complete: If True, every top-level section key must be
            present (collaborator output contract)

    Returns:
        PartialRecord: Omitted sections are UNSET

    Raises:
        MalformedPatchError: On missing required sections, unknown
            sections, or invalid values

    Examples:
        >>> parse_partial_record({'adverse_event': {'description_narrative': 'Rash'}})
        PartialRecord(patient_info=UNSET, adverse_event={'description_narrative': 'Rash'}, ...)

        >>> parse_partial_record({}, require_complete=True)
        MalformedPatchError: patch is missing required sections: [...]
    """
    if not isinstance(data, Mapping):
        raise MalformedPatchError(f"patch must be an object, got {type(data).__name__}")

    unknown = set(data.keys()) - set(SECTION_KEYS)
    if unknown:
        raise MalformedPatchError(f"patch has unknown sections: {sorted(unknown)}")

    if require_complete:
        missing = [key for key in SECTION_KEYS if key not in data]
        if missing:
            raise MalformedPatchError(f"patch is missing required sections: {missing}")

    values: Dict[str, Any] = {}
    for section in OBJECT_SECTIONS:
        if section in data:
            values[section] = parse_section_patch(section, data[section])
    if 'concomitant_products' in data:
        values['concomitant_products'] = parse_concomitant_products(data['concomitant_products'])
    if 'product_available' in data:
        values['product_available'] = parse_product_available(data['product_available'])

    return PartialRecord(**values)


# ========================
# Serialization
# ========================

def section_to_json(section_value: Any) -> Dict[str, Any]:
    """Serialize a section dataclass, tuples become lists"""
    result = {}
    for f in fields(section_value):
        value = getattr(section_value, f.name)
        result[f.name] = list(value) if isinstance(value, tuple) else value
    return result


def record_to_json(record: ReportRecord) -> Dict[str, Any]:
    """
    Serialize a complete record to a JSON-safe dict.

    Every section and field key is present, in export order.
    """
    return {
        'patient_info': section_to_json(record.patient_info),
        'adverse_event': section_to_json(record.adverse_event),
        'suspect_product': section_to_json(record.suspect_product),
        'concomitant_products': [{'name': p.name} for p in record.concomitant_products],
        'reporter_info': section_to_json(record.reporter_info),
        'product_available': record.product_available,
    }


def record_from_json(data: Any) -> ReportRecord:
    """
    Rebuild a complete record from its JSON form.

    Missing fields inside a section take their unset default, so the
    result always has complete shape.

    Raises:
        MalformedPatchError: If a section is missing or any value is invalid
    """
    partial = parse_partial_record(data, require_complete=True)
    return ReportRecord(
        patient_info=PatientInfo(**partial.patient_info),
        adverse_event=AdverseEvent(**partial.adverse_event),
        suspect_product=SuspectProduct(**partial.suspect_product),
        concomitant_products=partial.concomitant_products,
        reporter_info=ReporterInfo(**partial.reporter_info),
        product_available=partial.product_available,
    )
