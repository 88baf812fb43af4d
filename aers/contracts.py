"""
Semantic contracts for the AERS reporting system.

This module defines immutable data structures that serve as contracts
between modules. These are NOT validators - they define shape and
semantics without enforcing rules. Validation lives in
aers.core.record_schema.

Design principles:
- Frozen dataclasses (immutable after creation)
- Tuples instead of lists for list-valued fields (immutability)
- No dependencies on other aers modules
- Definition layer only (no enforcement)

Contents:
- PatientInfo, AdverseEvent, SuspectProduct, ConcomitantProduct, ReporterInfo:
  record sections (MedWatch 3500B sections E, A, C, E.11-12, F)
- ReportRecord: the complete record (always full shape)
- PartialRecord: a possibly-sparse patch, UNSET marks "not provided"
- Turn, AttachmentPayload, FileMetadata, PendingAction
- CollaboratorRequest, CollaboratorResponse
- Identity

Usage:
    from aers.contracts import ReportRecord, PartialRecord, UNSET
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping, Optional, Tuple, Union


class _Unset:
    """
    Marker for "not provided" in a PartialRecord.

    Distinct from None, which is an explicit "unset this value" for
    nullable fields such as product_available.
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = _Unset()


# ========================
# Record Sections
# ========================

@dataclass(frozen=True)
class PatientInfo:
    """Section E - about the person who had the problem"""
    initials: Optional[str] = None
    age: Optional[int] = None
    dob: Optional[str] = None  # YYYY-MM-DD
    sex: Optional[str] = None
    weight: Optional[float] = None
    weight_unit: Optional[str] = None
    race: Tuple[str, ...] = ()
    ethnicity: Optional[str] = None
    allergies: Optional[str] = None
    medical_conditions: Optional[str] = None
    other_info: Optional[str] = None  # tobacco, pregnancy, alcohol use, ...


@dataclass(frozen=True)
class AdverseEvent:
    """Section A - about the problem"""
    problem_type: Tuple[str, ...] = ()
    outcomes: Tuple[str, ...] = ()
    event_onset_date: Optional[str] = None
    description_narrative: Optional[str] = None
    relevant_tests: Optional[str] = None
    additional_comments: Optional[str] = None


@dataclass(frozen=True)
class SuspectProduct:
    """Section C - about the product"""
    name: Optional[str] = None
    product_type: Tuple[str, ...] = ()
    ndc_number: Optional[str] = None
    manufacturer: Optional[str] = None
    lot_number: Optional[str] = None
    expiration_date: Optional[str] = None
    dose: Optional[str] = None
    quantity_taken: Optional[str] = None
    frequency: Optional[str] = None
    route: Optional[str] = None
    therapy_start_date: Optional[str] = None
    therapy_end_date: Optional[str] = None
    therapy_ongoing: Optional[bool] = None
    reason_for_use: Optional[str] = None
    problem_resolved_after_stopping: Optional[bool] = None
    problem_returned_after_restarting: Optional[str] = None


@dataclass(frozen=True)
class ConcomitantProduct:
    """Section E, items 11 and 12 - one other product being taken"""
    name: str


@dataclass(frozen=True)
class ReporterInfo:
    """
    Section F - about the person filling out the form.

    first_name, last_name, email and country are identity-derived.
    permission_to_share_identity is True when the reporter checked the
    "do NOT share" box.
    """
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    reported_to_manufacturer: Optional[bool] = None
    permission_to_share_identity: Optional[bool] = None


@dataclass(frozen=True)
class ReportRecord:
    """
    The complete adverse-event record.

    Always full shape: every section exists and every field has a value,
    possibly the unset sentinel (None or an empty tuple).
    """
    patient_info: PatientInfo = field(default_factory=PatientInfo)
    adverse_event: AdverseEvent = field(default_factory=AdverseEvent)
    suspect_product: SuspectProduct = field(default_factory=SuspectProduct)
    concomitant_products: Tuple[ConcomitantProduct, ...] = ()
    reporter_info: ReporterInfo = field(default_factory=ReporterInfo)
    product_available: Optional[bool] = None  # Section B


@dataclass(frozen=True)
class PartialRecord:
    """
    Possibly-sparse update to a ReportRecord.

    Object sections are mappings holding only the keys the writer
    provided. Top-level list/flag fields hold UNSET when not provided,
    which is different from an explicit empty tuple or None.

    Built by aers.core.record_schema.parse_partial_record(), which
    validates keys and value types before anything reaches merge().
    """
    patient_info: Union[Mapping[str, Any], _Unset] = UNSET
    adverse_event: Union[Mapping[str, Any], _Unset] = UNSET
    suspect_product: Union[Mapping[str, Any], _Unset] = UNSET
    concomitant_products: Union[Tuple[ConcomitantProduct, ...], _Unset] = UNSET
    reporter_info: Union[Mapping[str, Any], _Unset] = UNSET
    product_available: Union[Optional[bool], _Unset] = UNSET


# ========================
# Dialogue
# ========================

class TurnRole(str, Enum):
    """Who produced a turn"""
    HUMAN = "human"
    AGENT = "agent"


@dataclass(frozen=True)
class AttachmentPayload:
    """Encoded attachment content sent alongside a human turn"""
    name: str
    mime_type: str
    data: str  # base64
    size: int = 0


@dataclass(frozen=True)
class FileMetadata:
    """
    Attachment metadata only. Content is never persisted, so attachments
    do not survive an identity-verification interruption.
    """
    name: str
    size: int
    type: str


@dataclass(frozen=True)
class Turn:
    """
    One unit of the human/agent exchange.

    Attributes:
        role: TurnRole.HUMAN or TurnRole.AGENT
        text: Message content
        attachments: Payloads sent with a human turn
        local_only: Display-only turn (the greeting), never sent as context
        timestamp: ISO 8601 creation time
    """
    role: TurnRole
    text: str
    attachments: Tuple[AttachmentPayload, ...] = ()
    local_only: bool = False
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


@dataclass(frozen=True)
class PendingAction:
    """A report-start request deferred until identity is verified"""
    description: str
    files: Optional[Tuple[FileMetadata, ...]] = None


# ========================
# Collaborators
# ========================

@dataclass(frozen=True)
class CollaboratorRequest:
    """
    Input to the generation collaborator.

    Attributes:
        turns: Context turns (local-only turns already excluded)
        record: Current record
        attachments: Payloads attached to the latest human turn
        turn_index: Monotonic request tag for stale-response detection
        is_confirmation: The latest human turn resolves a suggestion round
    """
    turns: Tuple[Turn, ...]
    record: ReportRecord
    attachments: Tuple[AttachmentPayload, ...] = ()
    turn_index: int = 0
    is_confirmation: bool = False


@dataclass(frozen=True)
class CollaboratorResponse:
    """
    Output of the generation collaborator.

    suggestions is empty for a normal turn. When non-empty the record
    is left unchanged: the patch carries no changes and is not merged.
    """
    message: str
    updated_record: PartialRecord
    suggestions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Identity:
    """
    Verified identity as exposed by the identity provider.

    profile carries provider metadata (first_name, last_name, phone,
    country, ..., reported_to_manufacturer_preference,
    permission_to_share_identity_preference).
    """
    user_id: str
    email: Optional[str] = None
    profile: Mapping[str, Any] = field(default_factory=dict)
