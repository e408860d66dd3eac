"""
Data models for the consignment pipeline.
Uses dataclasses for DTOs; the Pydantic schema that parses provider JSON lives in core.schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

# Transaction identifiers, any of which may be the uniqueness key depending on receipt format.
IDENTIFIER_FIELDS: tuple[str, ...] = (
    "rrn",
    "receipt_number",
    "approval_code",
    "operation_number",
    "voucher_number",
    "transaction_id",
)

# A disagreement on one of these forces the reduced-confidence branch of the triple check.
IDENTITY_CRITICAL_FIELDS: tuple[str, ...] = ("operation_number", "rrn", "receipt_number")

# Order in which the primary identifier is picked for the strict duplicate check.
PRIMARY_IDENTIFIER_ORDER: tuple[str, ...] = (
    "transaction_id",
    "voucher_number",
    "operation_number",
    "rrn",
    "receipt_number",
    "approval_code",
)


class ValidationStatus(str, Enum):
    """Closed set of terminal validation outcomes."""

    VALID = "VALID"
    DUPLICATE = "DUPLICATE"
    INVALID_ACCOUNT = "INVALID_ACCOUNT"
    LOW_QUALITY = "LOW_QUALITY"


class WhitelistKind(str, Enum):
    ACCOUNT = "ACCOUNT"
    CONVENIO = "CONVENIO"


class ConsensusStrategy(str, Enum):
    """How many extraction calls are issued and how they are reconciled."""

    SINGLE = "single"
    TRIPLE_CHECK = "triple_check"
    DUAL_PROVIDER = "dual_provider"


@dataclass(frozen=True)
class RawFields:
    """One model call's output after schema coercion. Immutable once returned."""

    bank_name: str = ""
    city: str | None = None
    account_or_convenio: str = ""
    amount: int = 0
    date: str | None = None  # ISO YYYY-MM-DD
    time: str | None = None  # HH:MM
    rrn: str | None = None
    receipt_number: str | None = None
    approval_code: str | None = None
    operation_number: str | None = None
    voucher_number: str | None = None
    transaction_id: str | None = None
    payment_reference: str | None = None
    client_code: str | None = None
    raw_text: str = ""
    image_quality_score: int = 0
    confidence_score: int = 0
    is_screenshot: bool = False
    has_physical_receipt: bool = False
    is_readable: bool = False
    has_ambiguous_numbers: bool = False
    ambiguous_fields: tuple[str, ...] = ()

    def identifiers(self) -> dict[str, str | None]:
        """Identifier field name -> value."""
        return {name: getattr(self, name) for name in IDENTIFIER_FIELDS}

    @property
    def primary_identifier(self) -> str | None:
        """First non-empty identifier in PRIMARY_IDENTIFIER_ORDER."""
        for name in PRIMARY_IDENTIFIER_ORDER:
            value = getattr(self, name)
            if value and str(value).strip():
                return str(value).strip()
        return None

    def with_changes(self, **changes: Any) -> RawFields:
        """Return a copy with the given fields replaced. Returns self when nothing changes."""
        effective = {k: v for k, v in changes.items() if getattr(self, k) != v}
        if not effective:
            return self
        return replace(self, **effective)


@dataclass(frozen=True)
class ExtractionResult(RawFields):
    """
    Reconciled record after consensus. confidence_score holds the recalibrated confidence.
    Never mutated after the orchestrator returns it.
    """

    used_provider: str = ""
    from_cache: bool = False
    strategy: str = ""
    agreement_score: int | None = None

    @property
    def confidence(self) -> int:
        return self.confidence_score

    @classmethod
    def from_raw(cls, raw: RawFields, **extra: Any) -> ExtractionResult:
        """Lift a RawFields into an ExtractionResult, overriding any field via extra."""
        values = {name: getattr(raw, name) for name in RawFields.__dataclass_fields__}
        values.update(extra)
        return cls(**values)


@dataclass(frozen=True)
class CacheEntry:
    """Cached consensus result for one image hash."""

    image_hash: str
    result: ExtractionResult
    provider_used: str
    ruleset_version: int
    created_at: float


@dataclass(frozen=True)
class CacheStats:
    size: int = 0
    oldest_created_at: float | None = None


@dataclass(frozen=True)
class WhitelistEntry:
    """Operator-maintained authorized account or convenio."""

    value: str
    label: str = ""
    kind: WhitelistKind = WhitelistKind.ACCOUNT


@dataclass(frozen=True)
class KnownClient:
    """
    Partner whose payments carry a canonical client code.
    Keywords are matched case- and accent-insensitively against the transcript.
    """

    name: str
    code: str
    convenios: tuple[str, ...] = ()
    keywords: tuple[str, ...] = ()
    reference_aliases: tuple[str, ...] = ()


@dataclass(frozen=True)
class ValidationOutcome:
    status: ValidationStatus
    message: str

    @property
    def accepted(self) -> bool:
        return self.status is ValidationStatus.VALID


@dataclass(frozen=True)
class Candidate:
    """A reconciled extraction waiting for validation, in submission order."""

    id: str
    data: ExtractionResult
    image_hash: str = ""
    image_ref: str = ""
    created_at: float = 0.0


@dataclass(frozen=True)
class ConsignmentRecord:
    """
    Externally visible unit: extraction data + identity + status.
    Authorization/verification overlays are layered on top; data is never rewritten silently.
    """

    id: str
    data: ExtractionResult
    status: ValidationStatus
    status_message: str
    image_ref: str = ""
    image_hash: str = ""
    created_at: float = 0.0
    authorized_by: str | None = None
    authorized_at: float | None = None
    authorization_ref: str | None = None
    verified_by: str | None = None
    verified_at: float | None = None
    original_numbers: dict[str, str | None] = field(default_factory=dict)

    def with_authorization(self, authorized_by: str, authorization_ref: str, at: float) -> ConsignmentRecord:
        """Manual authorization upgrades the status to VALID; extracted fields are kept as-is."""
        return replace(
            self,
            status=ValidationStatus.VALID,
            status_message=f"Autorizado manualmente por {authorized_by}",
            authorized_by=authorized_by,
            authorized_at=at,
            authorization_ref=authorization_ref,
        )


@dataclass(frozen=True)
class TrainingExample:
    """Human-corrected prior record forwarded to providers as prompt context."""

    correct_data: RawFields
    receipt_type: str = "OTHER"
    decision: str = "ACCEPT"
    reason: str = ""
    notes: str = ""
    image_hash: str = ""
    trained_at: float = 0.0


@dataclass(frozen=True)
class HistoryFilter:
    """Query for the remote history store."""

    limit: int | None = 50
    estado: str | None = None
    banco: str | None = None
    fecha_inicio: str | None = None
    fecha_fin: str | None = None


@dataclass(frozen=True)
class AppendResult:
    success: bool
    message: str


@dataclass
class BatchMetrics:
    """Metrics collected during batch processing."""

    total_processed: int = 0
    valid_count: int = 0
    duplicate_count: int = 0
    invalid_account_count: int = 0
    low_quality_count: int = 0
    from_cache_count: int = 0
    failed_count: int = 0
    total_time_sec: float = 0.0

    def record(self, record: ConsignmentRecord) -> None:
        self.total_processed += 1
        if record.data.from_cache:
            self.from_cache_count += 1
        if record.status is ValidationStatus.VALID:
            self.valid_count += 1
        elif record.status is ValidationStatus.DUPLICATE:
            self.duplicate_count += 1
        elif record.status is ValidationStatus.INVALID_ACCOUNT:
            self.invalid_account_count += 1
        elif record.status is ValidationStatus.LOW_QUALITY:
            self.low_quality_count += 1

    def to_dict(self) -> dict[str, Any]:
        """Export for logging/serialization."""
        return {
            "total_processed": self.total_processed,
            "valid_count": self.valid_count,
            "duplicate_count": self.duplicate_count,
            "invalid_account_count": self.invalid_account_count,
            "low_quality_count": self.low_quality_count,
            "from_cache_count": self.from_cache_count,
            "failed_count": self.failed_count,
            "total_time_sec": round(self.total_time_sec, 4),
        }
