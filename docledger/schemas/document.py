from datetime import datetime
from enum import StrEnum
from typing import Optional

from pydantic import BaseModel, Field


class DocumentStatus(StrEnum):
    UPLOADED = "UPLOADED"
    CLASSIFYING = "CLASSIFYING"
    UNRECOGNIZED = "UNRECOGNIZED"
    PENDING_REVIEW = "PENDING_REVIEW"
    CATEGORIZED = "CATEGORIZED"
    POSTED = "POSTED"


class DocumentType(StrEnum):
    RECEIPT = "receipt"
    PURCHASE_INVOICE = "purchase_invoice"
    SALES_INVOICE = "sales_invoice"
    BANK_STATEMENT = "bank_statement"
    EXPENSE_CLAIM = "expense_claim"
    TAX_DOCUMENT = "tax_document"


class UnrecognizedReason(StrEnum):
    LOW_CONFIDENCE = "low_confidence"
    UNSUPPORTED_LANGUAGE = "unsupported_language"
    INCOMPLETE_IMAGE = "incomplete_image"
    UNKNOWN_TYPE = "unknown_type"
    SERVICE_TIMEOUT = "service_timeout"


class FieldName(StrEnum):
    VENDOR_NAME = "vendor_name"
    VENDOR_ADDRESS = "vendor_address"
    VENDOR_TAX_ID = "vendor_tax_id"
    RECEIPT_NUMBER = "receipt_number"
    INVOICE_NUMBER = "invoice_number"
    RECEIPT_DATE = "receipt_date"
    DUE_DATE = "due_date"
    CURRENCY = "currency"
    SUBTOTAL = "subtotal"
    TAX_AMOUNT = "tax_amount"
    TAX_RATE = "tax_rate"
    DISCOUNT_AMOUNT = "discount_amount"
    TOTAL_AMOUNT = "total_amount"
    PAYMENT_METHOD = "payment_method"
    DESCRIPTION = "description"


_INVOICE_FIELDS = (
    FieldName.VENDOR_NAME,
    FieldName.VENDOR_TAX_ID,
    FieldName.INVOICE_NUMBER,
    FieldName.RECEIPT_DATE,
    FieldName.DUE_DATE,
    FieldName.CURRENCY,
    FieldName.SUBTOTAL,
    FieldName.TAX_AMOUNT,
    FieldName.TOTAL_AMOUNT,
)

EXPECTED_FIELDS: dict[DocumentType, tuple[FieldName, ...]] = {
    DocumentType.RECEIPT: (
        FieldName.VENDOR_NAME,
        FieldName.RECEIPT_NUMBER,
        FieldName.RECEIPT_DATE,
        FieldName.CURRENCY,
        FieldName.SUBTOTAL,
        FieldName.TAX_AMOUNT,
        FieldName.TOTAL_AMOUNT,
        FieldName.PAYMENT_METHOD,
    ),
    DocumentType.PURCHASE_INVOICE: _INVOICE_FIELDS,
    DocumentType.SALES_INVOICE: _INVOICE_FIELDS,
    DocumentType.EXPENSE_CLAIM: (
        FieldName.VENDOR_NAME,
        FieldName.RECEIPT_DATE,
        FieldName.CURRENCY,
        FieldName.TOTAL_AMOUNT,
        FieldName.DESCRIPTION,
    ),
    DocumentType.BANK_STATEMENT: (
        FieldName.VENDOR_NAME,
        FieldName.RECEIPT_DATE,
        FieldName.CURRENCY,
        FieldName.TOTAL_AMOUNT,
    ),
    DocumentType.TAX_DOCUMENT: (
        FieldName.VENDOR_NAME,
        FieldName.VENDOR_TAX_ID,
        FieldName.RECEIPT_DATE,
        FieldName.CURRENCY,
        FieldName.TAX_AMOUNT,
        FieldName.TOTAL_AMOUNT,
    ),
}


# --- Documents ---


class DocumentCreate(BaseModel):
    original_filename: str = Field(..., min_length=1, max_length=256)
    content_ref: Optional[str] = Field(default=None, max_length=1024)
    content_text: Optional[str] = None
    notes: Optional[str] = None


class DocumentOut(BaseModel):
    id: str
    original_filename: str
    content_ref: Optional[str] = None
    status: DocumentStatus
    document_type: Optional[DocumentType] = None
    unrecognized_reason: Optional[str] = None
    ai_confidence_score: Optional[float] = None
    ai_warnings: list[str] = []
    detected_language: Optional[str] = None
    manual_entry_required: bool = False
    field_confidence: Optional[float] = None
    notes: Optional[str] = None
    uploaded_by: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class DocumentListResponse(BaseModel):
    items: list[DocumentOut]
    next_cursor: Optional[str] = None
    has_more: bool


class ExtractionOut(BaseModel):
    document_id: str
    created_fields: list[str]
    skipped_fields: list[str]
    gaps: list[str]
    model_version: str


# --- Fields ---


class FieldOut(BaseModel):
    id: str
    document_id: str
    field_name: FieldName
    extracted_value: Optional[str] = None
    corrected_value: Optional[str] = None
    final_value: Optional[str] = None
    confidence: float
    bounding_box: Optional[list[float]] = None
    is_verified: bool
    needs_review: bool
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ExtractionGapOut(BaseModel):
    field_name: FieldName
    final_value: str = ""


class FieldListResponse(BaseModel):
    items: list[FieldOut]
    gaps: list[ExtractionGapOut]
    field_confidence: Optional[float] = None


class FieldCorrectRequest(BaseModel):
    value: str
    note: Optional[str] = Field(default=None, max_length=1024)
    version: Optional[int] = None


class FieldVerifyRequest(BaseModel):
    version: Optional[int] = None


class ManualFieldCreate(BaseModel):
    field_name: FieldName
    value: str
    note: Optional[str] = Field(default=None, max_length=1024)


class CorrectionOut(BaseModel):
    id: str
    field_id: str
    field_name: str
    old_value: Optional[str] = None
    new_value: Optional[str] = None
    actor_id: Optional[str] = None
    note: Optional[str] = None
    created_at: Optional[datetime] = None


class CorrectionHistoryResponse(BaseModel):
    items: list[CorrectionOut]


# --- Batch ---


class BatchReclassifyRequest(BaseModel):
    document_ids: list[str] = Field(..., min_length=1, max_length=500)
    target_status: DocumentStatus
    document_type: Optional[DocumentType] = None
    notes: Optional[str] = None


class BatchItemResult(BaseModel):
    document_id: str
    success: bool
    status: Optional[DocumentStatus] = None
    error_kind: Optional[str] = None
    reason: Optional[str] = None


class BatchReclassifyResponse(BaseModel):
    results: list[BatchItemResult]
    total: int
    succeeded: int
    failed: int
