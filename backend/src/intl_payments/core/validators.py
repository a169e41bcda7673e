"""
Field validators for international payment requests.

Each single-field validator is a pure function that returns the
normalised value or raises ``FieldValidationError``. ``PaymentRequest``
wires them into a pydantic model, and ``validate_payment_request`` turns its
aggregated ``ValidationError`` into one ``PaymentValidationError`` carrying
the full field report.
"""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel
from pydantic_core import PydanticCustomError

from .errors import FieldError, FieldValidationError, PaymentValidationError
from .models import Address, BankDetails, Beneficiary, IntermediaryBank, PaymentDraft
from .reference import ReferenceData

T = TypeVar("T")

DEFAULT_MAX_AMOUNT = Decimal("10000000")
CENT = Decimal("0.01")

_BANK_CODE = re.compile(r"[A-Z]{4}")
_COUNTRY_PART = re.compile(r"[A-Z]{2}")
_LOCATION_CODE = re.compile(r"[A-Z0-9]{2}")
_BRANCH_CODE = re.compile(r"[A-Z0-9]{3}")

_IBAN_SHAPE = re.compile(r"[A-Z]{2}[0-9]{2}[A-Z0-9]{1,30}")
_GENERIC_ACCOUNT = re.compile(r"[A-Za-z0-9]{8,34}")
_COUNTRY_CODE = re.compile(r"[A-Z]{2}")
_CURRENCY_CODE = re.compile(r"[A-Z]{3}")
_BENEFICIARY_NAME = re.compile(r"[A-Za-z .\-]+")
_PAYMENT_REFERENCE = re.compile(r"[A-Za-z0-9 \-/]+")
_EMAIL = re.compile(r"[a-zA-Z0-9._%+-]{1,64}@[a-zA-Z0-9.-]{1,253}\.[a-zA-Z]{2,}")
_PHONE = re.compile(r"\+?[1-9][0-9]{0,15}")
_WHITESPACE = re.compile(r"\s+")


def _require_text(value: Any, field: str, label: str) -> str:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise FieldValidationError(field, f"{label} is required")
    if not isinstance(value, str):
        raise FieldValidationError(field, f"{label} must be a string")
    return value.strip()


def _optional_text(value: Any, field: str, *, max_length: int, min_length: int = 1) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise FieldValidationError(field, "must be a string")
    cleaned = value.strip()
    if not cleaned:
        return None
    if len(cleaned) < min_length or len(cleaned) > max_length:
        raise FieldValidationError(field, f"must be between {min_length} and {max_length} characters")
    return cleaned


def validate_swift_code(value: Any, field: str = "swift_code") -> str:
    """Validate a SWIFT/BIC code by decomposing it into its sub-fields."""
    cleaned = _require_text(value, field, "SWIFT code").upper()

    if len(cleaned) not in (8, 11):
        raise FieldValidationError(field, "Invalid SWIFT/BIC code format (must be 8 or 11 characters)")
    if not _BANK_CODE.fullmatch(cleaned[0:4]):
        raise FieldValidationError(field, "Invalid bank code in SWIFT (first 4 chars must be letters)")
    if not _COUNTRY_PART.fullmatch(cleaned[4:6]):
        raise FieldValidationError(field, "Invalid country code in SWIFT (chars 5-6 must be letters)")
    if not _LOCATION_CODE.fullmatch(cleaned[6:8]):
        raise FieldValidationError(field, "Invalid location code in SWIFT (chars 7-8 must be alphanumeric)")
    if len(cleaned) == 11 and not _BRANCH_CODE.fullmatch(cleaned[8:11]):
        raise FieldValidationError(field, "Invalid branch code in SWIFT (chars 9-11 must be alphanumeric)")

    return cleaned


def iban_to_digits(iban: str) -> str:
    """Move the first four characters to the end and map letters to 10..35."""
    rearranged = iban[4:] + iban[:4]
    return "".join(str(ord(char) - 55) if char.isalpha() else char for char in rearranged)


def mod97(digits: str) -> int:
    """ISO 7064 MOD-97-10 remainder computed over 9-digit chunks."""
    remainder = ""
    for digit in digits:
        remainder += digit
        if len(remainder) >= 9:
            remainder = str(int(remainder) % 97)
    return int(remainder or "0") % 97


def validate_iban(value: Any, reference: ReferenceData, field: str = "beneficiary_account") -> str:
    cleaned = _WHITESPACE.sub("", _require_text(value, field, "IBAN")).upper()

    if not _IBAN_SHAPE.fullmatch(cleaned):
        raise FieldValidationError(field, "Invalid IBAN format")

    country = cleaned[:2]
    expected_length = reference.iban_lengths.get(country)
    # Countries absent from the table only get the generic shape check above
    if expected_length is not None and len(cleaned) != expected_length:
        raise FieldValidationError(
            field,
            f"Invalid IBAN length for {country} (expected {expected_length}, got {len(cleaned)})",
        )

    if mod97(iban_to_digits(cleaned)) != 1:
        raise FieldValidationError(field, "Invalid IBAN checksum")

    return cleaned


def validate_account_number(value: Any, reference: ReferenceData, field: str = "beneficiary_account") -> str:
    """Accept an IBAN (anything starting with two letters) or a generic account number."""
    cleaned = _require_text(value, field, "Beneficiary account")
    compact = _WHITESPACE.sub("", cleaned).upper()

    if _COUNTRY_CODE.fullmatch(compact[:2]):
        return validate_iban(compact, reference, field)

    if not _GENERIC_ACCOUNT.fullmatch(cleaned):
        raise FieldValidationError(
            field, "Beneficiary account must be 8 to 34 letters or digits"
        )
    return cleaned


def validate_country_code(value: Any, reference: ReferenceData, field: str = "bank_country") -> str:
    cleaned = _require_text(value, field, "Country code").upper()
    if not _COUNTRY_CODE.fullmatch(cleaned):
        raise FieldValidationError(field, "Invalid country code format (must be 2 letters)")
    if cleaned not in reference.countries:
        raise FieldValidationError(field, "Invalid country code")
    return cleaned


def validate_currency(value: Any, reference: ReferenceData, field: str = "currency") -> str:
    cleaned = _require_text(value, field, "Currency code").upper()
    if not _CURRENCY_CODE.fullmatch(cleaned):
        raise FieldValidationError(field, "Invalid currency format (must be 3 letters)")
    if cleaned not in reference.currencies:
        supported = ", ".join(sorted(reference.currencies))
        raise FieldValidationError(field, f"Unsupported currency. Supported currencies: {supported}")
    return cleaned


def validate_purpose_code(value: Any, reference: ReferenceData, field: str = "purpose") -> Tuple[str, str]:
    """Return the purpose code and its description."""
    cleaned = _require_text(value, field, "Purpose code").upper()
    description = reference.purpose_description(cleaned)
    if description is None:
        valid = ", ".join(reference.purpose_codes)
        raise FieldValidationError(field, f"Invalid purpose code. Valid codes: {valid}")
    return cleaned, description


def validate_beneficiary_name(value: Any, field: str = "beneficiary_name") -> str:
    cleaned = _require_text(value, field, "Beneficiary name")
    if len(cleaned) < 2 or len(cleaned) > 100:
        raise FieldValidationError(field, "Beneficiary name must be between 2 and 100 characters")
    if not _BENEFICIARY_NAME.fullmatch(cleaned):
        raise FieldValidationError(field, "Beneficiary name contains invalid characters")
    return cleaned


def validate_payment_reference(value: Any, field: str = "reference") -> Optional[str]:
    cleaned = _optional_text(value, field, max_length=35)
    if cleaned is None:
        return None
    if not _PAYMENT_REFERENCE.fullmatch(cleaned):
        raise FieldValidationError(
            field,
            "Payment reference contains invalid characters "
            "(use letters, numbers, spaces, hyphens, and slashes only)",
        )
    return cleaned


def validate_amount(value: Any, max_amount: Decimal = DEFAULT_MAX_AMOUNT, field: str = "amount") -> Decimal:
    """
    Validate a monetary amount and quantise it to cents.

    Amounts with more than two fractional digits are rejected rather than
    rounded so the customer never pays a different figure than entered.
    """
    if value is None or isinstance(value, bool):
        raise FieldValidationError(field, "Amount must be a valid number")
    try:
        amount = Decimal(str(value).strip()) if isinstance(value, (str, float)) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise FieldValidationError(field, "Amount must be a valid number") from None

    if not amount.is_finite():
        raise FieldValidationError(field, "Amount must be a valid number")
    if amount <= 0:
        raise FieldValidationError(field, "Amount must be greater than 0")
    if amount > max_amount:
        raise FieldValidationError(field, f"Amount exceeds maximum limit of {max_amount:,}")
    if amount.normalize().as_tuple().exponent < -2:
        raise FieldValidationError(field, "Amount can have maximum 2 decimal places")

    return amount.quantize(CENT)


def validate_email(value: Any, field: str = "beneficiary_email") -> Optional[str]:
    cleaned = _optional_text(value, field, max_length=254)
    if cleaned is None:
        return None
    if not _EMAIL.fullmatch(cleaned):
        raise FieldValidationError(field, "Invalid email format")
    return cleaned.lower()


def validate_phone(value: Any, field: str = "beneficiary_phone") -> Optional[str]:
    cleaned = _optional_text(value, field, max_length=17)
    if cleaned is None:
        return None
    if not _PHONE.fullmatch(cleaned):
        raise FieldValidationError(field, "Invalid phone number format")
    return cleaned


def validate_bank_name(value: Any, field: str = "bank_name") -> str:
    cleaned = _require_text(value, field, "Bank name")
    if len(cleaned) < 2 or len(cleaned) > 100:
        raise FieldValidationError(field, "Bank name must be between 2 and 100 characters")
    return cleaned


def _validate_intermediary_account(value: Any, field: str = "intermediary_bank_account") -> Optional[str]:
    cleaned = _optional_text(value, field, max_length=34)
    if cleaned is not None and not cleaned.isalnum():
        raise FieldValidationError(field, "Intermediary account can only contain letters and digits")
    return cleaned


# --- Request-level validation -------------------------------------------------

ADDRESS_TEXT_LIMITS = {"street": 100, "city": 50, "state": 50, "postal_code": 20}

REQUEST_TEXT_LIMITS = {
    "bank_address": 100,
    "bank_city": 50,
    "intermediary_bank_name": 100,
    "purpose_description": 200,
    "source_of_funds": 100,
    "notes": 500,
}

_OBJECT_ERRORS = frozenset({"model_type", "model_attributes_type", "dict_type"})


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _checked(validator: Callable[..., T], value: Any, *args: Any, **kwargs: Any) -> T:
    """Run a single-field validator, reporting its failure as a pydantic error."""
    try:
        return validator(value, *args, **kwargs)
    except FieldValidationError as exc:
        raise PydanticCustomError("field_invalid", exc.error.message) from exc


def _reference(info: ValidationInfo) -> ReferenceData:
    return info.context["reference"]


class _RequestModel(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        loc_by_alias=False,
    )


class AddressRequest(_RequestModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    @field_validator("street", "city", "state", "postal_code", mode="before")
    @classmethod
    def _check_text(cls, value: Any, info: ValidationInfo) -> Optional[str]:
        return _checked(_optional_text, value, info.field_name, max_length=ADDRESS_TEXT_LIMITS[info.field_name])

    @field_validator("country", mode="before")
    @classmethod
    def _check_country(cls, value: Any, info: ValidationInfo) -> Optional[str]:
        if _is_blank(value):
            return None
        return _checked(validate_country_code, value, _reference(info), "country")


class PaymentRequest(_RequestModel):
    """
    Inbound payment request.

    Accepts snake_case names or their camelCase aliases (``swiftCode``,
    ``bankCountry``, ...). Unknown keys are rejected. Validation needs a
    context carrying ``reference`` and optionally ``max_amount``.
    """

    customer_id: str
    amount: Decimal
    currency: str
    beneficiary_name: str
    beneficiary_account: str
    beneficiary_address: AddressRequest = Field(default_factory=AddressRequest)
    beneficiary_phone: Optional[str] = None
    beneficiary_email: Optional[str] = None
    swift_code: str
    bank_name: str
    bank_country: str
    bank_address: Optional[str] = None
    bank_city: Optional[str] = None
    intermediary_bank_name: Optional[str] = None
    intermediary_bank_account: Optional[str] = None
    # Validated after name and account so it can require itself when they are given
    intermediary_bank_swift: Optional[str] = Field(default=None, validate_default=True)
    purpose: str
    purpose_description: Optional[str] = None
    reference: Optional[str] = None
    source_of_funds: Optional[str] = None
    notes: Optional[str] = None

    @field_validator("customer_id", mode="before")
    @classmethod
    def _check_customer(cls, value: Any) -> str:
        return _checked(_require_text, value, "customer_id", "Customer ID")

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value: Any, info: ValidationInfo) -> Decimal:
        return _checked(validate_amount, value, info.context.get("max_amount", DEFAULT_MAX_AMOUNT))

    @field_validator("currency", mode="before")
    @classmethod
    def _check_currency(cls, value: Any, info: ValidationInfo) -> str:
        return _checked(validate_currency, value, _reference(info))

    @field_validator("beneficiary_name", mode="before")
    @classmethod
    def _check_beneficiary_name(cls, value: Any) -> str:
        return _checked(validate_beneficiary_name, value)

    @field_validator("beneficiary_account", mode="before")
    @classmethod
    def _check_account(cls, value: Any, info: ValidationInfo) -> str:
        return _checked(validate_account_number, value, _reference(info))

    @field_validator("beneficiary_address", mode="before")
    @classmethod
    def _default_address(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("beneficiary_phone", mode="before")
    @classmethod
    def _check_phone(cls, value: Any) -> Optional[str]:
        return _checked(validate_phone, value)

    @field_validator("beneficiary_email", mode="before")
    @classmethod
    def _check_email(cls, value: Any) -> Optional[str]:
        return _checked(validate_email, value)

    @field_validator("swift_code", mode="before")
    @classmethod
    def _check_swift(cls, value: Any) -> str:
        return _checked(validate_swift_code, value)

    @field_validator("bank_name", mode="before")
    @classmethod
    def _check_bank_name(cls, value: Any) -> str:
        return _checked(validate_bank_name, value)

    @field_validator("bank_country", mode="before")
    @classmethod
    def _check_bank_country(cls, value: Any, info: ValidationInfo) -> str:
        return _checked(validate_country_code, value, _reference(info))

    @field_validator(*REQUEST_TEXT_LIMITS, mode="before")
    @classmethod
    def _check_text(cls, value: Any, info: ValidationInfo) -> Optional[str]:
        return _checked(_optional_text, value, info.field_name, max_length=REQUEST_TEXT_LIMITS[info.field_name])

    @field_validator("intermediary_bank_account", mode="before")
    @classmethod
    def _check_intermediary_account(cls, value: Any) -> Optional[str]:
        return _checked(_validate_intermediary_account, value)

    @field_validator("intermediary_bank_swift", mode="before")
    @classmethod
    def _check_intermediary_swift(cls, value: Any, info: ValidationInfo) -> Optional[str]:
        if not _is_blank(value):
            return _checked(validate_swift_code, value, "intermediary_bank_swift")
        if info.data.get("intermediary_bank_name") or info.data.get("intermediary_bank_account"):
            raise PydanticCustomError(
                "field_required",
                "intermediary_bank_swift is required when intermediary bank details are given",
            )
        return None

    @field_validator("purpose", mode="before")
    @classmethod
    def _check_purpose(cls, value: Any, info: ValidationInfo) -> str:
        code, _ = _checked(validate_purpose_code, value, _reference(info))
        return code

    @field_validator("reference", mode="before")
    @classmethod
    def _check_reference(cls, value: Any) -> Optional[str]:
        return _checked(validate_payment_reference, value)

    def to_draft(self, reference: ReferenceData) -> PaymentDraft:
        address = self.beneficiary_address.model_dump()
        if address["country"] is None:
            address["country"] = self.bank_country

        intermediary = None
        if self.intermediary_bank_swift:
            intermediary = IntermediaryBank(
                name=self.intermediary_bank_name,
                swift_code=self.intermediary_bank_swift,
                account_number=self.intermediary_bank_account,
            )

        return PaymentDraft(
            customer_id=self.customer_id,
            amount=self.amount,
            currency=self.currency,
            beneficiary=Beneficiary(
                name=self.beneficiary_name,
                account_number=self.beneficiary_account,
                address=Address(**address),
                phone=self.beneficiary_phone,
                email=self.beneficiary_email,
            ),
            beneficiary_bank=BankDetails(
                name=self.bank_name,
                swift_code=self.swift_code,
                address=Address(street=self.bank_address, city=self.bank_city, country=self.bank_country),
            ),
            intermediary_bank=intermediary,
            purpose=self.purpose,
            purpose_description=self.purpose_description or reference.purpose_description(self.purpose),
            reference=self.reference,
            source_of_funds=self.source_of_funds,
            customer_notes=self.notes,
        )


def _split_duplicate_keys(
    model: Type[BaseModel], raw: Mapping[str, Any], prefix: str, errors: List[FieldError]
) -> Dict[str, Any]:
    """Drop the camelCase copy of any field that is also given under its own name."""
    data = dict(raw)
    for name, info in model.model_fields.items():
        if info.alias and info.alias != name and name in data and info.alias in data:
            del data[info.alias]
            errors.append(FieldError(field=f"{prefix}{name}", message="Field supplied more than once"))
    return data


def _field_errors(exc: ValidationError) -> List[FieldError]:
    errors = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"]) or "payload"
        kind = error["type"]
        if kind == "missing":
            message = f"{field} is required"
        elif kind == "extra_forbidden":
            message = "Unknown field"
        elif kind in _OBJECT_ERRORS:
            message = "must be an object"
        else:
            message = error["msg"]
        errors.append(FieldError(field=field, message=message))
    return errors


def validate_payment_request(
    raw: Mapping[str, Any],
    reference: ReferenceData,
    *,
    max_amount: Decimal = DEFAULT_MAX_AMOUNT,
) -> PaymentDraft:
    """
    Validate an untyped request payload into a ``PaymentDraft``.

    Args:
        raw: Request fields (snake_case or the legacy camelCase names)
        reference: Country/currency/purpose/IBAN tables
        max_amount: Hard ceiling for a single payment

    Returns:
        The normalised draft

    Raises:
        PaymentValidationError: with every field-level failure found
    """
    errors: List[FieldError] = []
    data: Any = raw
    if isinstance(raw, Mapping):
        data = _split_duplicate_keys(PaymentRequest, raw, "", errors)
        for key in ("beneficiary_address", "beneficiaryAddress"):
            if isinstance(data.get(key), Mapping):
                data[key] = _split_duplicate_keys(AddressRequest, data[key], "beneficiary_address.", errors)

    request = None
    try:
        request = PaymentRequest.model_validate(
            data, context={"reference": reference, "max_amount": max_amount}
        )
    except ValidationError as exc:
        errors.extend(_field_errors(exc))

    if errors:
        raise PaymentValidationError(errors)
    return request.to_draft(reference)


__all__ = [
    "validate_swift_code",
    "validate_iban",
    "validate_account_number",
    "validate_country_code",
    "validate_currency",
    "validate_purpose_code",
    "validate_beneficiary_name",
    "validate_bank_name",
    "validate_payment_reference",
    "validate_amount",
    "validate_email",
    "validate_phone",
    "validate_payment_request",
    "iban_to_digits",
    "mod97",
    "PaymentRequest",
    "AddressRequest",
]
