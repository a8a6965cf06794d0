"""Smart field generation for the signing document.

Application form data has arrived in several shapes over time: the
current multi-step layout (``step1`` .. ``step4`` plus named sections such
as ``businessDetails`` and ``applicantInfo``) and the older flat layout
(``applicantFirstName``, ``legalName``, ``"First Name"`` ...). Each canonical
field below owns a fixed, ordered list of sources; the first source that
formats to a non-empty string wins.

Order inside every chain: current structured path, alternate structured
path, legacy flat key(s), record column or derived value. Anything that
falls through the whole chain is emitted as ``""``, except the partner
group, which is left out entirely unless the primary applicant owns less
than 100%.
"""

from __future__ import annotations

import copy
import hashlib
import json
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Mapping
from uuid import UUID

from app.models.application import Application
from app.services.field_formats import FORMATTERS, format_date, format_percent, parse_date

STRUCTURED_SECTIONS = (
    "step1",
    "step2",
    "step3",
    "step4",
    "step5",
    "step6",
    "businessDetails",
    "applicantInfo",
    "partnerInfo",
    "financialProfile",
    "lenderSelection",
)

BUSINESS = "business"
FINANCIAL = "financial"
LENDER = "lender"
CONTACT = "contact"
PARTNER = "partner"
APPLICATION = "application"


@dataclass(frozen=True)
class ApplicationSnapshot:
    """Immutable copy of the inputs that feed the field map.

    ``current`` holds the structured sections, ``legacy`` every other
    top-level key of the form data. Either may be empty; an application
    that was migrated halfway carries both.
    """

    application_id: UUID | None
    current: Mapping[str, Any] = field(default_factory=dict)
    legacy: Mapping[str, Any] = field(default_factory=dict)
    requested_amount: Decimal | None = None
    product_category: str | None = None
    form_version: str | None = None
    submitted_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_form_data(cls, form_data: Mapping[str, Any] | None, **record: Any) -> "ApplicationSnapshot":
        data = copy.deepcopy(dict(form_data or {}))
        current = {key: data[key] for key in STRUCTURED_SECTIONS if isinstance(data.get(key), dict)}
        legacy = {key: value for key, value in data.items() if key not in current}
        return cls(current=current, legacy=legacy, **record)

    @classmethod
    def from_application(cls, application: Application) -> "ApplicationSnapshot":
        return cls.from_form_data(
            application.form_data,
            application_id=application.id,
            requested_amount=application.requested_amount,
            product_category=application.product_category,
            form_version=application.form_version,
            submitted_at=application.submitted_at,
            created_at=application.created_at,
        )

    @property
    def shape(self) -> str:
        if self.current and self.legacy:
            return "mixed"
        if self.current:
            return "current"
        if self.legacy:
            return "legacy"
        return "empty"


Reader = Callable[[ApplicationSnapshot], Any]


@dataclass(frozen=True)
class Source:
    label: str
    read: Reader


def path(dotted: str) -> Source:
    parts = tuple(dotted.split("."))

    def read(snapshot: ApplicationSnapshot) -> Any:
        node: Any = snapshot.current
        for part in parts:
            if not isinstance(node, Mapping):
                return None
            node = node.get(part)
        return node

    return Source(dotted, read)


def legacy(key: str) -> Source:
    return Source(f"legacy:{key}", lambda snapshot: snapshot.legacy.get(key))


def record(attribute: str) -> Source:
    return Source(f"record:{attribute}", lambda snapshot: getattr(snapshot, attribute))


def derived(label: str, reader: Reader) -> Source:
    return Source(f"derived:{label}", reader)


@dataclass(frozen=True)
class FieldSpec:
    name: str
    sources: tuple[Source, ...]
    kind: str = "text"
    group: str = BUSINESS
    required: bool = False

    def resolve(self, snapshot: ApplicationSnapshot) -> str:
        formatter = FORMATTERS[self.kind]
        for source in self.sources:
            value = formatter(source.read(snapshot))
            if value:
                return value
        return ""


def _first_formatted(snapshot: ApplicationSnapshot, sources: tuple[Source, ...], kind: str) -> str:
    return FieldSpec("_", sources, kind).resolve(snapshot)


OWNERSHIP_SOURCES = (
    path("step4.ownershipPercentage"),
    path("applicantInfo.ownershipPercentage"),
    legacy("ownershipPercentage"),
    legacy("Ownership Percentage"),
)


def primary_ownership(snapshot: ApplicationSnapshot) -> Decimal | None:
    value = _first_formatted(snapshot, OWNERSHIP_SOURCES, "percent")
    return Decimal(value) if value else None


def includes_partner(snapshot: ApplicationSnapshot) -> bool:
    ownership = primary_ownership(snapshot)
    return ownership is not None and ownership < 100


def _application_date(snapshot: ApplicationSnapshot) -> date | None:
    return parse_date(snapshot.submitted_at) or parse_date(snapshot.created_at)


def _years_in_business(snapshot: ApplicationSnapshot) -> Any:
    as_of = _application_date(snapshot)
    if as_of is None:
        return None
    established = _first_formatted(
        snapshot,
        (
            path("step3.yearEstablished"),
            path("businessDetails.yearEstablished"),
            legacy("yearEstablished"),
        ),
        "integer",
    )
    if established:
        return max(as_of.year - int(established), 0)
    started = parse_date(
        _first_formatted(snapshot, BUSINESS_START_SOURCES, "date")
    )
    if started is None:
        return None
    years = as_of.year - started.year - ((as_of.month, as_of.day) < (started.month, started.day))
    return max(years, 0)


def _has_partner(snapshot: ApplicationSnapshot) -> Any:
    ownership = primary_ownership(snapshot)
    if ownership is None:
        return None
    return ownership < 100


def _partner_ownership(snapshot: ApplicationSnapshot) -> Any:
    ownership = primary_ownership(snapshot)
    if ownership is None or ownership >= 100:
        return None
    return 100 - ownership


BUSINESS_START_SOURCES = (
    path("step3.businessStartDate"),
    path("businessDetails.startDate"),
    legacy("businessStartDate"),
    legacy("Business Start Date"),
)


FIELD_TABLE: tuple[FieldSpec, ...] = (
    # Application
    FieldSpec("application_id", (record("application_id"),), group=APPLICATION),
    FieldSpec(
        "application_date",
        (derived("submitted_or_created", _application_date),),
        kind="date",
        group=APPLICATION,
    ),
    # Business
    FieldSpec(
        "business_legal_name",
        (
            path("step3.legalBusinessName"),
            path("step3.legalName"),
            path("businessDetails.legalName"),
            legacy("legalName"),
            legacy("Legal Name"),
            path("step3.businessName"),
            legacy("businessName"),
        ),
        required=True,
    ),
    FieldSpec(
        "business_dba",
        (
            path("step3.operatingName"),
            path("businessDetails.operatingName"),
            legacy("operatingName"),
            legacy("Operating Name"),
        ),
    ),
    FieldSpec(
        "business_name",
        (
            path("step3.businessName"),
            path("businessDetails.businessName"),
            legacy("businessName"),
            legacy("Business Name"),
            path("step3.operatingName"),
            legacy("operatingName"),
            path("step3.legalBusinessName"),
            path("step3.legalName"),
            legacy("legalName"),
        ),
    ),
    FieldSpec(
        "business_type",
        (
            path("step3.businessType"),
            path("step3.businessEntity"),
            path("businessDetails.businessStructure"),
            legacy("businessStructure"),
            legacy("Business Structure"),
            legacy("businessType"),
        ),
    ),
    FieldSpec(
        "business_industry",
        (path("step3.industry"), path("businessDetails.industry"), legacy("industry"), legacy("Industry")),
    ),
    FieldSpec(
        "business_ein",
        (path("step3.ein"), path("businessDetails.ein"), path("businessDetails.taxId"), legacy("ein"), legacy("taxId")),
    ),
    FieldSpec(
        "business_address",
        (
            path("step3.businessAddress"),
            path("step3.businessStreetAddress"),
            path("businessDetails.address.street"),
            legacy("businessStreetAddress"),
            legacy("Business Address"),
        ),
    ),
    FieldSpec(
        "business_city",
        (path("step3.businessCity"), path("businessDetails.address.city"), legacy("businessCity")),
    ),
    FieldSpec(
        "business_state",
        (
            path("step3.businessState"),
            path("businessDetails.address.state"),
            legacy("businessState"),
            legacy("headquartersState"),
        ),
    ),
    FieldSpec(
        "business_zip",
        (
            path("step3.businessPostalCode"),
            path("step3.businessZipCode"),
            path("businessDetails.address.postalCode"),
            legacy("businessPostalCode"),
            legacy("businessZipCode"),
        ),
    ),
    FieldSpec(
        "business_country",
        (
            path("step1.country"),
            path("businessDetails.country"),
            legacy("country"),
            legacy("businessLocation"),
            legacy("headquarters"),
        ),
    ),
    FieldSpec(
        "business_phone",
        (path("step3.businessPhone"), path("businessDetails.phone"), legacy("businessPhone"), legacy("Business Phone")),
    ),
    FieldSpec(
        "business_email",
        (path("step3.businessEmail"), path("businessDetails.email"), legacy("businessEmail")),
    ),
    FieldSpec(
        "business_website",
        (
            path("step3.website"),
            path("step3.businessWebsite"),
            path("businessDetails.website"),
            legacy("businessWebsite"),
            legacy("Business Website"),
        ),
    ),
    FieldSpec("business_start_date", BUSINESS_START_SOURCES, kind="date"),
    FieldSpec(
        "number_of_employees",
        (
            path("step3.numEmployees"),
            path("step3.numberOfEmployees"),
            path("businessDetails.employeeCount"),
            legacy("employeeCount"),
            legacy("Employee Count"),
        ),
        kind="integer",
    ),
    FieldSpec(
        "years_in_business",
        (
            path("step3.yearsInBusiness"),
            path("businessDetails.yearsInBusiness"),
            legacy("yearsInBusiness"),
            derived("years_since_established", _years_in_business),
        ),
        kind="integer",
    ),
    # Financial
    FieldSpec(
        "funding_amount",
        (
            path("step1.requestedAmount"),
            path("step1.fundingAmount"),
            path("step1.loanAmount"),
            path("financialProfile.requestedAmount"),
            path("financialProfile.fundingAmount"),
            legacy("requestedAmount"),
            legacy("fundingAmount"),
            legacy("Funding Amount"),
            record("requested_amount"),
        ),
        kind="amount",
        group=FINANCIAL,
        required=True,
    ),
    FieldSpec(
        "use_of_funds",
        (
            path("step1.fundsPurpose"),
            path("step1.useOfFunds"),
            path("step1.loanPurpose"),
            path("financialProfile.fundsPurpose"),
            legacy("fundsPurpose"),
            legacy("Funding Purpose"),
        ),
        group=FINANCIAL,
    ),
    FieldSpec(
        "looking_for",
        (path("step1.lookingFor"), path("financialProfile.lookingFor"), legacy("lookingFor")),
        group=FINANCIAL,
    ),
    FieldSpec(
        "annual_revenue",
        (
            path("step1.annualRevenue"),
            path("financialProfile.annualRevenue"),
            legacy("annualRevenue"),
            legacy("estimatedYearlyRevenue"),
            legacy("revenueLastYear"),
            legacy("Revenue Last Year"),
            legacy("Estimated Yearly Revenue"),
        ),
        kind="amount",
        group=FINANCIAL,
    ),
    FieldSpec(
        "average_monthly_revenue",
        (
            path("step1.averageMonthlyRevenue"),
            path("financialProfile.averageMonthlyRevenue"),
            legacy("averageMonthlyRevenue"),
            legacy("Average Monthly Revenue"),
        ),
        kind="amount",
        group=FINANCIAL,
    ),
    FieldSpec(
        "accounts_receivable_balance",
        (
            path("step1.accountsReceivableBalance"),
            path("financialProfile.accountsReceivableBalance"),
            legacy("accountsReceivableBalance"),
            legacy("Accounts Receivable Balance"),
        ),
        kind="amount",
        group=FINANCIAL,
    ),
    FieldSpec(
        "equipment_value",
        (
            path("step1.equipmentValue"),
            path("financialProfile.equipmentValue"),
            legacy("equipmentValue"),
            legacy("Equipment Value"),
        ),
        kind="amount",
        group=FINANCIAL,
    ),
    FieldSpec(
        "sales_history",
        (path("step1.salesHistory"), path("financialProfile.salesHistory"), legacy("salesHistory"), legacy("Sales History")),
        group=FINANCIAL,
    ),
    # Lender selection
    FieldSpec(
        "selected_lender_name",
        (path("step2.selectedLenderName"), path("lenderSelection.lenderName"), legacy("selectedLenderName"), legacy("lenderName")),
        group=LENDER,
    ),
    FieldSpec(
        "selected_product_name",
        (path("step2.selectedProductName"), path("lenderSelection.productName"), legacy("selectedProductName")),
        group=LENDER,
    ),
    FieldSpec(
        "product_category",
        (
            path("step2.selectedCategory"),
            path("lenderSelection.category"),
            legacy("selectedCategory"),
            record("product_category"),
        ),
        group=LENDER,
    ),
    # Primary contact
    FieldSpec(
        "contact_first_name",
        (
            path("step4.firstName"),
            path("step4.applicantFirstName"),
            path("applicantInfo.firstName"),
            legacy("applicantFirstName"),
            legacy("contactFirstName"),
            legacy("First Name"),
        ),
        group=CONTACT,
        required=True,
    ),
    FieldSpec(
        "contact_last_name",
        (
            path("step4.lastName"),
            path("step4.applicantLastName"),
            path("applicantInfo.lastName"),
            legacy("applicantLastName"),
            legacy("contactLastName"),
            legacy("Last Name"),
        ),
        group=CONTACT,
        required=True,
    ),
    FieldSpec(
        "contact_title",
        (path("step4.title"), path("applicantInfo.title"), legacy("applicantTitle")),
        group=CONTACT,
    ),
    FieldSpec(
        "contact_email",
        (
            path("step4.email"),
            path("step4.applicantEmail"),
            path("applicantInfo.email"),
            legacy("applicantEmail"),
            legacy("contactEmail"),
            legacy("Email"),
        ),
        group=CONTACT,
        required=True,
    ),
    FieldSpec(
        "contact_phone",
        (
            path("step4.phone"),
            path("step4.phoneNumber"),
            path("step4.applicantPhone"),
            path("applicantInfo.phone"),
            legacy("applicantPhone"),
            legacy("contactPhone"),
            legacy("Phone"),
        ),
        group=CONTACT,
    ),
    FieldSpec(
        "contact_dob",
        (
            path("step4.dateOfBirth"),
            path("step4.dob"),
            path("applicantInfo.dateOfBirth"),
            legacy("applicantDateOfBirth"),
            legacy("Date of Birth"),
        ),
        kind="date",
        group=CONTACT,
    ),
    FieldSpec(
        "contact_ssn",
        (path("step4.ssn"), path("step4.sin"), path("applicantInfo.ssn"), legacy("applicantSSN")),
        group=CONTACT,
    ),
    FieldSpec(
        "contact_address",
        (
            path("step4.homeAddress"),
            path("step4.address"),
            path("applicantInfo.address"),
            legacy("applicantAddress"),
            legacy("Address"),
        ),
        group=CONTACT,
    ),
    FieldSpec(
        "contact_city",
        (path("step4.city"), path("applicantInfo.city"), legacy("applicantCity")),
        group=CONTACT,
    ),
    FieldSpec(
        "contact_state",
        (path("step4.state"), path("applicantInfo.state"), legacy("applicantState")),
        group=CONTACT,
    ),
    FieldSpec(
        "contact_zip",
        (path("step4.postalCode"), path("step4.zipCode"), path("applicantInfo.postalCode"), legacy("applicantZipCode")),
        group=CONTACT,
    ),
    FieldSpec("ownership_percentage", OWNERSHIP_SOURCES, kind="percent", group=CONTACT),
    FieldSpec(
        "has_partner",
        (
            path("step4.hasPartner"),
            path("applicantInfo.hasPartner"),
            legacy("hasPartner"),
            legacy("Has Partner"),
            derived("ownership_below_100", _has_partner),
        ),
        kind="boolean",
        group=CONTACT,
    ),
    # Partner, emitted only when the primary owns less than 100%
    FieldSpec(
        "partner_first_name",
        (path("step4.partnerFirstName"), path("partnerInfo.firstName"), legacy("partnerFirstName")),
        group=PARTNER,
    ),
    FieldSpec(
        "partner_last_name",
        (path("step4.partnerLastName"), path("partnerInfo.lastName"), legacy("partnerLastName")),
        group=PARTNER,
    ),
    FieldSpec(
        "partner_email",
        (path("step4.partnerEmail"), path("partnerInfo.email"), legacy("partnerEmail")),
        group=PARTNER,
    ),
    FieldSpec(
        "partner_phone",
        (path("step4.partnerPhone"), path("partnerInfo.phone"), legacy("partnerPhone")),
        group=PARTNER,
    ),
    FieldSpec(
        "partner_ownership_percentage",
        (
            path("step4.partnerOwnershipPercentage"),
            path("partnerInfo.ownershipPercentage"),
            legacy("partnerOwnershipPercentage"),
            derived("remaining_ownership", _partner_ownership),
        ),
        kind="percent",
        group=PARTNER,
    ),
)

FIELDS_BY_NAME = {spec.name: spec for spec in FIELD_TABLE}
REQUIRED_FIELDS = tuple(spec.name for spec in FIELD_TABLE if spec.required)


def generate(snapshot: ApplicationSnapshot) -> dict[str, str]:
    with_partner = includes_partner(snapshot)
    fields: dict[str, str] = {}
    for spec in FIELD_TABLE:
        if spec.group == PARTNER and not with_partner:
            continue
        fields[spec.name] = spec.resolve(snapshot)
    return fields


def expected_field_count(with_partner: bool) -> int:
    return sum(1 for spec in FIELD_TABLE if with_partner or spec.group != PARTNER)


@dataclass(frozen=True)
class FieldValidation:
    is_valid: bool
    missing_fields: list[str]
    warnings: list[str]


def validate(snapshot: ApplicationSnapshot, fields: dict[str, str] | None = None) -> FieldValidation:
    fields = fields if fields is not None else generate(snapshot)
    missing = [name for name in REQUIRED_FIELDS if not fields.get(name)]
    warnings: list[str] = []

    if snapshot.shape == "legacy":
        warnings.append("Application data uses the legacy flat layout")
    elif snapshot.shape == "empty":
        warnings.append("Application has no form data")

    email = fields.get("contact_email", "")
    if email and "@" not in email:
        warnings.append("contact_email does not look like an email address")

    amount = fields.get("funding_amount", "")
    if amount and Decimal(amount) <= 0:
        warnings.append("funding_amount should be greater than zero")

    ownership = primary_ownership(snapshot)
    if ownership is not None and not 0 < ownership <= 100:
        warnings.append("ownership_percentage should be between 0 and 100")
    if includes_partner(snapshot) and not fields.get("partner_first_name"):
        warnings.append("Primary applicant owns less than 100% but no partner details were provided")

    raw_dob = _first_formatted(snapshot, FIELDS_BY_NAME["contact_dob"].sources, "text")
    if raw_dob and not format_date(raw_dob):
        warnings.append("contact_dob could not be read as a date")

    raw_ownership = _first_formatted(snapshot, OWNERSHIP_SOURCES, "text")
    if raw_ownership and not format_percent(raw_ownership):
        warnings.append("ownership_percentage could not be read as a number")

    return FieldValidation(is_valid=not missing, missing_fields=missing, warnings=warnings)


def field_map_digest(fields: Mapping[str, str]) -> str:
    encoded = json.dumps(dict(fields), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()
