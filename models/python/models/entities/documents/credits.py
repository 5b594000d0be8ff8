from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from clients.store import BaseDocumentModel, BaseEntityData, IndexSpec

EnergyType = Literal["wind", "solar", "hydro", "geothermal", "biomass", "nuclear", "other"]
Currency = Literal["USD", "EUR", "GBP", "CAD", "AUD"]
CertificationStandard = Literal["VCS", "Gold Standard", "CAR", "ACR", "CDM", "Other"]
ProjectType = Literal[
    "renewable-energy", "energy-efficiency", "forest-conservation", "reforestation", "other"
]
CreditStatus = Literal["draft", "active", "sold-out", "suspended", "expired"]

MAX_TOTAL_CREDITS = 1_000_000


class SubDocument(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Coordinates(SubDocument):
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class ProjectLocation(SubDocument):
    country: str
    state: Optional[str] = None
    city: Optional[str] = None
    coordinates: Optional[Coordinates] = None


class Certification(SubDocument):
    standard: CertificationStandard
    certifier: str
    certificate_number: str
    issue_date: datetime
    expiry_date: datetime

    @field_validator("issue_date", "expiry_date")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class ProjectDetails(SubDocument):
    project_name: Optional[str] = None
    project_type: Optional[ProjectType] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    estimated_co2_reduction: Optional[float] = Field(default=None, ge=0, alias="estimatedCO2Reduction")
    unit: Literal["tonnes", "kg", "pounds"] = "tonnes"


class CreditImage(SubDocument):
    url: str
    alt: Optional[str] = None
    is_primary: bool = False


class CreditDocument(SubDocument):
    name: str
    url: str
    type: Optional[Literal["certificate", "report", "verification", "other"]] = None


class CarbonCreditData(BaseEntityData):
    seller_id: str
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=1000)
    energy_type: EnergyType
    project_location: ProjectLocation
    total_credits: int = Field(ge=1, le=MAX_TOTAL_CREDITS)
    available_credits: int = Field(ge=0)
    price_per_credit: float = Field(ge=0.01, le=1000)
    currency: Currency = "USD"
    certification: Certification
    project_details: ProjectDetails = Field(default_factory=ProjectDetails)
    images: List[CreditImage] = []
    documents: List[CreditDocument] = []
    status: CreditStatus = "draft"
    is_verified: bool = False
    verification_date: Optional[datetime] = None
    tags: List[str] = []
    view_count: int = 0
    purchase_count: int = 0
    average_rating: float = Field(default=0, ge=0, le=5)
    total_reviews: int = 0

    @field_validator("title", "description", mode="before")
    @classmethod
    def _strip(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("tags", mode="before")
    @classmethod
    def _normalise_tags(cls, value):
        if isinstance(value, list):
            return [t.strip().lower() for t in value if isinstance(t, str) and t.strip()]
        return value

    @model_validator(mode="after")
    def _clamp_available(self):
        normalise_availability(self)
        return self

    @computed_field
    @property
    def total_value(self) -> float:
        return round(self.total_credits * self.price_per_credit, 2)

    @computed_field
    @property
    def available_value(self) -> float:
        return round(self.available_credits * self.price_per_credit, 2)

    def is_available_for_purchase(self, quantity: int, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        expiry = self.certification.expiry_date
        return (
            self.status == "active"
            and self.is_verified
            and self.available_credits >= quantity
            and now <= expiry
        )


def normalise_availability(data: CarbonCreditData) -> None:
    """Clamp available credits into [0, total] and sync the sold-out status.

    Writes go through ``__dict__`` so the call is safe from inside validators.
    """
    available = max(0, min(data.available_credits, data.total_credits))
    status = data.status
    if available == 0 and status == "active":
        status = "sold-out"
    elif available > 0 and status == "sold-out":
        status = "active"
    data.__dict__["available_credits"] = available
    data.__dict__["status"] = status


class CarbonCredit(BaseDocumentModel[CarbonCreditData]):
    _collection_name = "carbon_credits"
    _indexes = [
        IndexSpec(name="ix_credits_seller_status", paths=["seller_id", "status"]),
        IndexSpec(name="ix_credits_status_created", paths=["status", "created_at"]),
        IndexSpec(name="ix_credits_marketplace", paths=["status", "is_verified", "available_credits", "price_per_credit"]),
        IndexSpec(
            name="ix_credits_search",
            paths=["title", "description", "project_details.project_name"],
            array_path="tags",
        ),
    ]
