from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field

from clients.store import DocumentStore
from models.entities.documents.credits import (
    MAX_TOTAL_CREDITS,
    Certification,
    CertificationStandard,
    CreditDocument,
    CreditImage,
    Currency,
    EnergyType,
    ProjectDetails,
    ProjectLocation,
)
from models.operations.credits import (
    credit_create,
    credit_delete,
    credit_distinct,
    credit_get_and_count_view,
    credit_list_by_seller,
    credit_search,
    credit_set_status,
    credit_update,
    credit_verify,
)
from models.operations.stats import seller_credit_stats
from utils import log, response
from utils.response import RequestBody
from .dependencies import current_user_get, get_store, require_admin, require_seller

logger = log.get_logger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


class CreateCreditRequest(RequestBody):
    title: str = Field(min_length=1, max_length=100)
    description: str = Field(min_length=1, max_length=1000)
    energy_type: EnergyType
    project_location: ProjectLocation
    total_credits: int = Field(ge=1, le=MAX_TOTAL_CREDITS)
    available_credits: Optional[int] = Field(default=None, ge=0)
    price_per_credit: float = Field(ge=0.01, le=1000)
    currency: Currency = "USD"
    certification: Certification
    project_details: ProjectDetails
    images: List[CreditImage] = []
    documents: List[CreditDocument] = []
    tags: List[str] = []
    status: Literal["draft", "active"] = "draft"


class UpdateCreditRequest(RequestBody):
    title: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, min_length=1, max_length=1000)
    energy_type: Optional[EnergyType] = None
    project_location: Optional[ProjectLocation] = None
    total_credits: Optional[int] = Field(default=None, ge=1, le=MAX_TOTAL_CREDITS)
    available_credits: Optional[int] = Field(default=None, ge=0)
    price_per_credit: Optional[float] = Field(default=None, ge=0.01, le=1000)
    currency: Optional[Currency] = None
    certification: Optional[Certification] = None
    project_details: Optional[ProjectDetails] = None
    images: Optional[List[CreditImage]] = None
    documents: Optional[List[CreditDocument]] = None
    tags: Optional[List[str]] = None


class CreditStatusRequest(RequestBody):
    status: Literal["draft", "active", "suspended"]


@router.get("")
async def route_credits_browse(
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    energy_type: Optional[EnergyType] = Query(default=None, alias="energyType"),
    country: Optional[str] = Query(default=None),
    standard: Optional[CertificationStandard] = Query(default=None),
    min_price: Optional[float] = Query(default=None, alias="minPrice"),
    max_price: Optional[float] = Query(default=None, alias="maxPrice"),
    min_available: Optional[int] = Query(default=None, alias="minAvailable"),
    search: Optional[str] = Query(default=None, max_length=100),
    sort_by: str = Query(default="createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query(default="desc", alias="sortOrder"),
    store: DocumentStore = Depends(get_store),
):
    """Marketplace listing: active, verified credits that still have supply."""
    paging = response.paginate(page, limit)
    credits, total = await credit_search(
        store,
        energy_type=energy_type,
        country=country,
        standard=standard,
        min_price=min_price,
        max_price=max_price,
        min_available=min_available,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=paging.limit,
        offset=paging.offset,
    )
    return response.paginated(credits, paging, total, "Carbon credits retrieved successfully")


@router.get("/energy-types")
async def route_energy_types(store: DocumentStore = Depends(get_store)):
    values = await credit_distinct(store, "energy_type")
    return response.success(values, "Energy types retrieved successfully")


@router.get("/certification-standards")
async def route_certification_standards(store: DocumentStore = Depends(get_store)):
    values = await credit_distinct(store, "certification.standard")
    return response.success(values, "Certification standards retrieved successfully")


@router.get("/countries")
async def route_countries(store: DocumentStore = Depends(get_store)):
    values = await credit_distinct(store, "project_location.country")
    return response.success(values, "Countries retrieved successfully")


@router.get("/seller/my-credits")
async def route_my_credits(
    page: Optional[int] = Query(default=None),
    limit: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None),
    user: dict = Depends(require_seller),
    store: DocumentStore = Depends(get_store),
):
    paging = response.paginate(page, limit)
    credits, total = await credit_list_by_seller(
        store, user["sub"], status=status, limit=paging.limit, offset=paging.offset
    )
    return response.paginated(credits, paging, total, "Your carbon credits retrieved successfully")


@router.get("/seller/stats")
async def route_seller_stats(
    user: dict = Depends(require_seller),
    store: DocumentStore = Depends(get_store),
):
    stats = await seller_credit_stats(store, user["sub"])
    return response.success(stats, "Seller statistics retrieved successfully")


@router.get("/{credit_id}")
async def route_credit_get(credit_id: str, store: DocumentStore = Depends(get_store)):
    credit = await credit_get_and_count_view(store, credit_id)
    return response.success(credit, "Carbon credit retrieved successfully")


@router.post("")
async def route_credit_create(
    body: CreateCreditRequest,
    user: dict = Depends(require_seller),
    store: DocumentStore = Depends(get_store),
):
    credit = await credit_create(store, user["sub"], body.model_dump())
    return response.success(credit, "Carbon credit created successfully", status_code=201)


@router.put("/{credit_id}")
async def route_credit_update(
    credit_id: str,
    body: UpdateCreditRequest,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    credit = await credit_update(store, credit_id, user["sub"], body.model_dump(exclude_unset=True))
    return response.success(credit, "Carbon credit updated successfully")


@router.put("/{credit_id}/status")
async def route_credit_status(
    credit_id: str,
    body: CreditStatusRequest,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    credit = await credit_set_status(store, credit_id, user["sub"], body.status)
    return response.success(credit, "Carbon credit status updated successfully")


@router.delete("/{credit_id}")
async def route_credit_delete(
    credit_id: str,
    user: dict = Depends(current_user_get),
    store: DocumentStore = Depends(get_store),
):
    await credit_delete(store, credit_id, user["sub"])
    return response.success(message="Carbon credit deleted successfully")


@router.put("/{credit_id}/verify")
async def route_credit_verify(
    credit_id: str,
    user: dict = Depends(require_admin),
    store: DocumentStore = Depends(get_store),
):
    credit = await credit_verify(store, credit_id)
    logger.info(f"Carbon credit {credit_id} verified by admin {user['sub']}")
    return response.success(credit, "Carbon credit verified successfully")
