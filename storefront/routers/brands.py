from datetime import datetime
from fastapi import APIRouter, Depends, Request, status
from pymongo.errors import DuplicateKeyError

from storefront.api_features import ApiFeatures, query_params_to_dict
from storefront.dependencies import get_db, require_role
from storefront.models import BRAND_FIELDS, BrandDB
from storefront.routers.products import find_or_404
from storefront.schemas import BrandCreate, BrandUpdate, BrandResponse
from storefront.shared.security_config import limiter
from storefront.shared.utils import (
    ConflictException, NotFoundException, PaginatedResponse, SuccessResponse,
    serialize_doc, settings, slugify, str_to_oid,
)

router = APIRouter(prefix="/brands", tags=["brands"])


@router.get("", response_model=PaginatedResponse[dict])
@limiter.limit(settings.RATE_LIMIT)
async def list_brands(request: Request, db=Depends(get_db)):
    params = query_params_to_dict(request.query_params)
    features = (
        ApiFeatures(db.brands, params, BRAND_FIELDS)
        .pagination()
        .fields()
        .filtration()
        .search(["name"])
        .sort()
    )
    return await features.paginate()


@router.post("", response_model=SuccessResponse[BrandResponse], status_code=status.HTTP_201_CREATED)
async def create_brand(brand: BrandCreate, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    try:
        new_brand = await db.brands.insert_one(BrandDB(name=brand.name, slug=slugify(brand.name)).dict())
    except DuplicateKeyError:
        raise ConflictException("Brand already exists")
    created = await db.brands.find_one({"_id": new_brand.inserted_id})
    return SuccessResponse(data=BrandResponse(**serialize_doc(created)), message="Brand created successfully")


@router.get("/{brand_id}", response_model=SuccessResponse[BrandResponse])
@limiter.limit(settings.RATE_LIMIT)
async def get_brand(brand_id: str, request: Request, db=Depends(get_db)):
    brand = await find_or_404(db.brands, brand_id, "Brand")
    return SuccessResponse(data=BrandResponse(**serialize_doc(brand)))


@router.put("/{brand_id}", response_model=SuccessResponse[BrandResponse])
async def update_brand(brand_id: str, brand: BrandUpdate, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    oid = str_to_oid(brand_id, "Brand")
    try:
        result = await db.brands.update_one(
            {"_id": oid},
            {"$set": {"name": brand.name, "slug": slugify(brand.name), "updated_at": datetime.utcnow()}},
        )
    except DuplicateKeyError:
        raise ConflictException("Brand already exists")
    if not result.matched_count:
        raise NotFoundException("Brand not found")
    updated = await db.brands.find_one({"_id": oid})
    return SuccessResponse(data=BrandResponse(**serialize_doc(updated)), message="Brand updated successfully")


@router.delete("/{brand_id}", response_model=SuccessResponse[dict])
async def delete_brand(brand_id: str, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    result = await db.brands.delete_one({"_id": str_to_oid(brand_id, "Brand")})
    if not result.deleted_count:
        raise NotFoundException("Brand not found")
    return SuccessResponse(data={"id": brand_id}, message="Brand deleted successfully")
