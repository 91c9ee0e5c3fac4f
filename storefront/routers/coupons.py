from datetime import datetime
from fastapi import APIRouter, Depends, Request, status
from pymongo.errors import DuplicateKeyError

from storefront.api_features import ApiFeatures, query_params_to_dict
from storefront.dependencies import get_db, require_role
from storefront.models import COUPON_FIELDS, CouponDB
from storefront.pricing import DiscountType
from storefront.schemas import CouponCreate, CouponUpdate, CouponResponse
from storefront.shared.utils import (
    ConflictException, NotFoundException, PaginatedResponse, SuccessResponse, ValidationException,
    serialize_doc, str_to_oid,
)

router = APIRouter(prefix="/coupons", tags=["coupons"], dependencies=[Depends(require_role("admin"))])


async def get_coupon_or_404(db, coupon_id: str) -> dict:
    coupon = await db.coupons.find_one({"_id": str_to_oid(coupon_id, "Coupon")})
    if not coupon:
        raise NotFoundException("Coupon not found")
    return coupon


@router.get("", response_model=PaginatedResponse[dict])
async def list_coupons(request: Request, db=Depends(get_db)):
    params = query_params_to_dict(request.query_params)
    features = (
        ApiFeatures(db.coupons, params, COUPON_FIELDS)
        .pagination()
        .fields()
        .filtration()
        .search(["code"])
        .sort()
    )
    return await features.paginate()


@router.post("", response_model=SuccessResponse[CouponResponse], status_code=status.HTTP_201_CREATED)
async def create_coupon(coupon: CouponCreate, db=Depends(get_db)):
    try:
        new_coupon = await db.coupons.insert_one(CouponDB(**coupon.dict()).dict())
    except DuplicateKeyError:
        raise ConflictException(f"Coupon {coupon.code} already exists")
    created = await db.coupons.find_one({"_id": new_coupon.inserted_id})
    return SuccessResponse(data=CouponResponse(**serialize_doc(created)), message="Coupon created successfully")


@router.get("/{coupon_id}", response_model=SuccessResponse[CouponResponse])
async def get_coupon(coupon_id: str, db=Depends(get_db)):
    coupon = await get_coupon_or_404(db, coupon_id)
    return SuccessResponse(data=CouponResponse(**serialize_doc(coupon)))


@router.put("/{coupon_id}", response_model=SuccessResponse[CouponResponse])
async def update_coupon(coupon_id: str, coupon_update: CouponUpdate, db=Depends(get_db)):
    coupon = await get_coupon_or_404(db, coupon_id)

    update_data = {k: v for k, v in coupon_update.dict().items() if v is not None}
    discount_type = update_data.get("discount_type", coupon["discount_type"])
    discount = update_data.get("discount", coupon["discount"])
    if discount_type == DiscountType.PERCENTAGE and discount > 100:
        raise ValidationException("A percentage discount cannot exceed 100")

    if update_data:
        update_data["updated_at"] = datetime.utcnow()
        try:
            await db.coupons.update_one({"_id": coupon["_id"]}, {"$set": update_data})
        except DuplicateKeyError:
            raise ConflictException(f"Coupon {update_data['code']} already exists")

    updated = await db.coupons.find_one({"_id": coupon["_id"]})
    return SuccessResponse(data=CouponResponse(**serialize_doc(updated)), message="Coupon updated successfully")


@router.delete("/{coupon_id}", response_model=SuccessResponse[dict])
async def delete_coupon(coupon_id: str, db=Depends(get_db)):
    result = await db.coupons.delete_one({"_id": str_to_oid(coupon_id, "Coupon")})
    if not result.deleted_count:
        raise NotFoundException("Coupon not found")
    return SuccessResponse(data={"id": coupon_id}, message="Coupon deleted successfully")
