from datetime import datetime
import logging
from fastapi import APIRouter, Depends, Request, status
from pymongo.errors import DuplicateKeyError

from storefront.api_features import ApiFeatures, query_params_to_dict
from storefront.dependencies import get_db, get_current_user, require_role
from storefront.models import REVIEW_FIELDS, ReviewDB
from storefront.schemas import ReviewCreate, ReviewUpdate, ReviewResponse
from storefront.shared.security_config import limiter
from storefront.shared.utils import (
    ConflictException, ForbiddenException, NotFoundException, PaginatedResponse, SuccessResponse,
    serialize_doc, settings, str_to_oid,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reviews", tags=["reviews"])


async def refresh_product_rating(db, product_id: str):
    """Recompute the product's rating summary from its reviews."""
    reviews = await db.reviews.find({"product_id": product_id}, {"rating": 1}).to_list(length=None)
    ratings = [r["rating"] for r in reviews]
    average = round(sum(ratings) / len(ratings), 1) if ratings else None
    await db.products.update_one(
        {"_id": str_to_oid(product_id, "Product")},
        {"$set": {"ratings_average": average, "ratings_quantity": len(ratings)}},
    )


async def get_review_or_404(db, review_id: str) -> dict:
    review = await db.reviews.find_one({"_id": str_to_oid(review_id, "Review")})
    if not review:
        raise NotFoundException("Review not found")
    return review


@router.get("", response_model=PaginatedResponse[dict])
@limiter.limit(settings.RATE_LIMIT)
async def list_reviews(request: Request, db=Depends(get_db)):
    params = query_params_to_dict(request.query_params)
    features = (
        ApiFeatures(db.reviews, params, REVIEW_FIELDS)
        .pagination()
        .fields()
        .filtration()
        .search(["text"])
        .sort()
    )
    return await features.paginate()


@router.post("", response_model=SuccessResponse[ReviewResponse], status_code=status.HTTP_201_CREATED)
async def create_review(review: ReviewCreate, db=Depends(get_db), user: dict = Depends(require_role("user"))):
    product = await db.products.find_one({"_id": str_to_oid(review.product_id, "Product")})
    if not product:
        raise NotFoundException("Product not found")

    review_db = ReviewDB(user_id=user["sub"], **review.dict())
    try:
        new_review = await db.reviews.insert_one(review_db.dict())
    except DuplicateKeyError:
        raise ConflictException("You have already reviewed this product")
    await refresh_product_rating(db, review.product_id)

    created = await db.reviews.find_one({"_id": new_review.inserted_id})
    return SuccessResponse(data=ReviewResponse(**serialize_doc(created)), message="Review added successfully")


@router.get("/{review_id}", response_model=SuccessResponse[ReviewResponse])
@limiter.limit(settings.RATE_LIMIT)
async def get_review(review_id: str, request: Request, db=Depends(get_db)):
    review = await get_review_or_404(db, review_id)
    return SuccessResponse(data=ReviewResponse(**serialize_doc(review)))


@router.put("/{review_id}", response_model=SuccessResponse[ReviewResponse])
async def update_review(review_id: str, review_update: ReviewUpdate, db=Depends(get_db), user: dict = Depends(require_role("user"))):
    review = await get_review_or_404(db, review_id)
    if review["user_id"] != user["sub"]:
        raise ForbiddenException("You can only edit your own reviews")

    update_data = {k: v for k, v in review_update.dict().items() if v is not None}
    if update_data:
        update_data["updated_at"] = datetime.utcnow()
        await db.reviews.update_one({"_id": review["_id"]}, {"$set": update_data})
        if "rating" in update_data:
            await refresh_product_rating(db, review["product_id"])

    updated = await db.reviews.find_one({"_id": review["_id"]})
    return SuccessResponse(data=ReviewResponse(**serialize_doc(updated)), message="Review updated successfully")


@router.delete("/{review_id}", response_model=SuccessResponse[dict])
async def delete_review(review_id: str, db=Depends(get_db), user: dict = Depends(get_current_user)):
    review = await get_review_or_404(db, review_id)
    if user.get("role") != "admin" and review["user_id"] != user["sub"]:
        raise ForbiddenException("You can only delete your own reviews")

    await db.reviews.delete_one({"_id": review["_id"]})
    await refresh_product_rating(db, review["product_id"])
    logger.info("Review deleted", extra={"product_id": review["product_id"], "user_id": user["sub"]})
    return SuccessResponse(data={"id": review_id}, message="Review deleted successfully")
