from datetime import datetime
from fastapi import APIRouter, Depends, Request, status
from pymongo.errors import DuplicateKeyError

from storefront.api_features import ApiFeatures, query_params_to_dict
from storefront.dependencies import get_db, require_role
from storefront.models import CATEGORY_FIELDS, SUBCATEGORY_FIELDS, CategoryDB, SubCategoryDB
from storefront.routers.products import find_or_404
from storefront.schemas import (
    CategoryCreate, CategoryUpdate, CategoryResponse,
    SubCategoryCreate, SubCategoryUpdate, SubCategoryResponse,
)
from storefront.shared.security_config import limiter
from storefront.shared.utils import (
    ConflictException, NotFoundException, PaginatedResponse, SuccessResponse,
    serialize_doc, settings, slugify, str_to_oid,
)

router = APIRouter(tags=["categories"])


async def subcategory_page(db, request: Request, base_filter: dict = None) -> PaginatedResponse:
    params = query_params_to_dict(request.query_params)
    features = (
        ApiFeatures(db.subcategories, params, SUBCATEGORY_FIELDS, base_filter=base_filter)
        .pagination()
        .fields()
        .filtration()
        .search(["name"])
        .sort()
    )
    return await features.paginate()


async def insert_subcategory(db, name: str, category_id: str) -> dict:
    await find_or_404(db.categories, category_id, "Category")

    sub_db = SubCategoryDB(name=name, slug=slugify(name), category_id=category_id)
    try:
        new_sub = await db.subcategories.insert_one(sub_db.dict())
    except DuplicateKeyError:
        raise ConflictException("SubCategory already exists")
    return await db.subcategories.find_one({"_id": new_sub.inserted_id})


# --- Categories ---
@router.get("/categories", response_model=PaginatedResponse[dict])
@limiter.limit(settings.RATE_LIMIT)
async def list_categories(request: Request, db=Depends(get_db)):
    params = query_params_to_dict(request.query_params)
    features = (
        ApiFeatures(db.categories, params, CATEGORY_FIELDS)
        .pagination()
        .fields()
        .filtration()
        .search(["name"])
        .sort()
    )
    return await features.paginate()


@router.post("/categories", response_model=SuccessResponse[CategoryResponse], status_code=status.HTTP_201_CREATED)
async def create_category(category: CategoryCreate, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    cat_db = CategoryDB(name=category.name, slug=slugify(category.name))
    try:
        new_cat = await db.categories.insert_one(cat_db.dict())
    except DuplicateKeyError:
        raise ConflictException("Category already exists")
    created = await db.categories.find_one({"_id": new_cat.inserted_id})
    return SuccessResponse(data=CategoryResponse(**serialize_doc(created)), message="Category created successfully")


@router.get("/categories/slug/{slug}", response_model=SuccessResponse[CategoryResponse])
@limiter.limit(settings.RATE_LIMIT)
async def get_category_by_slug(slug: str, request: Request, db=Depends(get_db)):
    category = await db.categories.find_one({"slug": slug})
    if not category:
        raise NotFoundException("Category not found")
    return SuccessResponse(data=CategoryResponse(**serialize_doc(category)))


@router.put("/categories/{category_id}", response_model=SuccessResponse[CategoryResponse])
async def update_category(category_id: str, category: CategoryUpdate, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    oid = str_to_oid(category_id, "Category")
    try:
        result = await db.categories.update_one(
            {"_id": oid},
            {"$set": {"name": category.name, "slug": slugify(category.name), "updated_at": datetime.utcnow()}},
        )
    except DuplicateKeyError:
        raise ConflictException("Category already exists")
    if not result.matched_count:
        raise NotFoundException("Category not found")
    updated = await db.categories.find_one({"_id": oid})
    return SuccessResponse(data=CategoryResponse(**serialize_doc(updated)), message="Category updated successfully")


@router.delete("/categories/{category_id}", response_model=SuccessResponse[dict])
async def delete_category(category_id: str, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    result = await db.categories.delete_one({"_id": str_to_oid(category_id, "Category")})
    if not result.deleted_count:
        raise NotFoundException("Category not found")
    return SuccessResponse(data={"id": category_id}, message="Category deleted successfully")


# Nested: subcategories of one category
@router.get("/categories/{category_id}/subcategories", response_model=PaginatedResponse[dict])
@limiter.limit(settings.RATE_LIMIT)
async def list_category_subcategories(category_id: str, request: Request, db=Depends(get_db)):
    await find_or_404(db.categories, category_id, "Category")
    return await subcategory_page(db, request, {"category_id": category_id})


@router.post("/categories/{category_id}/subcategories", response_model=SuccessResponse[SubCategoryResponse], status_code=status.HTTP_201_CREATED)
async def create_category_subcategory(category_id: str, subcategory: CategoryCreate, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    created = await insert_subcategory(db, subcategory.name, category_id)
    return SuccessResponse(data=SubCategoryResponse(**serialize_doc(created)), message="SubCategory created successfully")


# --- SubCategories ---
@router.get("/subcategories", response_model=PaginatedResponse[dict])
@limiter.limit(settings.RATE_LIMIT)
async def list_subcategories(request: Request, db=Depends(get_db)):
    return await subcategory_page(db, request)


@router.post("/subcategories", response_model=SuccessResponse[SubCategoryResponse], status_code=status.HTTP_201_CREATED)
async def create_subcategory(subcategory: SubCategoryCreate, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    created = await insert_subcategory(db, subcategory.name, subcategory.category_id)
    return SuccessResponse(data=SubCategoryResponse(**serialize_doc(created)), message="SubCategory created successfully")


@router.get("/subcategories/slug/{slug}", response_model=SuccessResponse[SubCategoryResponse])
@limiter.limit(settings.RATE_LIMIT)
async def get_subcategory_by_slug(slug: str, request: Request, db=Depends(get_db)):
    subcategory = await db.subcategories.find_one({"slug": slug})
    if not subcategory:
        raise NotFoundException("SubCategory not found")
    return SuccessResponse(data=SubCategoryResponse(**serialize_doc(subcategory)))


@router.put("/subcategories/{subcategory_id}", response_model=SuccessResponse[SubCategoryResponse])
async def update_subcategory(subcategory_id: str, subcategory: SubCategoryUpdate, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    current = await find_or_404(db.subcategories, subcategory_id, "SubCategory")

    changes = {"name": subcategory.name, "slug": slugify(subcategory.name), "updated_at": datetime.utcnow()}
    if subcategory.category_id:
        await find_or_404(db.categories, subcategory.category_id, "Category")
        changes["category_id"] = subcategory.category_id
    try:
        await db.subcategories.update_one({"_id": current["_id"]}, {"$set": changes})
    except DuplicateKeyError:
        raise ConflictException("SubCategory already exists")

    updated = await db.subcategories.find_one({"_id": current["_id"]})
    return SuccessResponse(data=SubCategoryResponse(**serialize_doc(updated)), message="SubCategory updated successfully")


@router.delete("/subcategories/{subcategory_id}", response_model=SuccessResponse[dict])
async def delete_subcategory(subcategory_id: str, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    result = await db.subcategories.delete_one({"_id": str_to_oid(subcategory_id, "SubCategory")})
    if not result.deleted_count:
        raise NotFoundException("SubCategory not found")
    return SuccessResponse(data={"id": subcategory_id}, message="SubCategory deleted successfully")
