from datetime import datetime
from fastapi import APIRouter, Depends, Request, status
from pymongo.errors import DuplicateKeyError

from storefront.api_features import ApiFeatures, query_params_to_dict
from storefront.dependencies import get_db, require_role
from storefront.models import PRODUCT_FIELDS, ProductDB
from storefront.schemas import ProductCreate, ProductUpdate, ProductResponse
from storefront.shared.security_config import limiter
from storefront.shared.utils import (
    ConflictException, NotFoundException, PaginatedResponse, SuccessResponse, ValidationException,
    serialize_doc, settings, slugify, str_to_oid,
)

router = APIRouter(prefix="/products", tags=["products"])

SEARCH_FIELDS = ["title", "description", "colors"]


async def find_or_404(collection, doc_id: str, resource: str) -> dict:
    doc = await collection.find_one({"_id": str_to_oid(doc_id, resource)})
    if not doc:
        raise NotFoundException(f"{resource} not found")
    return doc


async def check_references(db, category_id: str, subcategory_id: str = None, brand_id: str = None):
    await find_or_404(db.categories, category_id, "Category")
    if subcategory_id:
        subcategory = await find_or_404(db.subcategories, subcategory_id, "SubCategory")
        if subcategory["category_id"] != category_id:
            raise ConflictException("This subcategory does not belong to the given category")
    if brand_id:
        await find_or_404(db.brands, brand_id, "Brand")


async def get_product_or_404(db, product_id: str) -> dict:
    return await find_or_404(db.products, product_id, "Product")


async def product_page(db, request: Request, base_filter: dict = None) -> PaginatedResponse:
    params = query_params_to_dict(request.query_params)
    features = (
        ApiFeatures(db.products, params, PRODUCT_FIELDS, base_filter=base_filter)
        .pagination()
        .fields()
        .filtration()
        .search(SEARCH_FIELDS)
        .sort()
    )
    return await features.paginate()


@router.get("", response_model=PaginatedResponse[dict])
@limiter.limit(settings.RATE_LIMIT)
async def list_products(request: Request, db=Depends(get_db)):
    return await product_page(db, request)


@router.post("", response_model=SuccessResponse[ProductResponse], status_code=status.HTTP_201_CREATED)
async def create_product(product: ProductCreate, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    await check_references(db, product.category_id, product.subcategory_id, product.brand_id)

    product_db = ProductDB(slug=slugify(product.title), **product.dict())
    try:
        new_product = await db.products.insert_one(product_db.dict())
    except DuplicateKeyError:
        raise ConflictException("A product with this title already exists")

    created = await db.products.find_one({"_id": new_product.inserted_id})
    return SuccessResponse(data=ProductResponse(**serialize_doc(created)), message="Product created successfully")


@router.get("/slug/{slug}", response_model=SuccessResponse[ProductResponse])
@limiter.limit(settings.RATE_LIMIT)
async def get_product_by_slug(slug: str, request: Request, db=Depends(get_db)):
    product = await db.products.find_one({"slug": slug})
    if not product:
        raise NotFoundException("Product not found")
    return SuccessResponse(data=ProductResponse(**serialize_doc(product)))


@router.get("/category/{category_id}", response_model=PaginatedResponse[dict])
@limiter.limit(settings.RATE_LIMIT)
async def list_products_by_category(category_id: str, request: Request, db=Depends(get_db)):
    await find_or_404(db.categories, category_id, "Category")
    return await product_page(db, request, {"category_id": category_id})


@router.get("/subcategory/{subcategory_id}", response_model=PaginatedResponse[dict])
@limiter.limit(settings.RATE_LIMIT)
async def list_products_by_subcategory(subcategory_id: str, request: Request, db=Depends(get_db)):
    await find_or_404(db.subcategories, subcategory_id, "SubCategory")
    return await product_page(db, request, {"subcategory_id": subcategory_id})


@router.get("/{product_id}", response_model=SuccessResponse[ProductResponse])
@limiter.limit(settings.RATE_LIMIT)
async def get_product(product_id: str, request: Request, db=Depends(get_db)):
    product = await get_product_or_404(db, product_id)
    return SuccessResponse(data=ProductResponse(**serialize_doc(product)))


@router.put("/{product_id}", response_model=SuccessResponse[ProductResponse])
async def update_product(product_id: str, product_update: ProductUpdate, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    product = await get_product_or_404(db, product_id)

    update_data = {k: v for k, v in product_update.dict().items() if v is not None}
    if {"category_id", "subcategory_id", "brand_id"} & update_data.keys():
        await check_references(
            db,
            update_data.get("category_id", product["category_id"]),
            update_data.get("subcategory_id", product.get("subcategory_id")),
            update_data.get("brand_id", product.get("brand_id")),
        )

    price = update_data.get("price", product["price"])
    after = update_data.get("price_after_discount", product.get("price_after_discount"))
    if after is not None and after > price:
        raise ValidationException("price_after_discount must not exceed price")

    if "title" in update_data:
        update_data["slug"] = slugify(update_data["title"])

    if update_data:
        update_data["updated_at"] = datetime.utcnow()
        try:
            await db.products.update_one({"_id": product["_id"]}, {"$set": update_data})
        except DuplicateKeyError:
            raise ConflictException("A product with this title already exists")

    updated = await db.products.find_one({"_id": product["_id"]})
    return SuccessResponse(data=ProductResponse(**serialize_doc(updated)), message="Product updated successfully")


@router.delete("/{product_id}", response_model=SuccessResponse[dict])
async def delete_product(product_id: str, db=Depends(get_db), user: dict = Depends(require_role("admin"))):
    result = await db.products.delete_one({"_id": str_to_oid(product_id, "Product")})
    if not result.deleted_count:
        raise NotFoundException("Product not found")
    return SuccessResponse(data={"id": product_id}, message="Product deleted successfully")
