from fastapi import APIRouter, Depends, Request, status

from storefront.api_features import query_params_to_dict
from storefront.dependencies import get_db, require_role
from storefront.order_workflow import OrderWorkflow
from storefront.schemas import OrderCreate, OrderResponse, OrderStatusUpdate
from storefront.shared.utils import PaginatedResponse, SuccessResponse, serialize_doc

router = APIRouter(prefix="/orders", tags=["orders"])


def get_workflow(db=Depends(get_db)) -> OrderWorkflow:
    return OrderWorkflow(db)


@router.get("", response_model=PaginatedResponse[dict])
async def list_my_orders(request: Request, workflow: OrderWorkflow = Depends(get_workflow), user: dict = Depends(require_role("user"))):
    params = query_params_to_dict(request.query_params)
    return await workflow.list_orders(params, user_id=user["sub"]).paginate()


@router.get("/all", response_model=PaginatedResponse[dict])
async def list_all_orders(request: Request, workflow: OrderWorkflow = Depends(get_workflow), user: dict = Depends(require_role("admin"))):
    params = query_params_to_dict(request.query_params)
    return await workflow.list_orders(params).paginate()


@router.post("/{cart_id}", response_model=SuccessResponse[OrderResponse], status_code=status.HTTP_201_CREATED)
async def create_cash_order(cart_id: str, body: OrderCreate, workflow: OrderWorkflow = Depends(get_workflow), user: dict = Depends(require_role("user"))):
    order = await workflow.create_cash_order(user["sub"], cart_id, body.shipping_address.dict())
    return SuccessResponse(data=OrderResponse(**serialize_doc(order)), message="Order created successfully")


@router.get("/{order_id}", response_model=SuccessResponse[OrderResponse])
async def get_order(order_id: str, workflow: OrderWorkflow = Depends(get_workflow), user: dict = Depends(require_role("user"))):
    order = await workflow.get_order(user["sub"], order_id)
    return SuccessResponse(data=OrderResponse(**serialize_doc(order)))


@router.patch("/{order_id}", response_model=SuccessResponse[OrderResponse])
async def update_order(order_id: str, status_update: OrderStatusUpdate, workflow: OrderWorkflow = Depends(get_workflow), user: dict = Depends(require_role("admin"))):
    order = await workflow.update_order(order_id, status_update.is_paid, status_update.is_delivered)
    return SuccessResponse(data=OrderResponse(**serialize_doc(order)), message="Order updated successfully")
