from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from app.auth.dependencies import AuthContext, get_auth_context
from app.db.session import get_db
from app.errors import OrderflowError
from app.routers.errors import translate_domain_error
from app.schemas.cart import CartItemCreate, CartItemResponse, CartItemUpdate, CartResponse
from app.services.cart_service import CartService

router = APIRouter(prefix="/api/v1/cart", tags=["cart"])


def _cart_response(cart: CartService) -> CartResponse:
    items = [CartItemResponse.model_validate(line) for line in cart.items()]
    return CartResponse(
        items=items,
        subtotal=cart.subtotal(),
        item_count=sum(item.quantity for item in items),
    )


@router.get("", response_model=CartResponse, summary="Current cart")
def get_cart_endpoint(
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> CartResponse:
    return _cart_response(CartService(db, auth.user_id))


@router.post(
    "/items",
    response_model=CartResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a product to the cart",
)
def add_item_endpoint(
    payload: CartItemCreate,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> CartResponse:
    cart = CartService(db, auth.user_id)
    try:
        cart.add_item(
            payload.product_id, payload.product_name, payload.unit_price, payload.quantity
        )
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return _cart_response(cart)


@router.patch("/items/{product_id}", response_model=CartResponse, summary="Change quantity")
def update_item_endpoint(
    product_id: str,
    payload: CartItemUpdate,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> CartResponse:
    cart = CartService(db, auth.user_id)
    try:
        cart.update_quantity(product_id, payload.quantity)
    except OrderflowError as err:
        raise translate_domain_error(err) from err
    return _cart_response(cart)


@router.delete("/items/{product_id}", response_model=CartResponse, summary="Remove a product")
def remove_item_endpoint(
    product_id: str,
    db: Session = Depends(get_db),
    auth: AuthContext = Depends(get_auth_context),
) -> CartResponse:
    cart = CartService(db, auth.user_id)
    cart.remove_item(product_id)
    return _cart_response(cart)
