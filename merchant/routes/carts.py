from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from merchant.core.security import get_current_store
from merchant.dependencies import get_db, get_payment_client
from merchant.models.store import Store
from merchant.schemas.cart import (
    CartCreate, CartDiscountApply, CartItemsSet, CartRead, CheckoutRead, CheckoutRequest,
)
from merchant.services.checkout_service import CartService

router = APIRouter(prefix="/v1/carts", tags=["carts"])


def get_cart_service(
    store: Store = Depends(get_current_store),
    db: AsyncSession = Depends(get_db),
    payment_client=Depends(get_payment_client),
) -> CartService:
    return CartService(db, store, payment_client)


@router.post("", response_model=CartRead, status_code=status.HTTP_201_CREATED)
async def create_cart(body: CartCreate, service: CartService = Depends(get_cart_service)):
    cart = await service.create_cart(body.customer_email)
    return CartRead.from_orm_model(cart)


@router.get("/{cart_id}", response_model=CartRead)
async def get_cart(cart_id: str, service: CartService = Depends(get_cart_service)):
    return CartRead.from_orm_model(await service.get_cart(cart_id))


@router.post("/{cart_id}/items", response_model=CartRead)
async def set_cart_items(cart_id: str, body: CartItemsSet, service: CartService = Depends(get_cart_service)):
    """Replace the cart's line items with the given SKUs and quantities."""
    cart = await service.set_items(cart_id, [(item.sku, item.qty) for item in body.items])
    return CartRead.from_orm_model(cart)


@router.post("/{cart_id}/discount", response_model=CartRead)
async def apply_cart_discount(cart_id: str, body: CartDiscountApply, service: CartService = Depends(get_cart_service)):
    cart = await service.apply_discount(cart_id, body.code)
    return CartRead.from_orm_model(cart)


@router.post("/{cart_id}/checkout", response_model=CheckoutRead)
async def checkout_cart(cart_id: str, body: CheckoutRequest, service: CartService = Depends(get_cart_service)):
    """
    Reserve every line item and open a hosted checkout session.

    Either every item is held and the cart is checked_out, or nothing is held
    and the error is returned.
    """
    cart = await service.checkout(cart_id, body.success_url, body.cancel_url)
    return CheckoutRead(checkout_url=cart.checkout_url, checkout_session_id=cart.checkout_session_id)
