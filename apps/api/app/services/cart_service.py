from decimal import Decimal

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.errors import ValidationError
from app.models.cart_item import CartItem
from app.observability import log_event, metrics_store
from app.services.order_store import ItemSnapshot


class CartService:
    """Explicit handle on one customer's cart.

    Checkout reads the cart through this handle and only ``clear`` removes lines in bulk,
    so the point at which a cart is emptied is a single auditable call.
    """

    def __init__(self, db: Session, user_id: str) -> None:
        self.db = db
        self.user_id = user_id

    def _line(self, product_id: str) -> CartItem | None:
        return self.db.scalar(
            select(CartItem).where(
                CartItem.user_id == self.user_id, CartItem.product_id == product_id
            )
        )

    def items(self) -> list[CartItem]:
        return list(
            self.db.scalars(
                select(CartItem)
                .where(CartItem.user_id == self.user_id)
                .order_by(CartItem.created_at.asc(), CartItem.product_id.asc())
            )
        )

    def snapshot(self) -> list[ItemSnapshot]:
        return [
            ItemSnapshot(
                product_id=item.product_id,
                product_name=item.product_name,
                unit_price=item.unit_price,
                quantity=item.quantity,
            )
            for item in self.items()
        ]

    def subtotal(self) -> Decimal:
        return sum((line.total_price for line in self.snapshot()), Decimal("0"))

    def is_empty(self) -> bool:
        return not self.items()

    def add_item(
        self, product_id: str, product_name: str, unit_price: Decimal, quantity: int = 1
    ) -> CartItem:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        if unit_price < 0:
            raise ValidationError("Unit price cannot be negative")

        line = self._line(product_id)
        if line is None:
            line = CartItem(
                user_id=self.user_id,
                product_id=product_id,
                product_name=product_name,
                unit_price=unit_price,
                quantity=quantity,
            )
            self.db.add(line)
        else:
            line.quantity += quantity
            line.product_name = product_name
            line.unit_price = unit_price
        self.db.commit()
        self.db.refresh(line)
        return line

    def update_quantity(self, product_id: str, quantity: int) -> CartItem | None:
        line = self._line(product_id)
        if line is None:
            raise ValidationError(f"Product {product_id} is not in the cart", code="NOT_IN_CART")
        if quantity <= 0:
            self.db.delete(line)
            self.db.commit()
            return None
        line.quantity = quantity
        self.db.commit()
        self.db.refresh(line)
        return line

    def remove_item(self, product_id: str) -> None:
        self.db.execute(
            delete(CartItem).where(
                CartItem.user_id == self.user_id, CartItem.product_id == product_id
            )
        )
        self.db.commit()

    def clear(self, *, reason: str, order_id: str | None = None, commit: bool = True) -> int:
        """Delete every line. With ``commit=False`` the caller owns the transaction and must
        call ``record_cleared`` once it commits."""
        result = self.db.execute(delete(CartItem).where(CartItem.user_id == self.user_id))
        if commit:
            self.db.commit()
            self.record_cleared(reason=reason, order_id=order_id)
        return result.rowcount

    def record_cleared(self, *, reason: str, order_id: str | None = None) -> None:
        metrics_store.increment("cart_cleared_total")
        log_event(f"cart_cleared:{reason}", order_id=order_id, actor=self.user_id)
