"""Cart line-item lifecycle: add, list, remove."""

from decimal import Decimal

from sqlalchemy import delete, select

from edupay.common.errors import CartItemLockedError, CartValidationError
from edupay.common.logging import logger
from edupay.common.pricing import ZERO, calc_final_purchase_price, to_decimal
from edupay.common.state_machine import PurchaseStatus
from edupay.services.ledger.models import Purchase


class CartService:
    """Owns Purchase rows while they are still unlinked cart items."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def add_to_cart(
        self,
        buyer_id: str,
        purchasable_type: str,
        purchasable_id: str,
        original_price: Decimal | str | float,
        discount_amount: Decimal | str | float = 0,
        metadata: dict | None = None,
    ) -> Purchase:
        """Create a `cart` purchase, or a `completed` one when nothing is owed."""

        original = to_decimal(original_price)
        discount = to_decimal(discount_amount)
        if original < ZERO or discount < ZERO:
            raise CartValidationError("prices must not be negative")
        payment_amount = calc_final_purchase_price({"original_price": original, "discount_amount": discount})
        status = PurchaseStatus.COMPLETED if payment_amount == ZERO else PurchaseStatus.CART

        with self.session_factory() as db:
            purchase = Purchase(
                buyer_id=buyer_id,
                purchasable_type=purchasable_type,
                purchasable_id=purchasable_id,
                original_price=original,
                discount_amount=discount,
                payment_amount=payment_amount,
                payment_status=status.value,
                payment_method="free" if status == PurchaseStatus.COMPLETED else None,
                meta=metadata or {},
            )
            db.add(purchase)
            db.commit()
            logger.info(
                "cart item added purchase_id=%s buyer_id=%s type=%s status=%s",
                purchase.id,
                buyer_id,
                purchasable_type,
                status.value,
            )
            return purchase

    def list_cart(self, buyer_id: str) -> list[Purchase]:
        with self.session_factory() as db:
            return list(
                db.execute(
                    select(Purchase)
                    .where(Purchase.buyer_id == buyer_id, Purchase.payment_status == PurchaseStatus.CART.value)
                    .order_by(Purchase.created_at.asc())
                )
                .scalars()
                .all()
            )

    def remove_from_cart(self, purchase_id: str, buyer_id: str) -> None:
        """Delete an unlinked cart item; anything linked or settled is kept for audit."""

        with self.session_factory() as db:
            result = db.execute(
                delete(Purchase).where(
                    Purchase.id == purchase_id,
                    Purchase.buyer_id == buyer_id,
                    Purchase.payment_status == PurchaseStatus.CART.value,
                    Purchase.transaction_id.is_(None),
                )
            )
            if result.rowcount == 1:
                db.commit()
                logger.info("cart item removed purchase_id=%s buyer_id=%s", purchase_id, buyer_id)
                return
            db.rollback()
            exists = db.execute(
                select(Purchase.id).where(Purchase.id == purchase_id, Purchase.buyer_id == buyer_id)
            ).scalar_one_or_none()
            if exists is None:
                raise CartValidationError(f"cart item {purchase_id} not found")
            raise CartItemLockedError(f"purchase {purchase_id} is linked to a payment and cannot be removed")
