"""Best-effort post-completion hooks.

Once a transaction is claimed the money is captured, so bookkeeping that runs
afterwards must never fail the completion. `EffectCollector` runs each hook,
records its outcome and swallows its exception; callers read the outcomes
instead of wrapping every call site in try/except.
"""

import inspect
from dataclasses import asdict, dataclass, field
from typing import Any

from sqlalchemy import func, or_, select, update

from edupay.common.config import settings
from edupay.common.logging import logger
from edupay.common.metrics import side_effect_failures_total
from edupay.services.gateway.client import mask_token
from edupay.services.gateway.tokens import extract_card_info, extract_token
from edupay.services.ledger.models import Coupon, CustomerToken, FileAsset


@dataclass
class EffectOutcome:
    effect: str
    ok: bool
    key: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)
    error: str | None = None


class EffectCollector:
    """Collects outcomes of best-effort hooks; `run` never raises `Exception`."""

    def __init__(self, service_name: str | None = None) -> None:
        self.service_name = service_name or settings.service_name
        self.outcomes: list[EffectOutcome] = []

    async def run(self, effect: str, fn, *args, key: str | None = None, **kwargs) -> EffectOutcome:
        try:
            result = fn(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            logger.warning("side effect failed effect=%s key=%s error=%s", effect, key, exc)
            side_effect_failures_total.labels(service=self.service_name, effect=effect).inc()
            outcome = EffectOutcome(effect=effect, ok=False, key=key, error=str(exc))
        else:
            if isinstance(result, dict):
                detail = result
            elif result is None:
                detail = {}
            else:
                detail = {"result": str(getattr(result, "id", result))}
            outcome = EffectOutcome(effect=effect, ok=True, key=key, detail=detail)
        self.outcomes.append(outcome)
        return outcome

    def succeeded(self, effect: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.effect == effect and outcome.ok)

    def errors(self) -> list[str]:
        return [f"{o.effect}:{o.key}: {o.error}" for o in self.outcomes if not o.ok]

    def as_list(self) -> list[dict[str, Any]]:
        return [asdict(outcome) for outcome in self.outcomes]


class CompletionHooks:
    """Business-logic side effects of a completed payment."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def commit_coupon_usage(self, code: str) -> dict[str, Any]:
        """Increment a coupon's usage counter atomically, never past its usage limit."""

        with self.session_factory() as db:
            result = db.execute(
                update(Coupon)
                .where(
                    Coupon.code == code,
                    Coupon.is_active.is_(True),
                    or_(Coupon.usage_limit.is_(None), Coupon.usage_count < Coupon.usage_limit),
                )
                .values(usage_count=Coupon.usage_count + 1)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                db.rollback()
                raise LookupError(f"coupon {code} not found, inactive or exhausted")
            db.commit()
            usage_count = db.execute(select(Coupon.usage_count).where(Coupon.code == code)).scalar_one()
            return {"code": code, "usage_count": usage_count}

    def increment_file_downloads(self, file_id: str) -> dict[str, Any]:
        with self.session_factory() as db:
            result = db.execute(
                update(FileAsset)
                .where(FileAsset.id == file_id)
                .values(downloads_count=FileAsset.downloads_count + 1)
                .execution_options(synchronize_session=False)
            )
            db.commit()
            return {"file_id": file_id, "updated": result.rowcount == 1}

    def save_customer_token(self, payload: dict[str, Any] | None, buyer_id: str, transaction_id: str) -> dict[str, Any]:
        """Persist a reusable charge token for the buyer, de-duplicated per buyer."""

        token = extract_token(payload)
        if not token:
            return {"saved": False, "reason": "no_token"}
        card = extract_card_info(payload)
        with self.session_factory() as db:
            existing = db.execute(
                select(CustomerToken).where(
                    CustomerToken.buyer_id == buyer_id,
                    CustomerToken.token == token,
                    CustomerToken.is_active.is_(True),
                )
            ).scalar_one_or_none()
            if existing is not None:
                return {"saved": False, "reason": "already_stored", "token_id": existing.id}
            active_count = db.execute(
                select(func.count())
                .select_from(CustomerToken)
                .where(CustomerToken.buyer_id == buyer_id, CustomerToken.is_active.is_(True))
            ).scalar_one()
            stored = CustomerToken(
                buyer_id=buyer_id,
                token=token,
                card_last4=card.last4,
                card_brand=card.brand,
                card_expiry_month=card.expiry_month,
                card_expiry_year=card.expiry_year,
                card_holder_name=card.holder_name,
                is_default=active_count == 0,
                is_active=True,
                source_transaction_id=transaction_id,
            )
            db.add(stored)
            db.commit()
            logger.info(
                "customer token saved buyer_id=%s token=%s last4=%s default=%s",
                buyer_id,
                mask_token(token),
                card.last4,
                stored.is_default,
            )
            return {"saved": True, "token_id": stored.id}
