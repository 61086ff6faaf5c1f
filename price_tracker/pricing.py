"""Price validation and per-unit pricing rules.

Every extraction strategy passes its candidate observations through
``validate_observation`` before returning them, and the run executor builds
persisted records through ``build_price_record`` so derived per-unit fields
are computed in one place.
"""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from .models import LogCallback, PriceObservation, PriceRecord, ScrapeSettings

logger = logging.getLogger(__name__)

PER_UNIT_PLACES = Decimal("0.0001")


def parse_price(raw: object) -> Decimal | None:
    """Parse a scraped price value into a Decimal.

    Accepts numbers and strings such as ``"$1,349.00"``.

    Args:
        raw: Raw value extracted from a page or API.

    Returns:
        Decimal price, or None if the value is not a finite number.
    """
    if raw is None or isinstance(raw, bool):
        return None
    text = str(raw).strip().replace(",", "").lstrip("$").strip()
    if not text:
        return None
    try:
        value = Decimal(text)
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite():
        return None
    return value


def is_valid_price(price: Decimal | None, max_price: Decimal) -> bool:
    """Check that a price is positive, finite and below the sanity ceiling."""
    if price is None or not price.is_finite():
        return False
    return Decimal("0") < price < max_price


def validate_observation(
    observation: PriceObservation,
    settings: ScrapeSettings,
    max_price: Decimal | None = None,
    log: LogCallback | None = None,
) -> PriceObservation | None:
    """Apply the shared acceptance rules to a scraped observation.

    - The price must be positive, finite and below ``max_price``
      (``settings.max_price`` when not given); otherwise the observation is
      rejected.
    - A unit count outside the plausible pack size range is dropped, the
      price itself is kept.
    - Multi-buy fields are dropped unless the multi-buy unit price is
      strictly cheaper than the single-unit price.

    Args:
        observation: Candidate observation.
        settings: Resolved validation settings.
        max_price: Optional strategy-specific price ceiling.
        log: Optional run log sink.

    Returns:
        The cleaned observation, or None if the price is rejected.
    """
    ceiling = max_price if max_price is not None else settings.max_price

    def _log(message: str) -> None:
        logger.debug(message)
        if log:
            log(message)

    if not is_valid_price(observation.price, ceiling):
        _log(
            f"[Validation] Rejected price {observation.price} from "
            f"{observation.retailer_name} (ceiling {ceiling})"
        )
        return None

    updates: dict[str, object] = {}

    unit_count = observation.unit_count
    if unit_count is not None and not (
        settings.pack_size_min <= unit_count <= settings.pack_size_max
    ):
        _log(
            f"[Validation] Dropping implausible pack size {unit_count} "
            f"(allowed {settings.pack_size_min}-{settings.pack_size_max})"
        )
        updates["unit_count"] = None
        updates["unit_type"] = None

    if not _multi_buy_is_saving(observation):
        if observation.multi_buy_quantity is not None or observation.multi_buy_price is not None:
            _log(
                f"[Validation] Dropping multi-buy {observation.multi_buy_quantity} for "
                f"${observation.multi_buy_price}: no saving over ${observation.price}"
            )
        updates["multi_buy_quantity"] = None
        updates["multi_buy_price"] = None

    if updates:
        return observation.model_copy(update=updates)
    return observation


def _multi_buy_is_saving(observation: PriceObservation) -> bool:
    quantity = observation.multi_buy_quantity
    deal_price = observation.multi_buy_price
    if quantity is None or deal_price is None:
        return False
    if quantity < 2 or deal_price <= 0:
        return False
    return deal_price / quantity < observation.price


def build_price_record(
    observation: PriceObservation,
    product_scraper_id: int,
    retailer_id: int,
    scraped_at: datetime,
) -> PriceRecord:
    """Turn an observation into a price record with derived per-unit prices.

    Multi-buy fields that do not represent a saving are dropped here as well,
    so no record is ever persisted with a non-positive multi-buy saving.

    Args:
        observation: Accepted observation.
        product_scraper_id: Target the observation belongs to.
        retailer_id: Resolved retailer id.
        scraped_at: Timestamp shared by the whole batch.

    Returns:
        PriceRecord ready to be persisted.
    """
    multi_buy_quantity = observation.multi_buy_quantity
    multi_buy_price = observation.multi_buy_price
    if not _multi_buy_is_saving(observation):
        multi_buy_quantity = None
        multi_buy_price = None

    price_per_unit = None
    multi_buy_price_per_unit = None
    unit_count = observation.unit_count
    if unit_count:
        price_per_unit = (observation.price / unit_count).quantize(
            PER_UNIT_PLACES, ROUND_HALF_UP
        )
        if multi_buy_quantity and multi_buy_price is not None:
            multi_buy_price_per_unit = (multi_buy_price / multi_buy_quantity / unit_count).quantize(
                PER_UNIT_PLACES, ROUND_HALF_UP
            )

    return PriceRecord(
        **observation.model_dump(exclude={"multi_buy_quantity", "multi_buy_price"}),
        multi_buy_quantity=multi_buy_quantity,
        multi_buy_price=multi_buy_price,
        product_scraper_id=product_scraper_id,
        retailer_id=retailer_id,
        price_per_unit=price_per_unit,
        multi_buy_price_per_unit=multi_buy_price_per_unit,
        scraped_at=scraped_at,
    )
