"""Catalog port: read-only listing lookups used by checkout"""

import logging
from typing import NamedTuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Listing, ListingStatus
from utils.exceptions import NotFoundError

logger = logging.getLogger(__name__)


class ListingInfo(NamedTuple):
    """Listing data needed to price and snapshot an order"""
    id: int
    seller_id: int
    title: str
    price_cents: int
    currency: str
    status: str
    delivery_type: str

    @property
    def is_published(self) -> bool:
        return self.status == ListingStatus.PUBLISHED.value


class CatalogService:
    """Catalog CRUD lives elsewhere; this core only reads listings"""

    def get_listing(self, session: Session, listing_id: int) -> ListingInfo:
        listing = session.execute(
            select(Listing).where(Listing.id == listing_id)
        ).scalar_one_or_none()
        if listing is None:
            raise NotFoundError(f"Listing {listing_id} not found")

        return ListingInfo(
            id=listing.id,
            seller_id=listing.seller_id,
            title=listing.title,
            price_cents=listing.price_cents,
            currency=listing.currency,
            status=listing.status,
            delivery_type=listing.delivery_type,
        )


catalog_service = CatalogService()
