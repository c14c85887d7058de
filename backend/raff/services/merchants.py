"""Merchant lookups used by webhook handlers."""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from ..models import Merchant, PlatformEnum

logger = logging.getLogger(__name__)

_STORE_ID_COLUMNS = {
    PlatformEnum.salla: Merchant.salla_store_id,
    PlatformEnum.zid: Merchant.zid_store_id,
}


def find_merchant_by_external_store_id(db: Session, platform: PlatformEnum, store_id: str) -> Optional[Merchant]:
    """Resolve the merchant that connected this platform store.

    Returns:
        Merchant, or None when the store has not been linked
    """
    column = _STORE_ID_COLUMNS[platform]
    merchant = db.query(Merchant).filter(column == str(store_id)).first()
    if merchant is None:
        logger.warning(f"[MERCHANTS] No merchant for {platform.value} store {store_id}")
    return merchant
