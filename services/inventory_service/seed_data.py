import logging
from typing import Dict

from services.inventory_service.ledger import StockLedger

logger = logging.getLogger(__name__)


def parse_seed(entries: str) -> Dict[str, int]:
    """Parse ``"SKU-1=10,SKU-2=5"`` into ``{"SKU-1": 10, "SKU-2": 5}``."""
    seed: Dict[str, int] = {}
    for item in filter(None, (part.strip() for part in entries.split(","))):
        sku_id, _, qty = item.partition("=")
        if not sku_id.strip() or not qty.strip().isdigit():
            raise ValueError(f"Invalid stock seed entry: {item!r}")
        seed[sku_id.strip()] = int(qty)
    return seed


def seed_stock(ledger: StockLedger, entries: str) -> int:
    """Seed stock for SKUs that have no row yet; returns how many rows were created."""
    logger.info("Seeding stock...")
    created = 0
    for sku_id, qty in parse_seed(entries).items():
        level = ledger.query(sku_id)
        if level.available or level.reserved:
            logger.info(f"SKU {sku_id} already stocked, skipping")
            continue
        if qty > 0:
            ledger.receive_stock(sku_id, qty)
            created += 1

    logger.info(f"Seeded {created} SKU(s)")
    return created
