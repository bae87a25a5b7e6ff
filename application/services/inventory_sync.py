"""
Inventory / stock synchronization triggered by item returns.
"""
from __future__ import annotations

from typing import Callable, Optional

from core.logging_config import get_logger
from domain.common.exceptions import LocationNotFoundException
from domain.common.unit_of_work import AbstractUnitOfWork
from domain.lending.entity import ItemCondition


logger = get_logger(__name__)


class InventorySyncService:
    def __init__(self, uow_factory: Callable[..., AbstractUnitOfWork]) -> None:
        self._uow_factory = uow_factory

    async def on_item_returned(self, location_id: int, condition: Optional[ItemCondition] = None) -> int:
        """Put the returned item back on the shelf unless it was reported missing.

        Returns the location's inventory count after the sync.
        """
        async with self._uow_factory() as uow:
            if condition == ItemCondition.MISSING:
                location = await uow.locations.get_by_id(location_id)
                if location is None:
                    raise LocationNotFoundException(location_id)
                inventory_count = location.inventory_count
            else:
                inventory_count = await uow.locations.increment_inventory(location_id, 1)
        logger.info(
            "inventory_synced",
            location_id=location_id,
            condition=condition.value if condition else None,
            inventory_count=inventory_count,
        )
        return inventory_count
