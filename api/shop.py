"""
Shop API Router
Endpoints for coin purchases and cosmetic equipping
"""

from typing import List
from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from api.deps import get_db, get_services, ServiceContainer
from api.schemas.rewards import (
    PurchaseRequest,
    PurchaseResponse,
    EquipRequest,
    EquipResponse,
    ShopItemResponse,
    InventoryEntryResponse,
)


router = APIRouter(prefix="/shop", tags=["shop"])


@router.get("/items", response_model=List[ShopItemResponse])
async def list_shop_items(
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """Active items, grouped by category and cheapest first"""
    return [ShopItemResponse.model_validate(item) for item in services.shop.list_items(db)]


@router.get("/{user_id}/inventory", response_model=List[InventoryEntryResponse])
async def get_inventory(
    user_id: int,
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    entries = services.shop.inventory(db, user_id, services.clock.now())
    return [
        InventoryEntryResponse(
            id=entry.id,
            item_id=entry.item_id,
            item_type=entry.item.item_type,
            category=entry.item.category,
            purchased_at=entry.purchased_at,
            expires_at=entry.expires_at,
            is_equipped=entry.is_equipped,
        )
        for entry in entries
    ]


@router.post("/{user_id}/purchase", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED)
async def purchase_item(
    user_id: int,
    body: PurchaseRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Buy an item with coins"""
    result = await services.shop.purchase(user_id, body.item_id)
    return PurchaseResponse.model_validate(result)


@router.post("/{user_id}/equip", response_model=EquipResponse)
async def equip_item(
    user_id: int,
    body: EquipRequest,
    services: ServiceContainer = Depends(get_services),
):
    """Equip an owned theme or avatar"""
    result = services.shop.equip(user_id, body.inventory_id)
    return EquipResponse.model_validate(result)
