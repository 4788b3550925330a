"""
Collector administration endpoints (admin only)
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import MicrofinanceSystem, Principal, get_system, require_role
from .schemas import CreateCollectorRequest, UpdateCollectorRequest
from ..currency import Currency, sum_money
from ..users import UserRole


router = APIRouter()
admin_only = require_role(UserRole.ADMIN)


def _collector_view(system: MicrofinanceSystem, user) -> dict:
    collections = system.collection_manager.find_collections(collector_id=user.id)
    view = user.to_public_dict()
    view["total_collections"] = len(collections)
    currency = Currency[system.config.currency]
    view["total_collected"] = str(sum_money((c.amount for c in collections), currency).amount)
    return view


@router.get("")
async def list_collectors(
    role: Optional[UserRole] = UserRole.COLLECTOR,
    principal: Principal = Depends(admin_only),
    system: MicrofinanceSystem = Depends(get_system)
):
    users = system.user_manager.list_users(role=role)
    return {"collectors": [_collector_view(system, u) for u in users]}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_collector(
    request: CreateCollectorRequest,
    principal: Principal = Depends(admin_only),
    system: MicrofinanceSystem = Depends(get_system)
):
    user = system.user_manager.create_user(
        email=request.email,
        username=request.username,
        password=request.password,
        name=request.name,
        role=request.role,
        phone=request.phone,
        assigned_area=request.assigned_area,
        created_by=principal.user_id
    )
    return {"collector": user.to_public_dict()}


@router.get("/{user_id}")
async def get_collector(
    user_id: str,
    principal: Principal = Depends(admin_only),
    system: MicrofinanceSystem = Depends(get_system)
):
    user = system.user_manager.require_user(user_id)
    return {"collector": _collector_view(system, user)}


@router.put("/{user_id}")
async def update_collector(
    user_id: str,
    request: UpdateCollectorRequest,
    principal: Principal = Depends(admin_only),
    system: MicrofinanceSystem = Depends(get_system)
):
    changes = request.model_dump(exclude_unset=True)
    password = changes.pop("password", None)

    with system.storage.atomic():
        user = system.user_manager.update_user(user_id, updated_by=principal.user_id, **changes)
        if password:
            system.user_manager.set_password(user_id, password)
    return {"collector": user.to_public_dict()}
