import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from portal.core.errors import NotFoundError
from portal.core.types import AdminUserUpdate, ConfigUpdate
from portal.data.records import User
from portal.data.store import IdentityStore
from portal.routes.deps import admin_user, get_engine, get_store
from portal.services.engine import AccessEngine

router = APIRouter(prefix="/api/admin", dependencies=[Depends(admin_user)])
log = logging.getLogger("admin")

_USER_FIELDS = {
    "isAdmin": "is_admin",
    "isWhitelisted": "is_whitelisted",
    "hasManualSubscription": "has_manual_subscription",
    "username": "username",
}


@router.get("/users")
async def list_users(store: IdentityStore = Depends(get_store)):
    out = []
    for u in store.list_users():
        sub = store.get_subscription_by_user(u.id)
        out.append({**u.public(), "subscription": sub.public() if sub else None})
    return out


@router.put("/users/{user_id}")
async def update_user(
    user_id: str,
    req: AdminUserUpdate,
    bg: BackgroundTasks,
    admin: User = Depends(admin_user),
    store: IdentityStore = Depends(get_store),
    engine: AccessEngine = Depends(get_engine),
):
    if user_id == admin.id and req.isAdmin is False:
        raise HTTPException(status_code=400, detail="Cannot remove your own admin status")
    target = store.get_user(user_id)
    if target is None:
        raise NotFoundError("User not found")
    changes = {
        column: getattr(req, field)
        for field, column in _USER_FIELDS.items()
        if getattr(req, field) is not None
    }
    updated = store.update_user(user_id, **changes) if changes else target

    # Manual access toggles the community role the same way a subscription would
    if req.hasManualSubscription is not None and req.hasManualSubscription != target.has_manual_subscription:
        if req.hasManualSubscription:
            bg.add_task(engine.community.grant, updated, None)
        elif not engine.verdict_for(updated, store.get_subscription_by_user(updated.id)).granted:
            bg.add_task(engine.community.revoke, updated)
    log.info("admin.user_update admin=%s user=%s fields=%s", admin.id, user_id, sorted(changes))
    return updated.public()


@router.get("/config")
async def list_config(store: IdentityStore = Depends(get_store)):
    return [
        {
            "key": c.key,
            "value": c.value,
            "description": c.description,
            "updatedAt": c.updated_at.isoformat() if c.updated_at else None,
        }
        for c in store.list_config()
    ]


@router.put("/config/{key}")
async def put_config(
    key: str,
    req: ConfigUpdate,
    admin: User = Depends(admin_user),
    store: IdentityStore = Depends(get_store),
):
    entry = store.set_config(key, req.value, req.description)
    log.info("admin.config_set admin=%s key=%s", admin.id, key)
    return {
        "key": entry.key,
        "value": entry.value,
        "description": entry.description,
        "updatedAt": entry.updated_at.isoformat() if entry.updated_at else None,
    }
