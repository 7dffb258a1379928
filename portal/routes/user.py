from fastapi import APIRouter, Depends

from portal.core.errors import ConflictError, DuplicateRecordError
from portal.core.types import ProfileUpdate
from portal.data.records import User
from portal.data.store import IdentityStore
from portal.routes.deps import gated_user, get_store

router = APIRouter(prefix="/api/user")


@router.get("/profile")
async def get_profile(user: User = Depends(gated_user)):
    return user.public()


@router.put("/profile")
async def update_profile(
    req: ProfileUpdate, user: User = Depends(gated_user), store: IdentityStore = Depends(get_store)
):
    changes = {}
    if req.username:
        changes["username"] = req.username
    if req.email:
        changes["email"] = req.email
    if not changes:
        return user.public()
    try:
        updated = store.update_user(user.id, **changes)
    except DuplicateRecordError as e:
        raise ConflictError("That email is already used by another account.", reason="email_taken") from e
    return (updated or user).public()
